#!/usr/bin/env python3
"""
Executor Registry
Closed registry mapping plan action names to executors.
Unknown names resolve to a no-op executor instead of failing the lookup.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional

from ai_operon.core.llm_provider import LLMService
from ai_operon.orchestration.plan import Artifact, Step, StepResult
from ai_operon.sandbox.docker_executor import SandboxManager, SandboxUnavailableError
from ai_operon.tools.mcp_client import McpClient

logger = logging.getLogger(__name__)


class SandboxLease:
    """
    The sandbox of one task, provisioned on first use.
    """

    def __init__(self, manager: Optional[SandboxManager], task_id: str):
        self.manager = manager
        self.task_id = task_id
        self.sandbox_id: Optional[str] = None

    @property
    def provisioned(self) -> bool:
        return self.sandbox_id is not None

    async def acquire(self) -> str:
        if self.manager is None:
            raise SandboxUnavailableError("No sandbox manager configured")
        if self.sandbox_id is None:
            self.sandbox_id = await self.manager.provision(self.task_id)
        return self.sandbox_id

    async def release(self) -> bool:
        """Destroy the sandbox if one was provisioned; never raises"""
        if self.manager is None or self.sandbox_id is None:
            return True
        sandbox_id, self.sandbox_id = self.sandbox_id, None
        return await self.manager.destroy(sandbox_id)


@dataclass
class ExecutorContext:
    """Everything an executor may use while running one step"""
    llm: LLMService
    task_text: str
    user_id: str
    session_id: str
    lease: SandboxLease
    mcp_client: Optional[McpClient] = None
    input_data: str = ""
    settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def sandbox_manager(self) -> Optional[SandboxManager]:
        return self.lease.manager

    async def sandbox(self) -> str:
        """Sandbox id for this task, provisioning it if needed"""
        return await self.lease.acquire()

    def for_step(self, input_data: str) -> 'ExecutorContext':
        return replace(self, input_data=input_data)


class Executor(ABC):
    """A capability that fulfils plan steps with a given action name"""

    name: str = ""
    description: str = ""
    requires_sandbox: bool = False

    @abstractmethod
    async def execute(self, step: Step, context: ExecutorContext) -> StepResult:
        """Run one step"""

    def result(
        self,
        step: Step,
        output: Any,
        error: Optional[str] = None,
        artifacts: Optional[List[Artifact]] = None
    ) -> StepResult:
        return StepResult(
            step=step.step,
            action=step.action or self.name,
            output=output,
            error=error,
            artifacts=list(artifacts or [])
        )

    def failure(self, step: Step, error: BaseException) -> StepResult:
        logger.error("%s failed on '%s': %s", self.name, step.step[:80], error)
        message = str(error) or type(error).__name__
        return self.result(step, {"error": message, "success": False}, error=message)


class NoopExecutor(Executor):
    """Placeholder for actions no executor implements"""

    name = "noop"
    description = "Does nothing"

    async def execute(self, step: Step, context: ExecutorContext) -> StepResult:
        logger.warning("Unknown action: %s (step skipped)", step.action)
        return StepResult(
            step=step.step,
            action=step.action,
            output=f"Unknown action: {step.action}. Step skipped.",
            placeholder=True
        )


class ExecutorRegistry:
    """
    Fixed mapping of action name to executor.
    Built once; the action names double as the enumeration given to the planner.
    """

    def __init__(self, executors: Iterable[Executor]):
        self._executors: Dict[str, Executor] = {}
        for executor in executors:
            if executor.name in self._executors:
                raise ValueError(f"Duplicate executor name: {executor.name}")
            self._executors[executor.name] = executor
        self._noop = NoopExecutor()

    def get(self, action: str) -> Executor:
        return self._executors.get(action, self._noop)

    def __contains__(self, action: str) -> bool:
        return action in self._executors

    def names(self) -> List[str]:
        return sorted(self._executors)

    def describe(self) -> str:
        """Tool list for the planning prompt"""
        lines = []
        for name in self.names():
            executor = self._executors[name]
            sandbox = " [SANDBOX]" if executor.requires_sandbox else ""
            lines.append(f"- {name}: {executor.description}{sandbox}")
        return "\n".join(lines)
