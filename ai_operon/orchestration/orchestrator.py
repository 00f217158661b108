#!/usr/bin/env python3
"""
Plan Executor
Plan a task with the model, run each step through its executor with
reasoning and reflection, replan when reflection asks for it, and synthesize
one final answer from the execution trace.

Steps run strictly one after another within a task. Only a failure to obtain
the initial plan is fatal; every other failure is recorded and the task goes on.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ai_operon.core.config import config
from ai_operon.core.llm_provider import LLMService
from ai_operon.memory.reasoning_store import ReasoningStore
from ai_operon.orchestration.plan import (
    Artifact,
    ExecutionTrace,
    Plan,
    PlanningError,
    ReasoningEntry,
    StepResult,
    parse_plan,
    parse_replan,
)
from ai_operon.orchestration.prompts import (
    fallback_answer,
    finalization_prompt,
    format_mcp_tools,
    planning_prompt,
    progress_analysis_prompt,
)
from ai_operon.orchestration.react import StepReasoner, wants_replan
from ai_operon.sandbox.docker_executor import SandboxManager
from ai_operon.tools import create_default_registry
from ai_operon.tools.mcp_client import McpClient
from ai_operon.tools.tool_registry import ExecutorContext, ExecutorRegistry, SandboxLease

logger = logging.getLogger(__name__)


@dataclass
class TaskReport:
    """Everything one task run produced"""
    task: str
    task_id: str
    user_id: str
    session_id: str
    answer: str = ""
    plan: Optional[Plan] = None
    trace: ExecutionTrace = field(default_factory=ExecutionTrace)
    reasoning: List[ReasoningEntry] = field(default_factory=list)
    sandbox_id: Optional[str] = None
    replans: int = 0

    @property
    def direct(self) -> bool:
        return self.plan is not None and self.plan.is_direct

    @property
    def artifacts(self) -> List[Artifact]:
        return self.trace.artifacts


class PlanExecutor:
    """
    Orchestrator for one task at a time per call; many calls may run
    concurrently, each with its own sandbox.
    """

    def __init__(
        self,
        llm: LLMService,
        registry: Optional[ExecutorRegistry] = None,
        sandbox_manager: Optional[SandboxManager] = None,
        mcp_client: Optional[McpClient] = None,
        reasoning_store: Optional[ReasoningStore] = None,
        settings: Optional[Dict[str, Any]] = None
    ):
        self.llm = llm
        self.registry = registry or create_default_registry()
        self.sandbox_manager = sandbox_manager
        self.mcp_client = mcp_client
        self.reasoning_store = reasoning_store

        settings = {**config.get_section("orchestrator"), **(settings or {})}
        self.progress_timeout = settings.get("progress_check_timeout_sec", 30)
        self.finalization_timeout = settings.get("finalization_timeout_sec", 60)
        self.replan_interval = max(1, settings.get("replan_interval", 3))
        self.replan_min_steps = settings.get("replan_min_steps", 2)
        self.persist_interval = max(1, settings.get("reasoning_persist_interval", 3))
        self.reasoner = StepReasoner(llm, enabled=settings.get("enable_reasoning", True))

    async def run(self, task_text: str, user_id: str = "default", session_id: str = "default") -> str:
        """
        Run a task to completion and return the final answer.

        Raises:
            PlanningError: if no initial plan could be obtained
        """
        report = await self.execute(task_text, user_id, session_id)
        return report.answer

    async def execute(
        self,
        task_text: str,
        user_id: str = "default",
        session_id: str = "default",
        history: Optional[Sequence[Dict[str, Any]]] = None
    ) -> TaskReport:
        """Run a task and return the full report"""
        task_id = f"{user_id}-{session_id}-{uuid.uuid4().hex[:8]}"
        report = TaskReport(task=task_text, task_id=task_id, user_id=user_id, session_id=session_id)
        lease = SandboxLease(self.sandbox_manager, task_id)
        logger.info("Task %s started: %s", task_id, task_text[:100])

        try:
            report.plan = await self._plan(task_text, history)
            if report.plan.is_direct:
                logger.info("Task %s answered directly", task_id)
                report.answer = report.plan.direct_answer
                return report

            logger.info("Task %s planned with %d steps", task_id, len(report.plan))
            context = ExecutorContext(
                llm=self.llm,
                task_text=task_text,
                user_id=user_id,
                session_id=session_id,
                lease=lease,
                mcp_client=self.mcp_client
            )
            await self._run_steps(report, context)
            report.answer = await self._finalize(task_text, report.trace)
            return report
        finally:
            report.sandbox_id = report.sandbox_id or lease.sandbox_id
            if lease.provisioned:
                await lease.release()
            if report.reasoning:
                await self._persist(report)
            logger.info("Task %s finished (%d steps recorded)", task_id, len(report.trace))

    # =========================================================================
    # PLANNING
    # =========================================================================

    def _mcp_tools(self) -> str:
        if self.mcp_client is None:
            return ""
        return format_mcp_tools(self.mcp_client.all_capabilities())

    async def _plan(self, task_text: str, history: Optional[Sequence[Dict[str, Any]]]) -> Plan:
        prompt = planning_prompt(self.registry.describe(), self._mcp_tools())
        try:
            raw = await self.llm.call(prompt, task_text, history, model=self.llm.planning_model)
        except Exception as e:
            logger.error("Planning failed: %s", e)
            raise PlanningError(f"Could not obtain a plan: {e}") from e
        return parse_plan(raw)

    def _should_check_progress(self, completed: int) -> bool:
        return completed >= self.replan_min_steps and completed % self.replan_interval == 0

    async def _check_progress(self, task_text: str, plan: Plan, trace: ExecutionTrace, completed: int) -> Optional[Plan]:
        """Ask whether the remaining plan should change; None keeps it"""
        prompt = progress_analysis_prompt(task_text, plan, trace, completed, self.registry.describe())
        try:
            raw = await asyncio.wait_for(
                self.llm.call(prompt, task_text, model=self.llm.planning_model),
                timeout=self.progress_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Progress check timed out after %ss, keeping plan", self.progress_timeout)
            return None
        except Exception as e:
            logger.warning("Progress check failed, keeping plan: %s", e)
            return None
        return parse_replan(raw)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def _run_steps(self, report: TaskReport, context: ExecutorContext) -> None:
        plan = report.plan
        trace = report.trace
        task = report.task
        index = 0

        while index < len(plan):
            step = plan[index]
            executor = self.registry.get(step.action)
            input_data = trace.render_input(step.using_data)
            logger.info("Step %d/%d: %s using %s", index + 1, len(plan), step.step[:80], step.action)

            if step.action not in self.registry:
                trace.append(await executor.execute(step, context.for_step(input_data)))
                index += 1
                continue

            enhanced, entry = await self.reasoner.before_step(task, step, index, len(plan), trace)
            try:
                result = await executor.execute(enhanced, context.for_step(input_data))
            except Exception as e:
                logger.exception("Step %d (%s) raised", index + 1, step.action)
                message = str(e) or type(e).__name__
                result = StepResult(step=step.step, action=step.action, output={"error": message, "success": False}, error=message)
            result.step = step.step
            trace.append(result)
            if result.error:
                entry.error = entry.error or f"step failed: {result.error}"

            reflection = await self.reasoner.reflect(task, step, index, len(plan), result, entry)
            report.reasoning.append(entry)
            index += 1

            if wants_replan(reflection) and self._should_check_progress(index):
                updated = await self._check_progress(task, plan, trace, index)
                if updated is not None:
                    added = len(updated) - (len(plan) - index)
                    plan = Plan(steps=plan.steps[:index] + updated.steps)
                    report.plan = plan
                    report.replans += 1
                    logger.info("Plan updated after step %d (%+d steps)", index, added)

            if index % self.persist_interval == 0:
                await self._persist(report)

    async def _finalize(self, task_text: str, trace: ExecutionTrace) -> str:
        prompt = finalization_prompt(task_text, trace)
        try:
            answer = await asyncio.wait_for(
                self.llm.call(prompt, task_text, json_response=False),
                timeout=self.finalization_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Final synthesis timed out after %ss", self.finalization_timeout)
            return fallback_answer(trace, TimeoutError(f"timed out after {self.finalization_timeout}s"))
        except Exception as e:
            logger.warning("Final synthesis failed: %s", e)
            return fallback_answer(trace, e)

        if not isinstance(answer, str) or not answer.strip():
            return fallback_answer(trace)
        return answer.strip()

    async def _persist(self, report: TaskReport) -> None:
        if self.reasoning_store is None:
            return
        try:
            await self.reasoning_store.save(report.user_id, report.session_id, report.reasoning)
        except Exception as e:
            logger.error("Failed to persist reasoning trace for %s: %s", report.task_id, e)
