#!/usr/bin/env python3
"""
File System Tool
Model-driven file operations inside the task sandbox.

The model picks one action at a time; each action's outcome (or error) is fed
back until it answers "close" or the action budget runs out.
"""

import json
import logging
import posixpath
import shlex
from typing import Any, Dict, List, Optional, Tuple

from ai_operon.core.config import config
from ai_operon.core.llm_provider import LLMError
from ai_operon.orchestration.plan import Artifact, Step, StepResult
from ai_operon.sandbox.docker_executor import SandboxError, SandboxManager, SandboxPathError
from ai_operon.tools.tool_registry import Executor, ExecutorContext

logger = logging.getLogger(__name__)

MAX_READ_CHARS = 8000

FILESYSTEM_PROMPT = """
You are an AI agent that controls a file system. Do your best to complete the task provided by the user.
All paths are relative to the workspace directory {workdir}. NEVER use ".." in paths.

Respond with exactly ONE of the following JSON objects at a time:
{{"action": "saveToFile", "content": "content to save", "path": "directory", "filename": "file name"}}
{{"action": "readFile", "path": "directory", "filename": "file name"}}
{{"action": "deleteFile", "path": "directory", "filename": "file name"}}
{{"action": "createDirectory", "path": "directory to create"}}
{{"action": "deleteDirectory", "path": "directory to delete"}}
{{"action": "listFiles", "path": "directory to list"}}
{{"action": "close", "summary": "detailed summary of the results"}}

After each action you will receive its result. Once the task is complete, respond with
the "close" action. Never add placeholders; write complete content.

Data previous steps have collected to complete the task:
{input_data}
"""


def resolve_path(path: Optional[str], filename: Optional[str] = None, workdir: str = "/app") -> str:
    """
    Map a model-supplied path to an absolute path inside the workspace.

    Raises:
        SandboxPathError: on traversal or paths outside the workspace
    """
    raw = (path or "").strip().replace("\\", "/")
    if filename:
        raw = posixpath.join(raw, str(filename).strip().replace("/", "_").replace("\\", "_"))

    if ".." in raw.split("/"):
        raise SandboxPathError(f"Directory traversal is not allowed: {raw}")

    if raw.startswith("/"):
        resolved = posixpath.normpath(raw)
        if resolved != workdir and not resolved.startswith(workdir.rstrip("/") + "/"):
            raise SandboxPathError(f"Path {raw} is outside the workspace {workdir}")
        return resolved
    return posixpath.normpath(posixpath.join(workdir, raw))


class FileSystemExecutor(Executor):
    """fileSystem: save, read, delete and list files in the sandbox"""

    name = "fileSystem"
    description = "save and load files, create directories and list the workspace"
    requires_sandbox = True

    def __init__(self, max_actions: Optional[int] = None, workdir: Optional[str] = None):
        self.max_actions = max_actions or config.get("tools.filesystem_max_actions", 20)
        self.workdir = workdir or config.get("sandbox.workdir", "/app")

    async def execute(self, step: Step, context: ExecutorContext) -> StepResult:
        try:
            sandbox_id = await context.sandbox()
        except Exception as e:
            return self.failure(step, e)
        manager = context.sandbox_manager

        if step.params.get("path") and "content" in step.params:
            return await self._write_direct(step, manager, sandbox_id)

        system = FILESYSTEM_PROMPT.format(workdir=self.workdir, input_data=context.input_data or "none")
        history: List[Dict[str, str]] = []
        operations: List[Dict[str, Any]] = []
        artifacts: List[Artifact] = []
        message = step.instruction
        summary = None

        for _ in range(self.max_actions):
            try:
                decision = await context.llm.call(system, message, history)
            except LLMError as e:
                result = self.failure(step, e)
                result.output = {"error": str(e), "success": False, "operations": operations}
                result.artifacts = artifacts
                return result

            history.append({"role": "user", "content": message})
            history.append({"role": "assistant", "content": json.dumps(decision, default=str)})

            if not isinstance(decision, dict) or decision.get("fallback"):
                message = "Error: your response was not a valid JSON action. Respond with one JSON action."
                continue

            if decision.get("action") == "close":
                summary = decision.get("summary") or "File operations completed"
                break

            message = await self._apply(decision, manager, sandbox_id, operations, artifacts)
        else:
            logger.warning("fileSystem stopped after %d actions without closing", self.max_actions)
            summary = f"Stopped after {self.max_actions} file operations"

        return self.result(step, {"summary": summary, "operations": operations}, artifacts=artifacts)

    async def _write_direct(self, step: Step, manager: SandboxManager, sandbox_id: str) -> StepResult:
        try:
            path = resolve_path(step.params["path"], workdir=self.workdir)
            content = _as_text(step.params["content"])
            await manager.write_file(sandbox_id, path, content)
        except (SandboxError, ValueError) as e:
            return self.failure(step, e)
        return self.result(
            step,
            {"summary": f"File saved: {path}", "operations": [{"action": "saveToFile", "path": path}]},
            artifacts=[Artifact(path=path, content=content)]
        )

    async def _apply(
        self,
        decision: Dict[str, Any],
        manager: SandboxManager,
        sandbox_id: str,
        operations: List[Dict[str, Any]],
        artifacts: List[Artifact]
    ) -> str:
        """Run one action and describe the outcome for the model"""
        action = decision.get("action")
        try:
            if action == "saveToFile":
                if not decision.get("filename"):
                    return "Error: saveToFile needs a filename"
                path = resolve_path(decision.get("path"), decision.get("filename"), self.workdir)
                content = _as_text(decision.get("content", ""))
                await manager.write_file(sandbox_id, path, content)
                operations.append({"action": action, "path": path})
                artifacts.append(Artifact(path=path, content=content))
                return f"File saved: {path}"

            if action == "readFile":
                path = resolve_path(decision.get("path"), decision.get("filename"), self.workdir)
                content = await manager.read_file(sandbox_id, path)
                operations.append({"action": action, "path": path, "preview": content[:100]})
                return f"File read: {path}\n\nContent:\n{content[:MAX_READ_CHARS]}"

            if action == "deleteFile":
                path = resolve_path(decision.get("path"), decision.get("filename"), self.workdir)
                await self._shell(manager, sandbox_id, f"rm -f {shlex.quote(path)}")
                operations.append({"action": action, "path": path})
                return f"File deleted: {path}"

            if action == "createDirectory":
                path = resolve_path(decision.get("path"), workdir=self.workdir)
                await self._shell(manager, sandbox_id, f"mkdir -p {shlex.quote(path)}")
                operations.append({"action": action, "path": path})
                return f"Directory created: {path}"

            if action == "deleteDirectory":
                path = resolve_path(decision.get("path"), workdir=self.workdir)
                if path == self.workdir:
                    return "Error: cannot delete the workspace root"
                await self._shell(manager, sandbox_id, f"rm -rf {shlex.quote(path)}")
                operations.append({"action": action, "path": path})
                return f"Directory deleted: {path}"

            if action == "listFiles":
                path = resolve_path(decision.get("path"), workdir=self.workdir)
                files = await manager.list_files(sandbox_id, path)
                operations.append({"action": action, "path": path, "result": files})
                return f"Files in {path}: {json.dumps(files)}"

        except (SandboxError, ValueError) as e:
            logger.info("fileSystem action %s failed: %s", action, e)
            return f"Error: {e}"

        return f"Error: unknown action {action!r}"

    @staticmethod
    async def _shell(manager: SandboxManager, sandbox_id: str, command: str) -> Tuple[str, str]:
        result = await manager.exec(sandbox_id, command)
        if not result.ok:
            raise SandboxError(result.stderr.strip() or f"command failed with exit code {result.exit_code}")
        return result.stdout, result.stderr


def _as_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, indent=2, default=str)
