#!/usr/bin/env python3
"""
Docker Sandbox Manager
Provision one ephemeral container per task, run commands and move files in and
out of it, and tear it down when the task ends - the host is NEVER touched.

All Docker SDK calls are blocking; they run in worker threads so a task waiting
on its sandbox never blocks other tasks.
"""

import asyncio
import io
import logging
import os
import posixpath
import re
import secrets
import shlex
import tarfile
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, TypeVar, Union

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from ai_operon.core.config import config
from ai_operon.sandbox.error_classifier import Classification, classify_error, is_name_conflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_LISTED_FILES = 20


class SandboxError(Exception):
    """Base class for sandbox failures"""


class SandboxUnavailableError(SandboxError):
    """Docker daemon cannot be reached"""


class SandboxPathError(SandboxError, ValueError):
    """A path violates the sandbox path contract"""


class SandboxNotFoundError(SandboxError):
    """The sandbox id is not managed here or the container is gone"""


class SandboxFileNotFoundError(SandboxError):
    """A file inside the sandbox does not exist; the message says what does"""


class SandboxOperationError(SandboxError):
    """An operation failed, possibly after several attempts"""

    def __init__(self, message: str, attempts: int = 1, classification: Optional[Classification] = None):
        super().__init__(message)
        self.attempts = attempts
        self.classification = classification


class SandboxState(Enum):
    """Sandbox lifecycle"""
    PROVISIONING = "provisioning"
    READY = "ready"
    IN_USE = "in_use"
    DESTROYED = "destroyed"


@dataclass
class Sandbox:
    """A container owned by exactly one task"""
    sandbox_id: str
    task_id: str
    state: SandboxState = SandboxState.PROVISIONING
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())


class ExecResult(NamedTuple):
    """Output of a command run inside a sandbox"""
    stdout: str
    stderr: str
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def normalize_sandbox_path(path: str) -> str:
    """
    Normalize a path for use inside the sandbox and enforce that it is absolute.

    Raises:
        SandboxPathError: for empty or relative paths
    """
    if not path or not isinstance(path, str):
        raise SandboxPathError("Sandbox path must be a non-empty string")
    normalized = path.replace("\\", "/").replace('"', "").strip()
    if not posixpath.isabs(normalized):
        raise SandboxPathError(f"Sandbox paths must be absolute, got: {path}")
    return posixpath.normpath(normalized)


class SandboxManager:
    """
    Manage per-task Docker sandboxes.

    Every mutating operation runs inside a bounded retry loop with exponential
    backoff; errors classified as permanent are surfaced on the first attempt.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        base_image: Optional[str] = None,
        container_prefix: Optional[str] = None,
        max_retries: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
        max_delay_ms: Optional[int] = None,
        workdir: Optional[str] = None,
        mem_limit: Optional[str] = None,
        command_timeout: Optional[float] = None,
        staging_dir: Optional[str] = None
    ):
        self.base_image = base_image or config.get("sandbox.base_image", "python:3.9-slim")
        self.container_prefix = container_prefix or config.get("sandbox.container_prefix", "operon-task-")
        self.max_retries = max_retries or config.get("sandbox.max_retries", 3)
        self.base_delay_ms = base_delay_ms if base_delay_ms is not None else config.get("sandbox.base_delay_ms", 100)
        self.max_delay_ms = max_delay_ms if max_delay_ms is not None else config.get("sandbox.max_delay_ms", 2000)
        self.workdir = workdir or config.get("sandbox.workdir", "/app")
        self.mem_limit = mem_limit or config.get("sandbox.mem_limit")
        self.command_timeout = command_timeout or config.get("sandbox.command_timeout_sec", 300)
        self.staging_dir = staging_dir

        self._client = client
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._sandboxes: Dict[str, Sandbox] = {}
        self._by_task: Dict[str, str] = {}
        self._task_locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # DOCKER PLUMBING
    # =========================================================================

    def _docker(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise SandboxUnavailableError(f"Docker is not available: {e}") from e
        return self._client

    async def _call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def is_available(self) -> bool:
        """Check if the Docker daemon answers"""
        try:
            client = self._docker()
            await self._call(client.ping)
            return True
        except (SandboxUnavailableError, DockerException) as e:
            logger.error("Docker is not available: %s", e)
            return False

    async def initialize(self) -> None:
        """Verify the daemon and pull the base image if it is missing"""
        async with self._init_lock:
            if self._initialized:
                return
            if not await self.is_available():
                raise SandboxUnavailableError("Docker is not available or not running")

            client = self._docker()
            try:
                await self._call(client.images.get, self.base_image)
            except ImageNotFound:
                logger.info("Pulling Docker image %s", self.base_image)
                await self._call(client.images.pull, self.base_image)

            self._initialized = True
            logger.info("Docker initialized (image %s)", self.base_image)

    def _generate_name(self, task_id: str) -> str:
        safe_task = re.sub(r"[^a-zA-Z0-9_.-]", "-", task_id)[:40]
        return f"{self.container_prefix}{safe_task}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"

    def _backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before the attempt after `attempt`"""
        return min(self.base_delay_ms * (2 ** attempt), self.max_delay_ms) / 1000.0

    async def _retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """
        Run an async operation with bounded retries.

        Raises:
            SandboxError: the permanent error as-is, or SandboxOperationError
                once retries are exhausted
        """
        last_error: Optional[BaseException] = None
        last_classification: Optional[Classification] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return await operation()
            except SandboxPathError:
                raise
            except Exception as e:
                last_error = e
                last_classification = classify_error(e)
                logger.warning(
                    "Docker operation '%s' failed (attempt %d/%d, %s: %s): %s",
                    description, attempt, self.max_retries,
                    last_classification.error_class.value, last_classification.reason, e
                )

                if not last_classification.should_retry:
                    logger.error("'%s' failed with non-retryable error, stopping retries", description)
                    if isinstance(e, SandboxError):
                        raise
                    raise SandboxOperationError(
                        f"{description} failed: {e}", attempts=attempt, classification=last_classification
                    ) from e

                if is_name_conflict(e):
                    logger.debug("Container name conflict, retrying with a different name")

                if attempt < self.max_retries:
                    delay = self._backoff_delay(attempt)
                    logger.debug("Waiting %.2fs before retry %d", delay, attempt + 1)
                    await asyncio.sleep(delay)

        raise SandboxOperationError(
            f"{description} failed after {self.max_retries} attempts: {last_error}",
            attempts=self.max_retries,
            classification=last_classification
        ) from last_error

    def _task_lock(self, task_id: str) -> asyncio.Lock:
        lock = self._task_locks.get(task_id)
        if lock is None:
            lock = self._task_locks[task_id] = asyncio.Lock()
        return lock

    def _record(self, sandbox_id: str) -> Sandbox:
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is None or sandbox.state is SandboxState.DESTROYED:
            raise SandboxNotFoundError(f"No such container: {sandbox_id}")
        return sandbox

    async def _container(self, sandbox_id: str) -> Any:
        sandbox = self._record(sandbox_id)
        container = await self._call(self._docker().containers.get, sandbox_id)
        if sandbox.state is SandboxState.READY:
            sandbox.state = SandboxState.IN_USE
        return container

    async def _run(self, container: Any, command: str, workdir: Optional[str] = None) -> ExecResult:
        def run():
            return container.exec_run(["sh", "-c", command], workdir=workdir or self.workdir, demux=True)

        try:
            exit_code, output = await asyncio.wait_for(self._call(run), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            raise SandboxOperationError(f"Command timed out after {self.command_timeout}s: {command[:100]}")

        stdout, stderr = output if output else (None, None)
        return ExecResult(
            stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
            stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
            exit_code=exit_code if exit_code is not None else 0
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def _is_running(self, sandbox_id: str) -> bool:
        try:
            container = await self._call(self._docker().containers.get, sandbox_id)
        except NotFound:
            return False
        except DockerException as e:
            logger.debug("Could not inspect %s: %s", sandbox_id, e)
            return False
        return getattr(container, "status", None) == "running"

    async def provision(self, task_id: str) -> str:
        """
        Get a sandbox for a task, reusing the task's live sandbox if it has one.

        Returns:
            Sandbox id (container name)
        """
        async with self._task_lock(task_id):
            existing = self._by_task.get(task_id)
            if existing:
                if await self._is_running(existing):
                    return existing
                logger.info("Sandbox %s for task %s is gone, provisioning a new one", existing, task_id)
                self._by_task.pop(task_id, None)
                self._sandboxes.pop(existing, None)

            await self.initialize()
            client = self._docker()

            async def create() -> str:
                name = self._generate_name(task_id)
                sandbox = Sandbox(sandbox_id=name, task_id=task_id)
                run_kwargs: Dict[str, Any] = {
                    "command": "sleep infinity",
                    "name": name,
                    "detach": True,
                    "working_dir": self.workdir,
                    "labels": {"ai_operon.task": task_id},
                }
                if self.mem_limit:
                    run_kwargs["mem_limit"] = self.mem_limit
                await self._call(client.containers.run, self.base_image, **run_kwargs)
                sandbox.state = SandboxState.READY
                self._sandboxes[name] = sandbox
                return name

            sandbox_id = await self._retry(create, "provision")
            self._by_task[task_id] = sandbox_id
            logger.info("Provisioned sandbox %s for task %s", sandbox_id, task_id)
            return sandbox_id

    async def destroy(self, sandbox_id: str) -> bool:
        """
        Remove a sandbox. Never raises: failures are logged and reported as False.
        """
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is not None and self._by_task.get(sandbox.task_id) == sandbox_id:
            self._by_task.pop(sandbox.task_id, None)
            lock = self._task_locks.get(sandbox.task_id)
            if lock is not None and not lock.locked():
                self._task_locks.pop(sandbox.task_id, None)

        try:
            container = await self._call(self._docker().containers.get, sandbox_id)
            await self._call(container.remove, force=True)
        except NotFound:
            logger.debug("Sandbox %s already removed", sandbox_id)
        except Exception as e:
            logger.error("Failed to remove sandbox %s: %s", sandbox_id, e)
            return False

        if sandbox is not None:
            sandbox.state = SandboxState.DESTROYED
        self._sandboxes.pop(sandbox_id, None)
        logger.info("Destroyed sandbox %s", sandbox_id)
        return True

    async def destroy_all(self) -> bool:
        """Destroy every tracked sandbox; True if all removals succeeded"""
        results = [await self.destroy(sandbox_id) for sandbox_id in list(self._sandboxes)]
        self._by_task.clear()
        self._task_locks = {
            task_id: lock for task_id, lock in self._task_locks.items() if lock.locked()
        }
        if not all(results):
            logger.error("Errors during sandbox cleanup (%d failed)", results.count(False))
        return all(results)

    def get(self, sandbox_id: str) -> Optional[Sandbox]:
        return self._sandboxes.get(sandbox_id)

    def sandbox_for_task(self, task_id: str) -> Optional[str]:
        return self._by_task.get(task_id)

    def list_sandboxes(self) -> List[Sandbox]:
        return list(self._sandboxes.values())

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def exec(self, sandbox_id: str, command: str, workdir: Optional[str] = None) -> ExecResult:
        """
        Run a shell command inside the sandbox.

        A non-zero exit code is a result, not a failure; only Docker-level
        errors are retried.
        """
        if workdir is not None:
            workdir = normalize_sandbox_path(workdir)

        async def operation() -> ExecResult:
            container = await self._container(sandbox_id)
            logger.debug("Executing in %s: %s", sandbox_id, command[:100])
            return await self._run(container, command, workdir)

        return await self._retry(operation, "exec")

    async def execute_python(self, sandbox_id: str, script_path: str, args: Optional[List[Any]] = None) -> ExecResult:
        """Run a Python script that already exists in the sandbox"""
        script_path = normalize_sandbox_path(script_path)
        arg_str = " ".join(shlex.quote(str(arg)) for arg in args or [])
        return await self.exec(sandbox_id, f"python {shlex.quote(script_path)} {arg_str}".strip())

    async def write_file(self, sandbox_id: str, path: str, content: Union[str, bytes]) -> bool:
        """
        Write a file inside the sandbox, creating parent directories.

        The content is staged in a host temporary file and copied in as a tar
        archive; the temporary file is removed whether or not the copy succeeds.
        """
        path = normalize_sandbox_path(path)
        directory, filename = posixpath.split(path)
        data = content.encode("utf-8") if isinstance(content, str) else content

        async def operation() -> bool:
            container = await self._container(sandbox_id)
            mkdir = await self._run(container, f"mkdir -p {shlex.quote(directory)}")
            if not mkdir.ok:
                raise SandboxOperationError(f"Could not create {directory}: {mkdir.stderr.strip()}")

            fd, temp_path = tempfile.mkstemp(prefix="operon-", dir=self.staging_dir)
            try:
                with os.fdopen(fd, "wb") as staged:
                    staged.write(data)
                archive = io.BytesIO()
                with tarfile.open(fileobj=archive, mode="w") as tar:
                    tar.add(temp_path, arcname=filename)
                accepted = await self._call(container.put_archive, directory, archive.getvalue())
                if accepted is False:
                    raise SandboxOperationError(f"Copy into {sandbox_id}:{path} was rejected")
                return True
            finally:
                self._remove_temp(temp_path)

        return await self._retry(operation, "write_file")

    async def read_file(self, sandbox_id: str, path: str) -> str:
        """Read a text file from the sandbox"""
        path = normalize_sandbox_path(path)

        async def operation() -> str:
            container = await self._container(sandbox_id)
            return (await self._copy_out(container, sandbox_id, path)).decode("utf-8", errors="replace")

        return await self._retry(operation, "read_file")

    async def download_file(self, sandbox_id: str, path: str, local_path: str) -> str:
        """Copy a file out of the sandbox onto the host, returning the host path"""
        path = normalize_sandbox_path(path)

        async def operation() -> str:
            container = await self._container(sandbox_id)
            data = await self._copy_out(container, sandbox_id, path)
            target_dir = os.path.dirname(os.path.abspath(local_path))
            os.makedirs(target_dir, exist_ok=True)
            with open(local_path, "wb") as f:
                f.write(data)
            return local_path

        return await self._retry(operation, "download_file")

    async def list_files(self, sandbox_id: str, directory: Optional[str] = None) -> List[str]:
        """List up to 20 files below a directory; empty list on failure"""
        directory = normalize_sandbox_path(directory or self.workdir)
        try:
            container = await self._container(sandbox_id)
            return await self._list_files(container, directory)
        except Exception as e:
            logger.warning("Failed to list files in %s:%s: %s", sandbox_id, directory, e)
            return []

    async def _list_files(self, container: Any, directory: str) -> List[str]:
        result = await self._run(
            container, f"find {shlex.quote(directory)} -type f 2>/dev/null | head -{MAX_LISTED_FILES}"
        )
        return [line for line in result.stdout.strip().split("\n") if line]

    async def _exists(self, container: Any, path: str, flag: str) -> bool:
        result = await self._run(container, f"test {flag} {shlex.quote(path)}")
        return result.ok

    async def _missing_file_error(self, container: Any, sandbox_id: str, path: str) -> SandboxFileNotFoundError:
        directory = posixpath.dirname(path)
        message = f"Could not find the file {path} in container {sandbox_id}."
        if not await self._exists(container, directory, "-d"):
            message += f" The directory {directory} does not exist."
        else:
            files = await self._list_files(container, directory)
            if files:
                message += f" Directory exists but file not found. Available files in {directory}: {', '.join(files[:10])}"
                if len(files) > 10:
                    message += f" (and {len(files) - 10} more)"
            else:
                message += f" Directory {directory} exists but is empty."
        return SandboxFileNotFoundError(message)

    async def _copy_out(self, container: Any, sandbox_id: str, path: str) -> bytes:
        if not await self._exists(container, path, "-f"):
            raise await self._missing_file_error(container, sandbox_id, path)

        fd, temp_path = tempfile.mkstemp(prefix="operon-", dir=self.staging_dir)
        try:
            with os.fdopen(fd, "wb") as staged:
                def fetch() -> None:
                    stream, _ = container.get_archive(path)
                    for chunk in stream:
                        staged.write(chunk)

                await self._call(fetch)
            with tarfile.open(temp_path, mode="r") as tar:
                member = next((m for m in tar.getmembers() if m.isfile()), None)
                extracted = tar.extractfile(member) if member else None
                if extracted is None:
                    raise SandboxOperationError(f"Archive for {sandbox_id}:{path} contained no file")
                return extracted.read()
        finally:
            self._remove_temp(temp_path)

    @staticmethod
    def _remove_temp(temp_path: str) -> None:
        try:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
        except OSError as e:
            logger.warning("Failed to clean up temp file %s: %s", temp_path, e)
