#!/usr/bin/env python3
"""
Tool Server Protocol Client
Runs external tool servers as long-lived subprocesses and talks to them with
newline-delimited JSON requests: {id, method, params} out, {id, result} or
{id, error: {message}} back.

Responses are matched to callers by request id, so concurrent invocations from
different tasks can share one session and replies may arrive in any order.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ai_operon.core.config import config

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_PARSE_ERRORS = 10
READ_CHUNK_SIZE = 65536
KILL_WAIT_SEC = 2.0

# Only these (plus the env configured for the server) reach the subprocess
_SAFE_ENV_VARS: Set[str] = {
    "PATH", "HOME", "USER", "LOGNAME", "SHELL", "TERM",
    "LANG", "LC_ALL", "LC_CTYPE", "TZ",
    "TMPDIR", "TEMP", "TMP",
    "NODE_PATH", "NODE_ENV",
    "PYTHONPATH", "VIRTUAL_ENV",
    "XDG_CONFIG_HOME", "XDG_DATA_HOME",
}


class ProtocolError(Exception):
    """Base class for tool server failures"""


class ServerNotRunningError(ProtocolError):
    """No running session for the server"""


class ServerClosedError(ProtocolError):
    """The session terminated while the request was pending"""


class ToolCallError(ProtocolError):
    """The server answered with an error object"""


class ProtocolTimeoutError(ProtocolError):
    """No response within the request timeout"""


class UnknownCapabilityError(ProtocolError):
    """The server did not advertise the requested capability"""


class SessionState(Enum):
    """Protocol session lifecycle"""
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    TERMINATED = "terminated"


@dataclass
class Capability:
    """A tool advertised by a server"""
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Capability':
        return cls(
            name=data.get("name", ""),
            description=data.get("description", ""),
            input_schema=data.get("inputSchema") or {}
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


@dataclass
class PendingRequest:
    """A request waiting for its response"""
    request_id: int
    payload: Dict[str, Any]
    future: asyncio.Future


def _create_safe_env(custom_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Build a minimal environment for server subprocesses"""
    safe = {var: os.environ[var] for var in _SAFE_ENV_VARS if os.environ.get(var)}
    if custom_env:
        safe.update({k: str(v) for k, v in custom_env.items()})
    return safe


class ProtocolSession:
    """
    One external tool server process.

    Owns the subprocess, the discovered capabilities and the table of pending
    requests. When the process goes away every pending request fails with
    ServerClosedError and the table is emptied.
    """

    def __init__(
        self,
        name: str,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        discovery_method: str = "tools/list",
        call_method: str = "tools/call",
        request_timeout: Optional[float] = None,
        on_terminated: Optional[Callable[['ProtocolSession'], None]] = None
    ):
        self.name = name
        self.command = command
        self.args = list(args or [])
        self.env = env
        self.discovery_method = discovery_method
        self.call_method = call_method
        self.request_timeout = request_timeout
        self.on_terminated = on_terminated

        self.state = SessionState.STARTING
        self.capabilities: List[Capability] = []
        self._process: Optional[asyncio.subprocess.Process] = None
        self._pending: Dict[int, PendingRequest] = {}
        self._next_id = 1
        self._parse_errors = 0
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_running(self) -> bool:
        return self.state in (SessionState.READY, SessionState.DEGRADED)

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    async def start(self) -> List[Capability]:
        """
        Spawn the server and discover its capabilities.

        Raises:
            ProtocolError: if the process cannot be spawned or discovery fails
        """
        logger.info("Starting tool server '%s': %s %s", self.name, self.command, " ".join(self.args))
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command, *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_create_safe_env(self.env)
            )
        except (OSError, ValueError) as e:
            self._terminate(f"spawn failed: {e}")
            raise ProtocolError(f"Failed to start tool server '{self.name}': {e}") from e

        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._drain_stderr())

        try:
            result = await self.request(self.discovery_method, {})
        except ProtocolError:
            await self.stop(grace=0)
            raise

        tools = result.get("tools", []) if isinstance(result, dict) else []
        self.capabilities = [Capability.from_dict(t) for t in tools if isinstance(t, dict)]
        if self.state is SessionState.STARTING:
            self.state = SessionState.READY
        logger.info("Tool server '%s' ready with %d capabilities", self.name, len(self.capabilities))
        return list(self.capabilities)

    async def request(self, method: str, params: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        """
        Send a request and wait for the response bearing its id.

        Raises:
            ServerNotRunningError, ServerClosedError, ToolCallError, ProtocolTimeoutError
        """
        if self.state is SessionState.TERMINATED or self._process is None:
            raise ServerNotRunningError(f"Tool server '{self.name}' is not running")

        request_id = self._next_id
        self._next_id += 1
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(request_id, payload, future)

        try:
            try:
                async with self._write_lock:
                    self._process.stdin.write((json.dumps(payload) + "\n").encode("utf-8"))
                    await self._process.stdin.drain()
            except (OSError, RuntimeError, AttributeError) as e:
                self._degrade(f"write failed: {e}")
                raise ServerClosedError(f"Tool server '{self.name}' closed: {e}") from e

            timeout = timeout if timeout is not None else self.request_timeout
            try:
                response = await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Request %d (%s) to '%s' timed out after %ss", request_id, method, self.name, timeout)
                raise ProtocolTimeoutError(f"Timeout waiting for '{self.name}' ({method}, {timeout}s)")
        finally:
            self._pending.pop(request_id, None)

        error = response.get("error")
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise ToolCallError(f"{method} on '{self.name}' failed: {message}")
        return response.get("result")

    def list_capabilities(self) -> List[Capability]:
        return list(self.capabilities)

    def has_capability(self, name: str) -> bool:
        return any(c.name == name for c in self.capabilities)

    async def invoke(self, capability: str, arguments: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        """Call one of the server's capabilities"""
        if not self.has_capability(capability):
            raise UnknownCapabilityError(f"Tool '{capability}' not found on server '{self.name}'")
        return await self.request(
            self.call_method, {"name": capability, "arguments": arguments or {}}, timeout=timeout
        )

    async def stop(self, grace: float = 1.0) -> None:
        """
        Ask the server to exit, kill it if it is still alive after `grace`
        seconds, and tear the session down whether or not it exited.
        """
        process = self._process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=grace)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.debug("Tool server '%s' ignored SIGTERM, killing", self.name)
                try:
                    process.kill()
                    await asyncio.wait_for(process.wait(), timeout=KILL_WAIT_SEC)
                except (ProcessLookupError, asyncio.TimeoutError):
                    pass

        self._terminate("stopped")

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()

    def _degrade(self, reason: str) -> None:
        if self.state in (SessionState.STARTING, SessionState.READY):
            logger.warning("Tool server '%s' degraded: %s", self.name, reason)
            self.state = SessionState.DEGRADED

    def _fail_pending(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            if not request.future.done():
                request.future.set_exception(ServerClosedError(f"Tool server '{self.name}' closed ({reason})"))
        if pending:
            logger.warning("Failed %d pending request(s) on '%s': %s", len(pending), self.name, reason)

    def _terminate(self, reason: str) -> None:
        if self.state is SessionState.TERMINATED:
            return
        self.state = SessionState.TERMINATED
        logger.info("Tool server '%s' terminated: %s", self.name, reason)
        self._fail_pending(reason)
        if self.on_terminated is not None:
            self.on_terminated(self)

    def _handle_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            self._parse_errors += 1
            logger.debug(
                "Tool server '%s': non-JSON line (%d/%d): %s",
                self.name, self._parse_errors, MAX_CONSECUTIVE_PARSE_ERRORS, line[:200]
            )
            if self._parse_errors >= MAX_CONSECUTIVE_PARSE_ERRORS:
                self._degrade("too many consecutive non-JSON lines on stdout")
            return

        self._parse_errors = 0
        if self.state is SessionState.DEGRADED:
            self.state = SessionState.READY
        if not isinstance(message, dict):
            return

        request = None
        if "id" in message:
            request_id = message["id"]
            if isinstance(request_id, bool) or not isinstance(request_id, (int, str)):
                logger.warning("Tool server '%s' sent a message with invalid id: %s", self.name, line[:200])
                return
            request = self._pending.get(request_id)
        if request is not None:
            if not request.future.done():
                request.future.set_result(message)
        elif "method" in message:
            logger.debug("Tool server '%s' notification: %s", self.name, message.get("method"))
        else:
            logger.debug("Tool server '%s' sent unmatched message: %s", self.name, line[:200])

    async def _read_stdout(self) -> None:
        buffer = b""
        reason = "stdout closed"
        try:
            while True:
                chunk = await self._process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                buffer += chunk
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    self._handle_line(line)
            if buffer.strip():
                self._handle_line(buffer)
            returncode = await self._process.wait()
            reason = f"exited with code {returncode}"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._degrade(f"read failed: {e}")
            reason = f"I/O error: {e}"
        self._terminate(reason)

    async def _drain_stderr(self) -> None:
        try:
            while True:
                line = await self._process.stderr.readline()
                if not line:
                    break
                logger.debug("Tool server '%s' stderr: %s", self.name, line.decode("utf-8", errors="replace").rstrip())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Tool server '%s' stderr reader stopped: %s", self.name, e)


class McpClient:
    """
    Registry of running tool server sessions.

    Sessions are shared by every task that uses the server; a session removes
    itself from the registry when it terminates.
    """

    def __init__(
        self,
        discovery_method: Optional[str] = None,
        call_method: Optional[str] = None,
        stop_grace: Optional[float] = None,
        request_timeout: Optional[float] = None
    ):
        self.discovery_method = discovery_method or config.get("mcp.discovery_method", "tools/list")
        self.call_method = call_method or config.get("mcp.call_method", "tools/call")
        self.stop_grace = stop_grace if stop_grace is not None else config.get("mcp.stop_grace_sec", 1.0)
        self.request_timeout = request_timeout if request_timeout is not None else config.get("mcp.request_timeout_sec")
        self._sessions: Dict[str, ProtocolSession] = {}

    def _forget(self, session: ProtocolSession) -> None:
        if self._sessions.get(session.name) is session:
            del self._sessions[session.name]

    def _session(self, server_name: str) -> ProtocolSession:
        session = self._sessions.get(server_name)
        if session is None or session.state is SessionState.TERMINATED:
            raise ServerNotRunningError(f"Tool server '{server_name}' is not running")
        return session

    async def start(
        self,
        server_name: str,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None
    ) -> bool:
        """
        Start a server and discover its capabilities.

        Returns:
            True if the server is running afterwards
        """
        existing = self._sessions.get(server_name)
        if existing is not None and existing.is_running:
            logger.info("Tool server '%s' is already running", server_name)
            return True

        session = ProtocolSession(
            name=server_name,
            command=command,
            args=args,
            env=env,
            discovery_method=self.discovery_method,
            call_method=self.call_method,
            request_timeout=self.request_timeout,
            on_terminated=self._forget
        )
        self._sessions[server_name] = session
        try:
            await session.start()
        except ProtocolError as e:
            logger.error("Error starting tool server '%s': %s", server_name, e)
            self._forget(session)
            return False
        return True

    async def start_all(self, servers_config: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, bool]:
        """Start every server in a {name: {command, args, env}} mapping"""
        if servers_config is None:
            servers_config = config.get("mcp.servers", {}) or {}

        results = {}
        for server_name, server in servers_config.items():
            if not server or not server.get("command"):
                logger.warning("Tool server '%s' has no command configured", server_name)
                results[server_name] = False
                continue
            results[server_name] = await self.start(
                server_name, server["command"], server.get("args"), server.get("env")
            )
        return results

    def list_capabilities(self, server_name: str) -> List[Capability]:
        return self._session(server_name).list_capabilities()

    def all_capabilities(self) -> Dict[str, List[Capability]]:
        return {name: session.list_capabilities() for name, session in self._sessions.items() if session.is_running}

    def running_servers(self) -> List[str]:
        return [name for name, session in self._sessions.items() if session.is_running]

    def get_session(self, server_name: str) -> Optional[ProtocolSession]:
        return self._sessions.get(server_name)

    async def invoke(self, server_name: str, capability: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Call a capability on a running server"""
        return await self._session(server_name).invoke(capability, arguments)

    async def stop(self, server_name: str) -> None:
        session = self._sessions.get(server_name)
        if session is None:
            return
        await session.stop(grace=self.stop_grace)
        self._forget(session)

    async def stop_all(self) -> None:
        await asyncio.gather(*(self.stop(name) for name in list(self._sessions)))
