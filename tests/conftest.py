"""
Shared fixtures: fresh configuration, an in-memory Docker client and a
scripted language-model service.
"""

import asyncio
import io
import json
import posixpath
import shlex
import tarfile
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

import pytest
from docker.errors import ImageNotFound, NotFound

from ai_operon.core.config import _ENV_OVERRIDES, config
from ai_operon.sandbox.docker_executor import SandboxManager

# =============================================================================
# CONFIG
# =============================================================================

@pytest.fixture(autouse=True)
def fresh_config(tmp_path, monkeypatch):
    """Every test starts from the built-in defaults, isolated from the host"""
    for env_var, _, _ in _ENV_OVERRIDES:
        monkeypatch.delenv(env_var, raising=False)
    config.reload(str(tmp_path / "missing-settings.yaml"))
    config.set("memory.reasoning_dir", str(tmp_path / "reasoning"))
    config.set("tools.output_dir", str(tmp_path / "output"))
    config.set("logging.file", "")
    yield config


# =============================================================================
# FAKE DOCKER
# =============================================================================

class FakeContainer:
    """Container with an in-memory filesystem understanding the shell commands the manager sends"""

    def __init__(self, client: 'FakeDockerClient', name: str, working_dir: str, labels: Dict[str, str]):
        self.client = client
        self.name = name
        self.status = "running"
        self.labels = labels
        self.files: Dict[str, bytes] = {}
        self.dirs = {"/", working_dir}
        self.commands: List[str] = []
        self.exec_errors: List[Exception] = []
        self.put_calls = 0
        self.get_archive_calls = 0
        self.reject_put = False
        self.remove_error: Optional[Exception] = None
        self.command_handler: Optional[Callable[[str], Any]] = None

    def _add_dir(self, path: str) -> None:
        while path and path not in self.dirs:
            self.dirs.add(path)
            path = posixpath.dirname(path)

    def _is_dir(self, path: str) -> bool:
        return path in self.dirs or any(f.startswith(path.rstrip("/") + "/") for f in self.files)

    def exec_run(self, cmd, workdir=None, demux=False):
        command = cmd[-1]
        self.commands.append(command)
        if self.exec_errors:
            raise self.exec_errors.pop(0)

        if "|" in command and command.startswith("find "):
            directory = shlex.split(command.split("|")[0])[1]
            found = sorted(f for f in self.files if f.startswith(directory.rstrip("/") + "/"))[:20]
            return 0, ("\n".join(found).encode() if found else None, None)

        tokens = shlex.split(command)
        if tokens[:2] == ["mkdir", "-p"]:
            self._add_dir(tokens[2])
            return 0, (None, None)
        if tokens[:2] == ["test", "-f"]:
            return (0 if tokens[2] in self.files else 1), (None, None)
        if tokens[:2] == ["test", "-d"]:
            return (0 if self._is_dir(tokens[2]) else 1), (None, None)
        if tokens[:2] == ["rm", "-f"]:
            self.files.pop(tokens[2], None)
            return 0, (None, None)
        if tokens[:2] == ["rm", "-rf"]:
            prefix = tokens[2].rstrip("/") + "/"
            for path in [f for f in self.files if f.startswith(prefix)]:
                del self.files[path]
            self.dirs.discard(tokens[2])
            return 0, (None, None)

        if self.command_handler is not None:
            exit_code, stdout, stderr = self.command_handler(command)
            return exit_code, (stdout.encode() if stdout else None, stderr.encode() if stderr else None)
        return 0, (None, None)

    def put_archive(self, path, data):
        self.put_calls += 1
        if self.reject_put:
            return False
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
            for member in tar.getmembers():
                self.files[posixpath.join(path, member.name)] = tar.extractfile(member).read()
        return True

    def get_archive(self, path):
        self.get_archive_calls += 1
        if path not in self.files:
            raise NotFound(f"Could not find the file {path} in container {self.name}")
        data = self.files[path]
        archive = io.BytesIO()
        with tarfile.open(fileobj=archive, mode="w") as tar:
            info = tarfile.TarInfo(posixpath.basename(path))
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        raw = archive.getvalue()
        half = len(raw) // 2
        return iter([raw[:half], raw[half:]]), {"name": posixpath.basename(path), "size": len(data)}

    def remove(self, force=False):
        if self.remove_error is not None:
            raise self.remove_error
        self.status = "removed"
        self.client.containers.items.pop(self.name, None)
        self.client.containers.removed.append(self.name)


class FakeContainers:
    def __init__(self, client: 'FakeDockerClient'):
        self.client = client
        self.items: Dict[str, FakeContainer] = {}
        self.created: Dict[str, FakeContainer] = {}
        self.removed: List[str] = []
        self.run_errors: List[Exception] = []
        self.run_calls: List[Dict[str, Any]] = []
        self.get_errors: List[Exception] = []

    def run(self, image, command=None, name=None, detach=False, working_dir="/", labels=None, **kwargs):
        self.run_calls.append({"image": image, "command": command, "name": name, **kwargs})
        if self.run_errors:
            raise self.run_errors.pop(0)
        container = FakeContainer(self.client, name, working_dir, labels or {})
        self.items[name] = container
        self.created[name] = container
        return container

    def get(self, name):
        if self.get_errors:
            raise self.get_errors.pop(0)
        if name not in self.items:
            raise NotFound(f"No such container: {name}")
        return self.items[name]


class FakeImages:
    def __init__(self, available=("python:3.9-slim",)):
        self.available = set(available)
        self.pulled: List[str] = []

    def get(self, name):
        if name not in self.available:
            raise ImageNotFound(f"No such image: {name}")
        return name

    def pull(self, name):
        self.pulled.append(name)
        self.available.add(name)
        return name


class FakeDockerClient:
    def __init__(self, images=("python:3.9-slim",)):
        self.containers = FakeContainers(self)
        self.images = FakeImages(images)
        self.down = False

    def ping(self):
        if self.down:
            from docker.errors import DockerException
            raise DockerException("Error while fetching server API version: connection refused")
        return True

    def only_container(self) -> FakeContainer:
        assert len(self.containers.items) == 1
        return next(iter(self.containers.items.values()))


@pytest.fixture
def docker_client():
    return FakeDockerClient()


@pytest.fixture
def staging_dir(tmp_path):
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def make_manager(docker_client, staging_dir):
    """Build a SandboxManager inside the running event loop"""
    def factory(**kwargs) -> SandboxManager:
        options = {"client": docker_client, "staging_dir": str(staging_dir), "command_timeout": 5}
        options.update(kwargs)
        return SandboxManager(**options)
    return factory


@pytest.fixture
def sleeps(monkeypatch):
    """Record asyncio.sleep delays without actually waiting"""
    recorded: List[float] = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay, result=None):
        recorded.append(delay)
        await real_sleep(0)
        return result

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return recorded


# =============================================================================
# SCRIPTED LLM
# =============================================================================

PROMPT_MARKERS = (
    ("plan", "plan a task to answer the question"),
    ("reasoning", "REASON about this step"),
    ("reflection", "REFLECT on this result"),
    ("progress", "analyzing the progress"),
    ("final", "finalizing a complex task"),
)


class Hang:
    """Response that never arrives"""


class ScriptedLLM:
    """
    Stand-in for LLMService routing each call by the system prompt it carries.

    Values may be plain responses, exceptions to raise, Hang, callables
    taking (system, prompt, history) or lists consumed one per call (the last
    element repeats).
    """

    planning_model = "planner"

    def __init__(
        self,
        plan: Any = None,
        reasoning: Any = None,
        reflection: Any = None,
        progress: Any = None,
        final: Any = "Final answer",
        executor: Any = "executor output",
        image_url: str = "https://images.example/generated.png"
    ):
        self.responses = {
            "plan": plan,
            "reasoning": reasoning if reasoning is not None else {"reasoning": "think", "approach": "do it"},
            "reflection": reflection if reflection is not None else {"reflection": "fine", "changePlan": False},
            "progress": progress if progress is not None else {"status": "NO_CHANGES_NEEDED"},
            "final": final,
            "executor": executor,
        }
        self.image_url = image_url
        self.calls: List[Dict[str, Any]] = []
        self.counts: Counter = Counter()

    @staticmethod
    def kind_of(system_message: str) -> str:
        for kind, marker in PROMPT_MARKERS:
            if marker in system_message:
                return kind
        return "executor"

    async def call(self, system_message, prompt, history=None, json_response=True, model=None):
        kind = self.kind_of(system_message)
        index = self.counts[kind]
        self.counts[kind] += 1
        self.calls.append({
            "kind": kind, "system": system_message, "prompt": prompt,
            "history": list(history or []), "json_response": json_response, "model": model
        })

        value = self.responses[kind]
        if isinstance(value, list):
            value = value[min(index, len(value) - 1)] if value else None
        if value is Hang:
            await asyncio.sleep(3600)
        if isinstance(value, BaseException):
            raise value
        if callable(value):
            value = value(system_message, prompt, history)
        return json.loads(json.dumps(value)) if isinstance(value, (dict, list)) else value

    async def generate_image(self, prompt):
        self.counts["image"] += 1
        return self.image_url
