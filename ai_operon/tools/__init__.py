"""
Tools module - Executor registry, sandboxed executors, research, generation and tool servers
"""

from typing import Optional

from .tool_registry import Executor, ExecutorContext, ExecutorRegistry, NoopExecutor, SandboxLease
from .mcp_client import (
    Capability,
    McpClient,
    ProtocolError,
    ProtocolSession,
    ProtocolTimeoutError,
    ServerClosedError,
    ServerNotRunningError,
    SessionState,
    ToolCallError,
    UnknownCapabilityError,
)
from .generation_tools import ChatCompletionExecutor, ImageGenerationExecutor, WriterExecutor
from .filesystem_tools import FileSystemExecutor
from .code_executor import BashExecutor, PythonExecuteExecutor
from .research_tools import DeepResearchExecutor, WebResearcher, WebSearchExecutor
from .mcp_tools import McpToolExecutor


def create_default_registry(researcher: Optional[WebResearcher] = None) -> ExecutorRegistry:
    """Registry with every built-in executor"""
    researcher = researcher or WebResearcher()
    return ExecutorRegistry([
        ChatCompletionExecutor(),
        FileSystemExecutor(),
        PythonExecuteExecutor(),
        BashExecutor(),
        WebSearchExecutor(researcher),
        DeepResearchExecutor(researcher),
        WriterExecutor(),
        ImageGenerationExecutor(),
        McpToolExecutor(),
    ])


__all__ = [
    'Executor',
    'ExecutorContext',
    'ExecutorRegistry',
    'NoopExecutor',
    'SandboxLease',
    'Capability',
    'McpClient',
    'ProtocolError',
    'ProtocolSession',
    'ProtocolTimeoutError',
    'ServerClosedError',
    'ServerNotRunningError',
    'SessionState',
    'ToolCallError',
    'UnknownCapabilityError',
    'ChatCompletionExecutor',
    'ImageGenerationExecutor',
    'WriterExecutor',
    'FileSystemExecutor',
    'BashExecutor',
    'PythonExecuteExecutor',
    'DeepResearchExecutor',
    'WebResearcher',
    'WebSearchExecutor',
    'McpToolExecutor',
    'create_default_registry',
]
