"""
Sandbox module - per-task Docker containers with classified retries
"""

from .error_classifier import Classification, ErrorClass, classify_error, is_name_conflict
from .docker_executor import (
    ExecResult,
    Sandbox,
    SandboxError,
    SandboxFileNotFoundError,
    SandboxManager,
    SandboxNotFoundError,
    SandboxOperationError,
    SandboxPathError,
    SandboxState,
    SandboxUnavailableError,
    normalize_sandbox_path,
)

__all__ = [
    'Classification',
    'ErrorClass',
    'classify_error',
    'is_name_conflict',
    'ExecResult',
    'Sandbox',
    'SandboxError',
    'SandboxFileNotFoundError',
    'SandboxManager',
    'SandboxNotFoundError',
    'SandboxOperationError',
    'SandboxPathError',
    'SandboxState',
    'SandboxUnavailableError',
    'normalize_sandbox_path',
]
