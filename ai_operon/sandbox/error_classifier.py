#!/usr/bin/env python3
"""
Sandbox Error Classification
Decide whether a failed sandbox operation is worth retrying
"""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple


class ErrorClass(Enum):
    """Classification of a sandbox failure"""
    PERMANENT = "non_retryable"
    TRANSIENT = "retryable"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying an error message"""
    error_class: ErrorClass
    reason: str

    @property
    def should_retry(self) -> bool:
        return self.error_class is not ErrorClass.PERMANENT


# These will never succeed on retry
PERMANENT_PATTERNS: Tuple[str, ...] = (
    "could not find the file",
    "no such file or directory",
    "file not found",
    "path does not exist",
    "cannot stat",
    "no such container",
    "invalid reference format",
    "malformed",
)

TRANSIENT_PATTERNS: Tuple[str, ...] = (
    "conflict",
    "already in use",
    "network error",
    "timeout",
    "timed out",
    "connection refused",
    "temporary failure",
    "resource temporarily unavailable",
    "device or resource busy",
)


def classify_error(error: BaseException) -> Classification:
    """
    Classify an exception by its message.

    Permanent patterns are checked first; unmatched errors are treated
    as retryable.
    """
    message = str(error).lower()

    for pattern in PERMANENT_PATTERNS:
        if pattern in message:
            return Classification(ErrorClass.PERMANENT, pattern)

    for pattern in TRANSIENT_PATTERNS:
        if pattern in message:
            return Classification(ErrorClass.TRANSIENT, pattern)

    return Classification(ErrorClass.UNKNOWN, "unknown_error")


def is_name_conflict(error: BaseException) -> bool:
    """True when a container could not be created because its name is taken"""
    message = str(error).lower()
    return "conflict" in message and "already in use" in message
