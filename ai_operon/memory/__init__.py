"""
Memory module - reasoning trace persistence
"""

from .reasoning_store import JsonlReasoningStore, ReasoningStore

__all__ = ['JsonlReasoningStore', 'ReasoningStore']
