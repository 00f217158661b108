"""
Monitoring module - logging setup and raw LLM interaction dumps
"""

from .debug_logger import InteractionDump, log_debug
from .logging_setup import setup_logging

__all__ = ['InteractionDump', 'log_debug', 'setup_logging']
