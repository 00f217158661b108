"""
ai_operon - plan-and-execute task orchestrator with per-task Docker sandboxes
"""

__version__ = "0.1.0"
