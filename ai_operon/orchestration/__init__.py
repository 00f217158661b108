"""
Orchestration module - plan data model and prompts

The plan executor and task runner live in
ai_operon.orchestration.orchestrator and ai_operon.orchestration.task_runner.
"""

from .plan import (
    Artifact,
    ExecutionTrace,
    Plan,
    PlanningError,
    ReasoningEntry,
    Step,
    StepResult,
    parse_plan,
    parse_replan,
)

__all__ = [
    'Artifact',
    'ExecutionTrace',
    'Plan',
    'PlanningError',
    'ReasoningEntry',
    'Step',
    'StepResult',
    'parse_plan',
    'parse_replan',
]
