#!/usr/bin/env python3
"""
ReAct Reasoning
Think before each step, reflect after it. Failures here never stop the task:
they are recorded on the reasoning entry and the step runs as planned.
"""

import logging
from dataclasses import replace
from typing import Any, Dict, Optional, Tuple

from ai_operon.core.llm_provider import LLMService
from ai_operon.orchestration.plan import ExecutionTrace, ReasoningEntry, Step, StepResult
from ai_operon.orchestration.prompts import reasoning_prompt, reflection_prompt

logger = logging.getLogger(__name__)

NO_REFLECTION: Dict[str, Any] = {"changePlan": False, "successful": None}


def wants_replan(reflection: Optional[Dict[str, Any]]) -> bool:
    if not isinstance(reflection, dict):
        return False
    value = reflection.get("changePlan")
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


class StepReasoner:
    """Pre-step reasoning and post-step reflection for one task"""

    def __init__(self, llm: LLMService, enabled: bool = True):
        self.llm = llm
        self.enabled = enabled

    async def before_step(
        self,
        task: str,
        step: Step,
        index: int,
        total: int,
        trace: ExecutionTrace
    ) -> Tuple[Step, ReasoningEntry]:
        """
        Reason about a step, possibly refining its instruction.

        Returns:
            (step to execute, reasoning entry)
        """
        entry = ReasoningEntry(step_index=index, step=step.step, action=step.action)
        if not self.enabled:
            return step, entry

        prompt = reasoning_prompt(task, step, index, total, trace.select(step.using_data))
        try:
            reasoning = await self.llm.call(prompt, "")
        except Exception as e:
            logger.warning("Reasoning for step %d failed: %s", index + 1, e)
            entry.error = f"reasoning failed: {e}"
            return step, entry

        if not isinstance(reasoning, dict) or reasoning.get("fallback"):
            entry.error = "reasoning response was not valid JSON"
            entry.reasoning = reasoning
            return step, entry

        entry.reasoning = reasoning
        enhanced = reasoning.get("enhancedPrompt")
        if isinstance(enhanced, str) and enhanced.strip():
            return replace(step, step=enhanced.strip()), entry
        return step, entry

    async def reflect(
        self,
        task: str,
        step: Step,
        index: int,
        total: int,
        result: StepResult,
        entry: ReasoningEntry
    ) -> Dict[str, Any]:
        """Evaluate a step's result; the returned dict carries changePlan"""
        if not self.enabled:
            return dict(NO_REFLECTION)

        prompt = reflection_prompt(task, step, index, total, result.output, entry)
        try:
            reflection = await self.llm.call(prompt, "")
        except Exception as e:
            logger.warning("Reflection on step %d failed: %s", index + 1, e)
            entry.error = f"reflection failed: {e}"
            return dict(NO_REFLECTION)

        entry.reflection = reflection
        if not isinstance(reflection, dict) or reflection.get("fallback"):
            entry.error = "reflection response was not valid JSON"
            return dict(NO_REFLECTION)
        return reflection
