#!/usr/bin/env python3
"""
Plan Data Model
Steps, plans, step results and the append-only execution trace
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

NO_CHANGES_NEEDED = "NO_CHANGES_NEEDED"


class PlanningError(Exception):
    """The initial plan could not be obtained or parsed"""


@dataclass
class Step:
    """One planned unit of work"""
    step: str
    action: str
    expected_output: str = ""
    using_data: str = "all"
    validations: str = ""
    intensity: Optional[int] = None
    params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Step':
        intensity = data.get("intensity")
        try:
            intensity = int(intensity) if intensity not in (None, "") else None
        except (TypeError, ValueError):
            intensity = None

        using_data = data.get("usingData")
        if isinstance(using_data, list):
            using_data = ",".join(str(item) for item in using_data)

        params = data.get("params")
        return cls(
            step=str(data.get("step", "")),
            action=str(data.get("action", "")).strip(),
            expected_output=str(data.get("expectedOutput", "")),
            using_data=str(using_data).strip() if using_data else "all",
            validations=str(data.get("validations", "") or ""),
            intensity=intensity,
            params=params if isinstance(params, dict) else {}
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "step": self.step,
            "action": self.action,
            "expectedOutput": self.expected_output,
            "usingData": self.using_data,
        }
        if self.validations:
            data["validations"] = self.validations
        if self.intensity is not None:
            data["intensity"] = self.intensity
        if self.params:
            data["params"] = self.params
        return data

    @property
    def instruction(self) -> str:
        if self.expected_output:
            return f"{self.step} Expected output: {self.expected_output}"
        return self.step


@dataclass
class Plan:
    """
    Ordered steps, or a direct answer for simple questions.

    Plans are replaced wholesale on replan, never patched.
    """
    steps: List[Step] = field(default_factory=list)
    direct_answer: Optional[str] = None

    @property
    def is_direct(self) -> bool:
        return self.direct_answer is not None

    def __len__(self) -> int:
        return len(self.steps)

    def __getitem__(self, index: int) -> Step:
        return self.steps[index]

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def to_dict(self) -> Dict[str, Any]:
        if self.is_direct:
            return {"directAnswer": True, "answer": self.direct_answer}
        return {f"step{i + 1}": step.to_dict() for i, step in enumerate(self.steps)}


def _extract_steps(raw: Any) -> List[Step]:
    if isinstance(raw, dict) and isinstance(raw.get("steps"), list):
        raw = raw["steps"]
    if isinstance(raw, dict):
        candidates = list(raw.values())
    elif isinstance(raw, list):
        candidates = raw
    else:
        return []
    return [Step.from_dict(item) for item in candidates if isinstance(item, dict) and item.get("action")]


def parse_plan(raw: Any) -> Plan:
    """
    Turn the model's planning response into a Plan.

    Raises:
        PlanningError: if the response holds neither steps nor a direct answer
    """
    if isinstance(raw, dict) and raw.get("fallback"):
        raise PlanningError(f"Model returned an unparseable plan: {raw.get('errorMessage', raw.get('error'))}")

    if isinstance(raw, dict) and raw.get("directAnswer"):
        answer = raw.get("answer")
        if not isinstance(answer, str):
            answer = json.dumps(answer) if answer is not None else ""
        return Plan(direct_answer=answer)

    steps = _extract_steps(raw)
    if not steps:
        raise PlanningError("Model returned a plan without steps")
    return Plan(steps=steps)


def parse_replan(raw: Any) -> Optional[Plan]:
    """
    Interpret a progress-check response. None means keep the current plan.
    """
    if isinstance(raw, str):
        if NO_CHANGES_NEEDED in raw:
            return None
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return None

    if isinstance(raw, dict):
        if raw.get("fallback"):
            return None
        if any(value == NO_CHANGES_NEEDED for value in raw.values()):
            return None

    steps = _extract_steps(raw)
    return Plan(steps=steps) if steps else None


@dataclass
class Artifact:
    """A file produced by a step"""
    path: str
    content: Optional[str] = None
    location: str = "sandbox"  # "sandbox" or "host"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def render_output(output: Any, limit: Optional[int] = None) -> str:
    if isinstance(output, str):
        text = output
    else:
        try:
            text = json.dumps(output, default=str)
        except (TypeError, ValueError):
            text = str(output)
    if limit is not None and len(text) > limit:
        return text[:limit]
    return text


@dataclass
class StepResult:
    """What one dispatched step produced"""
    step: str
    action: str
    output: Any
    error: Optional[str] = None
    artifacts: List[Artifact] = field(default_factory=list)
    placeholder: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.placeholder

    def output_text(self, limit: Optional[int] = None) -> str:
        return render_output(self.output, limit)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "action": self.action,
            "output": self.output,
            "error": self.error,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "placeholder": self.placeholder,
        }


def _requested_actions(using_data: Optional[str]) -> Optional[List[str]]:
    """None means every prior result; an empty list means none"""
    if not using_data:
        return None
    names = [name.strip() for name in using_data.split(",") if name.strip()]
    if not names or "all" in names:
        return None
    if names == ["none"]:
        return []
    return names


class ExecutionTrace:
    """
    Append-only record of step results for one task.
    """

    def __init__(self):
        self._results: List[StepResult] = []

    def append(self, result: StepResult) -> None:
        self._results.append(result)

    @property
    def results(self) -> Tuple[StepResult, ...]:
        return tuple(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def __iter__(self) -> Iterator[StepResult]:
        return iter(tuple(self._results))

    def __getitem__(self, index: int) -> StepResult:
        return self._results[index]

    def select(self, using_data: Optional[str]) -> List[StepResult]:
        """Prior results a step asked for via its usingData selector"""
        requested = _requested_actions(using_data)
        if requested is None:
            return list(self._results)
        return [r for r in self._results if r.action in requested]

    def render_input(self, using_data: Optional[str]) -> str:
        """Render the selected results as `action: output; ...`"""
        return "; ".join(f"{r.action}: {r.output_text()}" for r in self.select(using_data))

    @property
    def artifacts(self) -> List[Artifact]:
        return [artifact for r in self._results for artifact in r.artifacts]

    def summarize(self, limit: int = 500) -> List[Dict[str, Any]]:
        return [
            {"step": r.step, "action": r.action, "result": r.output_text(limit)}
            for r in self._results
        ]


@dataclass
class ReasoningEntry:
    """Thought before a step and reflection after it"""
    step_index: int
    step: str
    action: str
    reasoning: Any = None
    reflection: Any = None
    error: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
