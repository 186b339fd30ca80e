from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, assert_never

from .models import Gate, GateResponse, ResponseShape, Step, StepOrdering, Unit


@dataclass(frozen=True)
class GateVerdict:
    """Outcome of evaluating one step for completion.

    ``missing_gate_ids`` lists required gates without an acceptable response;
    ``blocking_step_ids`` lists earlier-ordered steps that must finish first.
    """

    step_id: str
    missing_gate_ids: list[str] = field(default_factory=list)
    blocking_step_ids: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.missing_gate_ids and not self.blocking_step_ids


def _is_reference(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def response_matches_shape(gate: Gate, response: GateResponse | None) -> bool:
    """Return True when ``response`` is non-empty and fits the gate's declared shape."""
    if response is None:
        return False
    shape = gate.shape
    if shape is ResponseShape.BOOLEAN:
        return response is True
    if shape is ResponseShape.TEXT:
        return isinstance(response, str) and bool(response.strip())
    if shape is ResponseShape.PHOTO or shape is ResponseShape.VIDEO:
        if isinstance(response, tuple):
            return bool(response) and all(_is_reference(item) for item in response)
        return _is_reference(response)
    if shape is ResponseShape.MULTI_SELECT:
        if not isinstance(response, tuple) or not response:
            return False
        if gate.options:
            return all(item in gate.options for item in response)
        return all(_is_reference(item) for item in response)
    assert_never(shape)


def is_satisfied(gate: Gate) -> bool:
    return response_matches_shape(gate, gate.response)


def missing_required_gates(step: Step) -> list[str]:
    return [gate.id for gate in step.gates if gate.required and not is_satisfied(gate)]


def ordering_blockers(step: Step, unit: Unit) -> list[str]:
    """Steps with a lower ``order`` in the same phase that are still incomplete.

    Only profiles with strict ordering block; the others allow any order
    inside a phase.
    """
    ordering = unit.profile.step_ordering
    if ordering is StepOrdering.ANY:
        return []
    if ordering is StepOrdering.STRICT:
        located = unit.locate_step(step.id)
        if located is None:
            return []
        phase = unit.phases[located[0]]
        return [
            other.id
            for other in phase.steps
            if other.id != step.id and other.order < step.order and not other.is_complete
        ]
    assert_never(ordering)


def evaluate_step(step: Step, unit: Unit) -> GateVerdict:
    return GateVerdict(
        step_id=step.id,
        missing_gate_ids=missing_required_gates(step),
        blocking_step_ids=ordering_blockers(step, unit),
    )


def can_complete(step: Step, unit: Unit) -> bool:
    """Pure check: may ``step`` be marked complete in the current ``unit`` state?"""
    return evaluate_step(step, unit).passed
