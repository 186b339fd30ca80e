from __future__ import annotations

import pytest

from progression_engine.gates import can_complete, evaluate_step, response_matches_shape
from progression_engine.models import Gate, GateKind, ResponseShape, Step, Unit


def _gate(shape: ResponseShape, **kwargs: object) -> Gate:
    return Gate(id="g", kind=GateKind.OBSERVATION, shape=shape, **kwargs)


@pytest.mark.parametrize(
    ("shape", "response", "expected"),
    [
        (ResponseShape.BOOLEAN, True, True),
        (ResponseShape.BOOLEAN, False, False),
        (ResponseShape.BOOLEAN, "yes", False),
        (ResponseShape.TEXT, "Valve 3 open", True),
        (ResponseShape.TEXT, "   ", False),
        (ResponseShape.PHOTO, "blob://photo-1", True),
        (ResponseShape.PHOTO, ("blob://a", "blob://b"), True),
        (ResponseShape.PHOTO, (), False),
        (ResponseShape.VIDEO, True, False),
        (ResponseShape.MULTI_SELECT, ("north",), True),
        (ResponseShape.MULTI_SELECT, "north", False),
        (ResponseShape.TEXT, None, False),
    ],
)
def test_response_matches_shape(shape: ResponseShape, response: object, expected: bool) -> None:
    assert response_matches_shape(_gate(shape), response) is expected


def test_multi_select_rejects_values_outside_options() -> None:
    gate = _gate(ResponseShape.MULTI_SELECT, options=("north", "south"))
    assert response_matches_shape(gate, ("north", "south"))
    assert not response_matches_shape(gate, ("north", "east"))


def test_step_without_gates_can_always_complete(two_phase_unit: Unit) -> None:
    step = two_phase_unit.phases[1].steps[0]
    assert can_complete(step, two_phase_unit)


def test_optional_gates_never_block() -> None:
    step = Step(
        id="s",
        name="s",
        gates=(
            Gate(id="req", kind=GateKind.CONFIRMATION, response=True),
            Gate(id="opt", kind=GateKind.SAFETY, required=False),
        ),
    )
    verdict = evaluate_step(step, Unit(id="u"))
    assert verdict.passed
    assert verdict.missing_gate_ids == []


def test_missing_required_gates_are_listed(two_phase_unit: Unit) -> None:
    step = two_phase_unit.phases[0].steps[0]
    verdict = evaluate_step(step, two_phase_unit)
    assert not verdict.passed
    assert verdict.missing_gate_ids == ["g-1"]


def test_strict_ordering_blocks_later_steps(mission_unit: Unit) -> None:
    later = mission_unit.phases[1].steps[1]
    verdict = evaluate_step(later, mission_unit)
    assert verdict.blocking_step_ids == ["act-1"]


def test_directive_steps_complete_in_any_order(two_phase_unit: Unit) -> None:
    phase = two_phase_unit.phases[0]
    extra = Step(id="s-0", name="first", order=0)
    unit = two_phase_unit.model_copy(
        update={"phases": (phase.model_copy(update={"steps": (extra, *phase.steps)}), two_phase_unit.phases[1])}
    )
    assert evaluate_step(unit.phases[0].steps[1], unit).blocking_step_ids == []
