from __future__ import annotations

from datetime import UTC, datetime

import pytest

from progression_engine.models import (
    MISSION_PROFILE,
    Compensation,
    Gate,
    GateKind,
    Phase,
    PhaseKind,
    ResponseShape,
    Step,
    Unit,
)

FIXED_NOW = datetime(2025, 3, 14, 9, 26, 53, tzinfo=UTC)


def fixed_clock() -> datetime:
    return FIXED_NOW


def build_two_phase_unit() -> Unit:
    """Phase 0 holds one step behind a required confirmation; phase 1 one ungated step."""
    return Unit(
        id="UNIT-1",
        title="Drainage audit",
        category="Environment",
        location="Pier 9",
        phases=(
            Phase(
                id="phase-a",
                name="Recon",
                kind=PhaseKind.RECON,
                steps=(
                    Step(
                        id="s-1",
                        name="Locate outflow",
                        gates=(Gate(id="g-1", kind=GateKind.CONFIRMATION, prompt="Outflow located"),),
                    ),
                ),
                compensation=Compensation(reward_currency=30, reward_xp=10),
            ),
            Phase(
                id="phase-b",
                name="Execution",
                kind=PhaseKind.EXECUTION,
                steps=(Step(id="s-2", name="Wrap up"),),
                compensation=Compensation(reward_currency=75, reward_xp=25),
            ),
        ),
    )


def build_mission_unit() -> Unit:
    """Strictly ordered mission: one recon step, then two operation steps at order 1 and 2."""

    def action(step_id: str, order: int) -> Step:
        return Step(
            id=step_id,
            name=step_id,
            order=order,
            gates=(
                Gate(id=f"{step_id}-confirm", kind=GateKind.CONFIRMATION),
                Gate(id=f"{step_id}-safety", kind=GateKind.SAFETY, required=False),
                Gate(id=f"{step_id}-evidence", kind=GateKind.EVIDENCE, required=False, shape=ResponseShape.PHOTO),
            ),
        )

    return Unit(
        id="MIS-1",
        title="Witness ledger",
        category="Civic",
        profile=MISSION_PROFILE,
        phases=(
            Phase(
                id="MIS-1-recon",
                name="Reconnaissance",
                kind=PhaseKind.RECON,
                steps=(action("act-0", 1),),
                compensation=Compensation(reward_currency=40, reward_xp=100),
            ),
            Phase(
                id="MIS-1-operation",
                name="Operation",
                kind=PhaseKind.OPERATION,
                steps=(action("act-1", 1), action("act-2", 2)),
                compensation=Compensation(reward_currency=160, reward_xp=400),
            ),
        ),
    )


@pytest.fixture
def two_phase_unit() -> Unit:
    return build_two_phase_unit()


@pytest.fixture
def mission_unit() -> Unit:
    return build_mission_unit()
