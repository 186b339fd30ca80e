from __future__ import annotations

import logging
from typing import assert_never

from .models import Gate, GateKind, Step, StepOutcome

logger = logging.getLogger(__name__)


def _has_evidence(gate: Gate) -> bool:
    response = gate.response
    if response is None or response is False:
        return False
    if isinstance(response, str):
        return bool(response.strip())
    if isinstance(response, tuple):
        return bool(response)
    return True


def classify(step: Step) -> StepOutcome:
    """Grade a completed step by which gate kinds were satisfied.

    Any safety gate not answered ``True`` makes the outcome risky. Otherwise
    the outcome is clean when at least one evidence gate carries a response
    (or the step has no evidence gates) and a partial confirmation when none
    do. The grade is informational and never blocks completion or changes
    rewards.
    """
    safety: list[Gate] = []
    evidence: list[Gate] = []
    for gate in step.gates:
        kind = gate.kind
        if kind is GateKind.SAFETY:
            safety.append(gate)
        elif kind is GateKind.EVIDENCE:
            evidence.append(gate)
        elif kind is GateKind.CONFIRMATION or kind is GateKind.OBSERVATION:
            continue
        else:
            assert_never(kind)

    if not all(gate.response is True for gate in safety):
        return StepOutcome.RISKY_SUCCESS
    if not evidence or any(_has_evidence(gate) for gate in evidence):
        return StepOutcome.CLEAN_SUCCESS
    return StepOutcome.PARTIAL_CONFIRMATION


def log_outcome(step: Step, outcome: StepOutcome) -> None:
    if outcome is StepOutcome.CLEAN_SUCCESS:
        logger.info("step %s completed. Outcome: %s", step.id, outcome.value)
    else:
        logger.warning("step %s completed. Outcome: %s", step.id, outcome.value)
