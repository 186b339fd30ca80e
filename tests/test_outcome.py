from __future__ import annotations

import logging

import pytest

from progression_engine.models import Gate, GateKind, ResponseShape, Step, StepOutcome
from progression_engine.outcome import classify, log_outcome


def _step(safety: object = None, evidence: object = None, with_evidence_gate: bool = True) -> Step:
    gates = [
        Gate(id="confirm", kind=GateKind.CONFIRMATION, response=True),
        Gate(id="safety", kind=GateKind.SAFETY, required=False, response=safety),
    ]
    if with_evidence_gate:
        gates.append(
            Gate(id="evidence", kind=GateKind.EVIDENCE, required=False, shape=ResponseShape.PHOTO, response=evidence)
        )
    return Step(id="act-1", name="Capture", gates=tuple(gates))


def test_safety_not_confirmed_is_risky() -> None:
    assert classify(_step(safety=None, evidence="blob://p")) is StepOutcome.RISKY_SUCCESS
    assert classify(_step(safety=False, evidence="blob://p")) is StepOutcome.RISKY_SUCCESS


def test_safe_with_evidence_is_clean() -> None:
    assert classify(_step(safety=True, evidence="blob://p")) is StepOutcome.CLEAN_SUCCESS


def test_safe_without_evidence_is_partial() -> None:
    assert classify(_step(safety=True, evidence=None)) is StepOutcome.PARTIAL_CONFIRMATION
    assert classify(_step(safety=True, evidence="  ")) is StepOutcome.PARTIAL_CONFIRMATION


def test_safe_step_without_evidence_gates_is_clean() -> None:
    assert classify(_step(safety=True, with_evidence_gate=False)) is StepOutcome.CLEAN_SUCCESS


def test_step_without_safety_or_evidence_gates_is_clean() -> None:
    step = Step(id="s", name="s", gates=(Gate(id="c", kind=GateKind.CONFIRMATION, response=True),))
    assert classify(step) is StepOutcome.CLEAN_SUCCESS


def test_non_clean_outcomes_log_a_warning(caplog: pytest.LogCaptureFixture) -> None:
    step = _step(safety=False)
    with caplog.at_level(logging.INFO, logger="progression_engine.outcome"):
        log_outcome(step, StepOutcome.RISKY_SUCCESS)
        log_outcome(step, StepOutcome.CLEAN_SUCCESS)
    levels = [record.levelno for record in caplog.records]
    assert levels == [logging.WARNING, logging.INFO]
    assert "RISKY_SUCCESS" in caplog.records[0].getMessage()
