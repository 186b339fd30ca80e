from __future__ import annotations


class EngineError(Exception):
    """Base class for every refusal or failure the engine reports to its caller."""


class GateNotSatisfied(EngineError):
    """A required gate on the step has no acceptable response."""

    def __init__(self, step_id: str, missing_gate_ids: list[str]) -> None:
        self.step_id = step_id
        self.missing_gate_ids = list(missing_gate_ids)
        super().__init__(f"step {step_id} is missing responses for: {', '.join(self.missing_gate_ids)}")


class OutOfOrder(EngineError):
    """A predecessor step is incomplete, or navigation targeted an unreached phase."""

    def __init__(self, message: str, *, blocking_ids: list[str] | None = None) -> None:
        self.blocking_ids = list(blocking_ids or [])
        super().__init__(message)


class PhaseLocked(EngineError):
    """A mutation targeted a phase other than the current one."""

    def __init__(self, phase_index: int, current_phase_index: int) -> None:
        self.phase_index = phase_index
        self.current_phase_index = current_phase_index
        super().__init__(f"phase {phase_index} is locked; current phase is {current_phase_index}")


class NotReady(EngineError):
    """Reward aggregation or digest building was attempted before completion."""


class DigestUnavailable(EngineError):
    """The hash function failed; the unit stays completed without a digest."""


class GeneratorFailure(EngineError):
    """The content generator could not produce a structurally valid unit."""


class Conflict(EngineError):
    """The caller wrote against a stale unit version."""

    def __init__(self, unit_id: str, expected_version: int, actual_version: int) -> None:
        self.unit_id = unit_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"unit {unit_id} is at version {actual_version}, caller expected {expected_version}"
        )


class NotFound(EngineError):
    """An unknown unit, phase, step or gate was referenced."""
