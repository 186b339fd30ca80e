from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Callable

from pydantic import ValidationError

from .audit import HashFunction, build_digest, sha256_hex
from .errors import DigestUnavailable, GateNotSatisfied, NotFound, NotReady, OutOfOrder, PhaseLocked
from .gates import evaluate_step
from .models import (
    Advance,
    DigestDeferred,
    EngineEvent,
    Phase,
    PhaseCompleted,
    Step,
    StepCompleted,
    StepResponse,
    Unit,
    UnitCompleted,
    UnitStatus,
)
from .outcome import classify, log_outcome
from .rewards import aggregate

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def coerce_response(step: Step, response: Any) -> StepResponse:
    """Normalize the caller's response into a ``StepResponse``.

    Accepts a ``StepResponse``, a mapping of gate id to answer, ``None``, or
    a bare answer for a step that carries exactly one gate.
    """
    if response is None:
        return StepResponse()
    if isinstance(response, StepResponse):
        return response
    if isinstance(response, Mapping):
        answers = dict(response)
    elif len(step.gates) == 1:
        answers = {step.gates[0].id: response}
    elif not step.gates:
        return StepResponse()
    else:
        raise TypeError(f"step {step.id} has {len(step.gates)} gates; answer them by gate id")
    try:
        return StepResponse(answers=answers)
    except ValidationError as exc:
        raise GateNotSatisfied(step.id, sorted(str(key) for key in answers)) from exc


def _apply_response(step: Step, response: StepResponse) -> Step:
    unknown = sorted(gate_id for gate_id in response.answers if step.gate(gate_id) is None)
    if unknown:
        raise NotFound(f"step {step.id} has no gates named: {', '.join(unknown)}")
    gates = tuple(
        gate.model_copy(update={"response": response.answers[gate.id]}) if gate.id in response.answers else gate
        for gate in step.gates
    )
    update: dict[str, Any] = {"gates": gates}
    if response.evidence_ref is not None:
        update["evidence_ref"] = response.evidence_ref
    return step.model_copy(update=update)


def _replace_step(phase: Phase, step: Step) -> Phase:
    steps = tuple(step if existing.id == step.id else existing for existing in phase.steps)
    return phase.model_copy(update={"steps": steps})


def _replace_phase(unit: Unit, index: int, phase: Phase) -> tuple[Phase, ...]:
    return tuple(phase if position == index else existing for position, existing in enumerate(unit.phases))


def _resolve(unit: Unit, phase_index: int, step_id: str) -> tuple[Phase, Step]:
    if not 0 <= phase_index < len(unit.phases):
        raise NotFound(f"unit {unit.id} has no phase {phase_index}")
    phase = unit.phases[phase_index]
    step = phase.step(step_id)
    if step is None:
        raise NotFound(f"phase {phase.id} has no step {step_id}")
    return phase, step


def complete_step(
    unit: Unit,
    phase_index: int,
    step_id: str,
    response: Any = None,
    *,
    clock: Clock = utc_now,
    hasher: HashFunction = sha256_hex,
) -> Advance:
    """Apply one step completion and every transition it triggers.

    The returned ``Advance`` holds the new unit and the events raised in
    order: ``StepCompleted``, then ``PhaseCompleted`` when the step closed
    its phase, then ``UnitCompleted`` (and ``DigestDeferred`` when hashing
    failed) when it closed the last phase. Re-completing a finished step
    returns the input unit unchanged with no events.

    Raises:
        NotFound: Unknown phase, step or gate.
        PhaseLocked: ``phase_index`` is not the current phase.
        OutOfOrder: An earlier-ordered step in the phase is incomplete.
        GateNotSatisfied: A required gate still lacks an acceptable response.
    """
    phase, step = _resolve(unit, phase_index, step_id)
    if step.is_complete:
        return Advance(unit=unit)
    if phase_index != unit.current_phase_index:
        raise PhaseLocked(phase_index, unit.current_phase_index)

    candidate = _apply_response(step, coerce_response(step, response))
    verdict = evaluate_step(candidate, unit)
    if verdict.blocking_step_ids:
        raise OutOfOrder(
            f"step {step_id} must wait for: {', '.join(verdict.blocking_step_ids)}",
            blocking_ids=verdict.blocking_step_ids,
        )
    if verdict.missing_gate_ids:
        raise GateNotSatisfied(step_id, verdict.missing_gate_ids)

    events: list[EngineEvent] = []
    outcome = None
    if unit.profile.classify_outcomes:
        outcome = classify(candidate)
        log_outcome(candidate, outcome)
    completed_step = candidate.model_copy(update={"is_complete": True, "outcome": outcome})
    events.append(StepCompleted(phase_index=phase_index, step_id=step_id, outcome=outcome))

    phase = _replace_step(phase, completed_step)
    update: dict[str, Any] = {
        "status": UnitStatus.IN_PROGRESS,
        "version": unit.version + 1,
    }
    now = None
    if all(existing.is_complete for existing in phase.steps) and not phase.is_complete:
        now = clock()
        phase = phase.model_copy(update={"is_complete": True, "completed_at": now})
        events.append(PhaseCompleted(phase_index=phase_index, phase_id=phase.id))
        logger.info("unit %s phase %d (%s) complete", unit.id, phase_index, phase.kind.value)
    phases = _replace_phase(unit, phase_index, phase)
    update["phases"] = phases
    if now is not None:
        # Later phases may already be closed in restored snapshots.
        next_open = next(
            (index for index in range(phase_index + 1, len(phases)) if not phases[index].is_complete),
            None,
        )
        if next_open is not None:
            update["current_phase_index"] = next_open
            update["view_phase_index"] = next_open
        else:
            update["view_phase_index"] = phase_index
    advanced = unit.model_copy(update=update)

    if now is not None and all(existing.is_complete for existing in phases):
        advanced, completion_events = _finalize(close_unit(advanced, now), hasher=hasher)
        events.extend(completion_events)
    return Advance(unit=advanced, events=tuple(events))


def close_unit(unit: Unit, completed_at: datetime | None) -> Unit:
    """Move a unit whose phases are all complete into its terminal state.

    The frontier moves past the last phase, the review cursor is clamped to a
    real phase and the frozen compensation is credited unless a reward is
    already recorded. The audit digest is left to the caller.

    Raises:
        NotReady: If any phase is still incomplete.
    """
    closed = unit.model_copy(
        update={
            "status": UnitStatus.COMPLETED,
            "current_phase_index": len(unit.phases),
            "view_phase_index": min(max(unit.view_phase_index, 0), len(unit.phases) - 1),
            "completed_at": unit.completed_at or completed_at,
        }
    )
    if closed.final_reward is None:
        closed = closed.model_copy(update={"final_reward": aggregate(closed)})
    return closed


def _finalize(unit: Unit, *, hasher: HashFunction) -> tuple[Unit, list[EngineEvent]]:
    events: list[EngineEvent] = []
    final_reward = unit.final_reward if unit.final_reward is not None else aggregate(unit)
    digest = None
    try:
        digest = build_digest(unit, hasher=hasher)
    except DigestUnavailable as exc:
        logger.warning("unit %s completed without audit digest: %s", unit.id, exc)
        events.append(DigestDeferred(unit_id=unit.id, reason=str(exc)))
    else:
        unit = unit.model_copy(update={"audit_digest": digest})
    logger.info(
        "unit %s completed: reward currency=%d xp=%d",
        unit.id,
        final_reward.reward_currency,
        final_reward.reward_xp,
    )
    events.insert(0, UnitCompleted(unit_id=unit.id, final_reward=final_reward, audit_digest=digest))
    return unit, events


def jump_to_phase(unit: Unit, target_index: int) -> Advance:
    """Move the review cursor to an already-reached phase.

    Completion flags and the progress frontier are untouched.

    Raises:
        OutOfOrder: ``target_index`` lies beyond the reached phase.
        NotFound: ``target_index`` does not name a phase.
    """
    if target_index > unit.current_phase_index:
        raise OutOfOrder(
            f"phase {target_index} has not been reached; current phase is {unit.current_phase_index}"
        )
    if not 0 <= target_index < len(unit.phases):
        raise NotFound(f"unit {unit.id} has no phase {target_index}")
    if target_index == unit.view_phase_index:
        return Advance(unit=unit)
    return Advance(unit=unit.model_copy(update={"view_phase_index": target_index, "version": unit.version + 1}))


def attach_digest(unit: Unit, *, hasher: HashFunction = sha256_hex) -> Advance:
    """Build the audit digest for a completed unit that has none yet.

    Reward aggregation is not re-run; an existing digest is never replaced.

    Raises:
        NotReady: The unit is not completed.
        DigestUnavailable: The hash function failed again.
    """
    if not unit.is_completed:
        raise NotReady(f"unit {unit.id} is not completed")
    if unit.audit_digest is not None:
        return Advance(unit=unit)
    digest = build_digest(unit, hasher=hasher)
    logger.info("unit %s audit digest attached", unit.id)
    return Advance(unit=unit.model_copy(update={"audit_digest": digest, "version": unit.version + 1}))
