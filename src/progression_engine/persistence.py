from __future__ import annotations

import logging
import re
import threading
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import ValidationError

from .advancer import close_unit
from .errors import Conflict, NotFound
from .gates import missing_required_gates
from .generator import confirmation_gate, proof_gate
from .models import (
    BUILTIN_PROFILES,
    DIRECTIVE_PROFILE,
    MISSION_PROFILE,
    Compensation,
    Gate,
    GateKind,
    Phase,
    PhaseKind,
    ResponseShape,
    Step,
    Unit,
    UnitStatus,
)
from .templates import (
    DEFAULT_RECON_ACTION,
    LEGACY_COMPLETION_STEP,
    LEGACY_MISSION_XP,
    LEGACY_VERIFICATION_STEP,
    PACKET_PHASE_SHARES,
    PACKET_SHARED_PORTION,
)

logger = logging.getLogger(__name__)

SerializedUnit = dict[str, Any]

_HEX_256_RE = re.compile(r"^[0-9a-f]{64}$")

_LEGACY_RESPONSE_SHAPES = {
    "checkbox": ResponseShape.BOOLEAN,
    "boolean": ResponseShape.BOOLEAN,
    "text": ResponseShape.TEXT,
    "photo": ResponseShape.PHOTO,
    "video": ResponseShape.VIDEO,
    "multi-select": ResponseShape.MULTI_SELECT,
    "multi_select": ResponseShape.MULTI_SELECT,
}

_GATE_KIND_VALUES = frozenset(kind.value for kind in GateKind)

NEW_UNIT_VERSION = -1

_LEGACY_STATUS = {
    "available": UnitStatus.NOT_STARTED,
    "active": UnitStatus.IN_PROGRESS,
    "in_progress": UnitStatus.IN_PROGRESS,
    "completed": UnitStatus.COMPLETED,
}


def snapshot(unit: Unit) -> SerializedUnit:
    """JSON-ready dict of the full unit state, tagged with its schema version."""
    return unit.model_dump(mode="json")


def restore(data: Mapping[str, Any]) -> Unit:
    """Rebuild a unit from a snapshot of any known vintage.

    Current snapshots are validated directly with missing collections
    defaulted. Older directive shapes (phase list or bare packet) and older
    mission shapes (recon/main action lists) are converted, with absent
    steps and gates backfilled from the offline templates. Derived fields
    are then reconciled so the returned unit satisfies every state
    invariant.

    Raises:
        ValueError: If ``data`` is not a mapping or cannot be decoded.
    """
    if not isinstance(data, Mapping):
        raise ValueError(f"serialized unit must be a mapping, got {type(data).__name__}")
    if "schema_version" not in data and ("reconActions" in data or "mainActions" in data or "finalReward" in data):
        unit = _restore_legacy_mission(data)
    elif "schema_version" not in data and ("packet" in data or "rewardHc" in data or _has_legacy_phases(data)):
        unit = _restore_legacy_directive(data)
    else:
        unit = _restore_native(data)
    return reconcile(unit)


def reconcile(unit: Unit) -> Unit:
    """Recompute derived fields so the unit satisfies the state invariants.

    Steps claiming completion while a required gate is unanswered are
    reopened. A unit whose phases are then all complete is closed the same
    way a final step completion closes it.
    """
    phases = []
    for phase in unit.phases:
        steps = tuple(_reopen_if_ungated(unit, step) for step in phase.steps)
        complete = all(step.is_complete for step in steps)
        phases.append(
            phase.model_copy(
                update={
                    "steps": steps,
                    "is_complete": complete,
                    "completed_at": phase.completed_at if complete else None,
                }
            )
        )
    update: dict[str, Any] = {"phases": tuple(phases)}

    first_open = next((index for index, phase in enumerate(phases) if not phase.is_complete), None)
    if phases and first_open is None:
        stamps = [phase.completed_at for phase in phases if phase.completed_at is not None]
        closed = close_unit(unit.model_copy(update=update), max(stamps) if stamps else None)
        if closed.audit_digest is not None and not _HEX_256_RE.match(closed.audit_digest):
            logger.warning("dropping malformed audit digest on unit %s", unit.id)
            closed = closed.model_copy(update={"audit_digest": None})
        return closed

    current = first_open or 0
    started = any(step.is_complete for phase in phases for step in phase.steps) or unit.status == UnitStatus.IN_PROGRESS
    update["status"] = UnitStatus.IN_PROGRESS if started else UnitStatus.NOT_STARTED
    update["current_phase_index"] = current
    update["view_phase_index"] = min(max(unit.view_phase_index, 0), current)
    update["final_reward"] = None
    update["audit_digest"] = None
    update["completed_at"] = None
    return unit.model_copy(update=update)


def _reopen_if_ungated(unit: Unit, step: Step) -> Step:
    if not step.is_complete:
        return step
    missing = missing_required_gates(step)
    if not missing:
        return step
    logger.warning(
        "unit %s step %s was marked complete without answers for: %s; reopening",
        unit.id,
        step.id,
        ", ".join(missing),
    )
    return step.model_copy(update={"is_complete": False, "outcome": None})


# ---------------------------------------------------------------------------
# Native snapshots
# ---------------------------------------------------------------------------


def _items(data: Mapping[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if isinstance(value, Mapping) or isinstance(value, (str, bytes)):
        raise ValueError(f"{key} must be a list")
    return list(value)


def _mapping(value: Any, where: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{where} must be an object, got {type(value).__name__}")
    return value


def _restore_native(data: Mapping[str, Any]) -> Unit:
    payload = dict(data)
    profile = payload.get("profile")
    if isinstance(profile, str):
        if profile not in BUILTIN_PROFILES:
            raise ValueError(f"unknown progression profile {profile!r}")
        payload["profile"] = BUILTIN_PROFILES[profile]
    elif profile is None:
        payload.pop("profile", None)

    phases = []
    for p_idx, raw_phase in enumerate(_items(data, "phases")):
        raw_phase = _mapping(raw_phase, f"phase {p_idx}")
        phase = dict(raw_phase)
        phase.setdefault("id", f"phase-{p_idx}")
        phase.setdefault("name", phase["id"])
        steps = []
        for s_idx, raw_step in enumerate(_items(raw_phase, "steps")):
            raw_step = _mapping(raw_step, f"phase {p_idx} step {s_idx}")
            step = dict(raw_step)
            step.setdefault("id", f"{phase['id']}-step-{s_idx}")
            step.setdefault("name", step["id"])
            step["gates"] = _items(raw_step, "gates")
            steps.append(step)
        phase["steps"] = steps
        if phase.get("compensation") is None:
            phase.pop("compensation", None)
        phases.append(phase)
    payload["phases"] = phases
    try:
        return Unit.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"serialized unit {payload.get('id', '<unknown>')} failed validation: {exc}") from exc


# ---------------------------------------------------------------------------
# Legacy directives
# ---------------------------------------------------------------------------


def _has_legacy_phases(data: Mapping[str, Any]) -> bool:
    phases = data.get("phases")
    return bool(phases) and isinstance(phases, list) and isinstance(phases[0], Mapping) and "phaseType" in phases[0]


def _from_millis(value: Any) -> datetime | None:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value / 1000, UTC)
    return None


def _legacy_work_step(raw: Mapping[str, Any], index: int, prefix: str) -> Step:
    step_id = str(raw.get("id") or f"{prefix}-{index}")
    proof_url = raw.get("proofUrl") or None
    gate = proof_gate(step_id, raw.get("proofType") or "photo", response=proof_url) if raw.get("requiresProof") else None
    return Step(
        id=step_id,
        name=str(raw.get("name") or step_id),
        task=str(raw.get("task") or ""),
        instruction=str(raw.get("instruction") or ""),
        order=int(raw.get("order") or index + 1),
        gates=(gate,) if gate is not None else (),
        is_complete=bool(raw.get("isComplete", False)),
        evidence_ref=proof_url,
    )


def _legacy_work_phase(raw: Mapping[str, Any], index: int) -> Phase:
    phase_id = str(raw.get("id") or f"phase-{index}")
    compensation = _mapping(raw.get("compensation"), f"phase {phase_id} compensation")
    return Phase(
        id=phase_id,
        name=str(raw.get("name") or phase_id),
        kind=PhaseKind(raw.get("phaseType") or PhaseKind.EXECUTION.value),
        description=str(raw.get("description") or ""),
        steps=tuple(
            _legacy_work_step(_mapping(step, f"phase {phase_id} step {s_idx}"), s_idx, f"{phase_id}-step")
            for s_idx, step in enumerate(_items(raw, "steps"))
        ),
        compensation=Compensation(
            reward_currency=int(compensation.get("hc", 0)),
            reward_xp=int(compensation.get("xp", 0)),
        ),
        completed_at=_from_millis(raw.get("completedAt")),
    )


def _template_step(template: Mapping[str, Any]) -> Step:
    gate = proof_gate(template["id"], template["proof"])
    return Step(
        id=template["id"],
        name=template["name"],
        task=template["task"],
        instruction=template["instruction"],
        order=template["order"],
        gates=(gate,) if gate is not None else (),
    )


def _packet_phases(data: Mapping[str, Any]) -> tuple[Phase, ...]:
    packet = _mapping(data.get("packet"), "packet")
    packet_steps = [_mapping(raw, f"packet step {index}") for index, raw in enumerate(_items(packet, "steps"))]
    reward_currency = int(data.get("rewardHc") or 0)
    reward_xp = int(data.get("rewardXp") or 0)
    shares = [
        Compensation(reward_currency=int(reward_currency * share), reward_xp=int(reward_xp * share))
        for share in PACKET_PHASE_SHARES
    ]
    # The final phase gets what one floored 90% cut leaves over.
    remainder = Compensation(
        reward_currency=reward_currency - int(reward_currency * PACKET_SHARED_PORTION),
        reward_xp=reward_xp - int(reward_xp * PACKET_SHARED_PORTION),
    )

    def packet_step(raw: Mapping[str, Any], index: int, prefix: str, proof: str | None) -> Step:
        detail = str(raw.get("detail") or "")
        step_id = f"{prefix}-{index}"
        gate = proof_gate(step_id, proof)
        return Step(
            id=step_id,
            name=f"{raw.get('verb', '')} {raw.get('actor', '')}".strip() or step_id,
            task=detail,
            instruction=f"Complete: {detail}",
            order=index + 1,
            gates=(gate,) if gate is not None else (),
        )

    recon_steps = tuple(packet_step(raw, i, "step-recon", None) for i, raw in enumerate(packet_steps[:2]))
    exec_steps = tuple(packet_step(raw, i, "step-exec", "photo") for i, raw in enumerate(packet_steps[2:]))
    if not exec_steps:
        exec_steps = (_template_step(LEGACY_VERIFICATION_STEP).model_copy(update={"id": "step-exec-0"}),)
    if not recon_steps:
        recon_steps = (_template_step(LEGACY_COMPLETION_STEP).model_copy(update={"id": "step-recon-0"}),)
    return (
        Phase(id="phase-recon-legacy", name="Initial Reconnaissance", kind=PhaseKind.RECON, steps=recon_steps, compensation=shares[0]),
        Phase(id="phase-exec-legacy", name="Execution", kind=PhaseKind.EXECUTION, steps=exec_steps, compensation=shares[1]),
        Phase(
            id="phase-verify-legacy",
            name="Verification",
            kind=PhaseKind.VERIFICATION,
            steps=(_template_step(LEGACY_VERIFICATION_STEP),),
            compensation=shares[2],
        ),
        Phase(
            id="phase-complete-legacy",
            name="Completion",
            kind=PhaseKind.COMPLETION,
            steps=(_template_step(LEGACY_COMPLETION_STEP),),
            compensation=remainder,
        ),
    )


def _restore_legacy_directive(data: Mapping[str, Any]) -> Unit:
    raw_phases = _items(data, "phases")
    if raw_phases:
        phases = tuple(_legacy_work_phase(_mapping(raw, f"phase {index}"), index) for index, raw in enumerate(raw_phases))
    else:
        phases = _packet_phases(data)
    audit_hash = data.get("auditHash")
    return Unit(
        id=str(data.get("id") or ""),
        title=str(data.get("title") or ""),
        category=str(data.get("category") or ""),
        location=data.get("heroLocation") or data.get("location"),
        profile=DIRECTIVE_PROFILE,
        phases=phases,
        view_phase_index=int(data.get("currentPhaseIndex") or 0),
        status=_LEGACY_STATUS.get(str(data.get("status")), UnitStatus.NOT_STARTED),
        audit_digest=audit_hash if isinstance(audit_hash, str) and audit_hash else None,
    )


# ---------------------------------------------------------------------------
# Legacy missions
# ---------------------------------------------------------------------------


def _legacy_gate(raw: Mapping[str, Any], fallback_id: str) -> Gate:
    kind = raw.get("type")
    if kind not in _GATE_KIND_VALUES:
        kind = GateKind.OBSERVATION.value if kind else GateKind.CONFIRMATION.value
    response_type = str(raw.get("responseType") or "checkbox")
    return Gate(
        id=str(raw.get("id") or fallback_id),
        kind=GateKind(kind),
        prompt=str(raw.get("promptText") or ""),
        required=bool(raw.get("required", True)),
        shape=_LEGACY_RESPONSE_SHAPES.get(response_type, ResponseShape.TEXT),
        options=tuple(raw.get("options") or ()),
    )


def _legacy_answer(gate: Gate, raw: Mapping[str, Any]) -> Any:
    # Older saves kept prompt answers on other records; point at where they went.
    if gate.shape is ResponseShape.BOOLEAN:
        return True
    stored_as = raw.get("storedAs")
    if gate.shape is not ResponseShape.MULTI_SELECT and isinstance(stored_as, Mapping) and stored_as.get("entity"):
        return f"{stored_as['entity']}.{stored_as.get('field') or gate.id}"
    return None


def _legacy_action(raw: Mapping[str, Any], index: int, done: bool) -> Step:
    prompts = [_mapping(prompt, f"action {index} prompt") for prompt in _items(raw, "prompts")]
    if prompts:
        gates = tuple(_legacy_gate(prompt, f"p-{index}-{p_idx + 1}") for p_idx, prompt in enumerate(prompts))
    else:
        gates = (confirmation_gate(f"p-{index}-1"),)
        prompts = [{}]
    is_complete = done or bool(raw.get("isComplete", False))
    if is_complete:
        gates = tuple(
            gate.model_copy(update={"response": _legacy_answer(gate, prompt)})
            if gate.required and gate.response is None
            else gate
            for gate, prompt in zip(gates, prompts)
        )
    return Step(
        id=str(raw.get("id") or f"act-{index}"),
        name=str(raw.get("name") or f"act-{index}"),
        task=str(raw.get("task") or ""),
        instruction=str(raw.get("whyItMatters") or "Essential field requirement."),
        order=index + 1,
        gates=gates,
        is_complete=is_complete,
    )


def _restore_legacy_mission(data: Mapping[str, Any]) -> Unit:
    legacy_phase = str(data.get("phase") or "")
    finished = legacy_phase == "COMPLETED" or data.get("status") == "completed"
    if not legacy_phase:
        legacy_phase = "COMPLETED" if finished else "OPERATION"
    cursor = int(data.get("currentActionIndex") or 0)

    recon_raw = _items(data, "reconActions")
    if not recon_raw:
        recon_raw = [dict(DEFAULT_RECON_ACTION, id="act-recon-0")]
    main_raw = _items(data, "mainActions") or _items(data, "steps")

    recon_done = finished or legacy_phase == "OPERATION"
    recon = tuple(
        _legacy_action(
            _mapping(raw, f"recon action {index}"),
            index,
            recon_done or (legacy_phase == "RECON" and index < cursor),
        )
        for index, raw in enumerate(recon_raw)
    )
    main = tuple(
        _legacy_action(
            _mapping(raw, f"main action {index}"),
            index,
            finished or (legacy_phase == "OPERATION" and index < cursor),
        )
        for index, raw in enumerate(main_raw)
    )
    # Older saves number recon and main actions from zero independently.
    recon_ids = {step.id for step in recon}
    main = tuple(
        step.model_copy(update={"id": f"{step.id}-op"}) if step.id in recon_ids else step for step in main
    )

    mission_id = str(data.get("id") or "")
    reward = _mapping(data.get("finalReward"), "finalReward")
    return Unit(
        id=mission_id,
        title=str(data.get("title") or ""),
        category=str(data.get("category") or ""),
        location=data.get("location"),
        profile=MISSION_PROFILE,
        phases=(
            Phase(id=f"{mission_id}-recon", name="Reconnaissance", kind=PhaseKind.RECON, steps=recon),
            Phase(
                id=f"{mission_id}-operation",
                name="Operation",
                kind=PhaseKind.OPERATION,
                steps=main,
                compensation=Compensation(
                    reward_currency=int(reward.get("hc", 0)),
                    reward_xp=LEGACY_MISSION_XP,
                ),
            ),
        ),
        status=_LEGACY_STATUS.get(str(data.get("status")), UnitStatus.NOT_STARTED),
    )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class UnitStore(Protocol):
    """Where serialized units live. Keyed by unit id."""

    def load(self, unit_id: str) -> Unit:
        ...

    def save(self, unit: Unit, *, expected_version: int | None = None) -> None:
        ...

    def list_ids(self) -> list[str]:
        ...


class InMemoryUnitStore:
    """Process-local store holding serialized snapshots behind a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, SerializedUnit] = {}

    def load(self, unit_id: str) -> Unit:
        with self._lock:
            record = self._records.get(unit_id)
        if record is None:
            raise NotFound(f"unit {unit_id} not found")
        return restore(record)

    def save(self, unit: Unit, *, expected_version: int | None = None) -> None:
        """Store ``unit``; with ``expected_version`` set, only if the stored version still matches.

        ``NEW_UNIT_VERSION`` as the expected version means the id must be unused.

        Raises:
            Conflict: The stored unit moved past ``expected_version``.
        """
        record = snapshot(unit)
        with self._lock:
            existing = self._records.get(unit.id)
            if expected_version is not None:
                actual = existing["version"] if existing is not None else NEW_UNIT_VERSION
                if actual != expected_version:
                    raise Conflict(unit.id, expected_version, actual)
            self._records[unit.id] = record

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._records)
