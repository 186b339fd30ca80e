from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .canonical import canonical_bytes
from .errors import DigestUnavailable, NotReady
from .gates import response_matches_shape
from .models import GateKind, ResponseShape, Step, Unit

logger = logging.getLogger(__name__)

AUDIT_SCHEMA = "progression-audit/v1"

HashFunction = Callable[[bytes], str]

_HEX_256_RE = re.compile(r"^[0-9a-f]{64}$")

_HASH_CONSTRUCTORS: dict[str, Callable[..., Any]] = {
    "sha256": hashlib.sha256,
    "sha3_256": hashlib.sha3_256,
    "blake2s": hashlib.blake2s,
}


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_function(algorithm: str) -> HashFunction:
    """Return a 256-bit hex hash function by hashlib name."""
    try:
        constructor = _HASH_CONSTRUCTORS[algorithm]
    except KeyError as exc:
        raise ValueError(
            f"unsupported hash algorithm {algorithm!r}; expected one of {', '.join(sorted(_HASH_CONSTRUCTORS))}"
        ) from exc

    def _digest(data: bytes) -> str:
        return constructor(data).hexdigest()

    return _digest


@dataclass(frozen=True)
class AuditContext:
    """Context fields recorded beside the completion claim."""

    location: str | None
    captured_at: datetime

    @classmethod
    def for_unit(cls, unit: Unit) -> AuditContext:
        if unit.completed_at is None:
            raise NotReady(f"unit {unit.id} has no completion timestamp")
        return cls(location=unit.location, captured_at=unit.completed_at)


def step_has_evidence(step: Step) -> bool:
    if step.evidence_ref and step.evidence_ref.strip():
        return True
    for gate in step.gates:
        media = gate.shape in (ResponseShape.PHOTO, ResponseShape.VIDEO)
        if (gate.kind is GateKind.EVIDENCE or media) and response_matches_shape(gate, gate.response):
            return True
    return False


def build_payload(unit: Unit, context: AuditContext) -> dict[str, Any]:
    """Canonical snapshot of what was claimed complete.

    Evidence is recorded as presence booleans per step, never as raw bytes
    or references. Identifier lists are sorted lexically so the payload is
    independent of phase and step declaration order.

    Args:
        unit: The unit whose completed phases and steps are attested.
        context: Location and capture time recorded beside the claim.

    Returns:
        A dict of JSON-ready values, ready for ``canonical_bytes``.
    """
    completed_steps = [step for phase in unit.phases for step in phase.steps if step.is_complete]
    return {
        "schema": AUDIT_SCHEMA,
        "id": unit.id,
        "title": unit.title,
        "category": unit.category,
        "profile": unit.profile.name,
        "phases": sorted(phase.id for phase in unit.phases if phase.is_complete),
        "steps": sorted(step.id for step in completed_steps),
        "evidence": {step.id: step_has_evidence(step) for step in completed_steps},
        "location": context.location,
        "captured_at": context.captured_at,
    }


def build_digest(
    unit: Unit,
    context: AuditContext | None = None,
    *,
    hasher: HashFunction = sha256_hex,
) -> str:
    """Hash the canonical completion payload and return a lowercase 64-char hex digest.

    Args:
        unit: A completed unit.
        context: Audit context; defaults to the unit's location and completion time.
        hasher: Maps canonical payload bytes to a hex digest.

    Returns:
        The 64-character lowercase hex digest.

    Raises:
        NotReady: If the unit is not completed.
        DigestUnavailable: If the hash function fails or returns something
            other than a 256-bit hex digest.
    """
    if not unit.is_completed:
        raise NotReady(f"unit {unit.id} is not completed; nothing to attest")
    payload = canonical_bytes(build_payload(unit, context or AuditContext.for_unit(unit)))
    try:
        digest = hasher(payload)
    except Exception as exc:  # noqa: BLE001
        raise DigestUnavailable(f"hash function failed for unit {unit.id}: {exc}") from exc
    if not isinstance(digest, str):
        raise DigestUnavailable(f"hash function returned {type(digest).__name__} for unit {unit.id}")
    digest = digest.lower()
    if not _HEX_256_RE.match(digest):
        raise DigestUnavailable(f"hash function returned a malformed digest for unit {unit.id}")
    return digest
