from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone

import pytest

from conftest import fixed_clock
from progression_engine.advancer import complete_step
from progression_engine.audit import AuditContext, build_digest, build_payload, hash_function, sha256_hex
from progression_engine.canonical import canonical_bytes, to_canonical_json
from progression_engine.errors import DigestUnavailable, NotReady
from progression_engine.models import StepResponse, Unit


def _raising_hasher(data: bytes) -> str:
    raise RuntimeError("boom")


def _completed(unit: Unit) -> Unit:
    unit = complete_step(unit, 0, "s-1", {"g-1": True}, clock=fixed_clock).unit
    return complete_step(unit, 1, "s-2", clock=fixed_clock).unit


def test_canonical_json_is_key_order_independent() -> None:
    left = {"b": 2, "a": 1, "nested": {"z": 9, "y": [3, 2, 1]}}
    right = {"nested": {"y": [3, 2, 1], "z": 9}, "a": 1, "b": 2}
    assert to_canonical_json(left) == to_canonical_json(right)
    assert to_canonical_json(left) == '{"a":1,"b":2,"nested":{"y":[3,2,1],"z":9}}'


def test_canonical_json_normalizes_datetimes_to_utc() -> None:
    plus_two = timezone(timedelta(hours=2))
    assert to_canonical_json(datetime(2025, 1, 1, 14, 0, tzinfo=plus_two)) == '"2025-01-01T12:00:00Z"'


@pytest.mark.parametrize("value", [1.5, b"raw", {1: "non-string key"}, object()])
def test_canonical_json_rejects_values_without_canonical_form(value: object) -> None:
    with pytest.raises(TypeError):
        canonical_bytes(value)


def test_digest_is_64_lowercase_hex(two_phase_unit: Unit) -> None:
    unit = _completed(two_phase_unit)
    digest = build_digest(unit)
    assert digest == unit.audit_digest
    assert len(digest) == 64
    assert digest == digest.lower()


def test_digest_ignores_phase_declaration_order(two_phase_unit: Unit) -> None:
    unit = _completed(two_phase_unit)
    reordered = unit.model_copy(update={"phases": tuple(reversed(unit.phases))})
    assert build_digest(reordered) == build_digest(unit)


def test_digest_changes_with_context(two_phase_unit: Unit) -> None:
    unit = _completed(two_phase_unit)
    moved = AuditContext(location="Dock 4", captured_at=unit.completed_at)
    assert build_digest(unit, moved) != build_digest(unit)


def test_payload_records_evidence_presence_not_references(two_phase_unit: Unit) -> None:
    unit = complete_step(two_phase_unit, 0, "s-1", {"g-1": True}, clock=fixed_clock).unit
    unit = complete_step(unit, 1, "s-2", StepResponse(evidence_ref="blob://secret"), clock=fixed_clock).unit
    payload = build_payload(unit, AuditContext.for_unit(unit))
    assert payload["evidence"] == {"s-1": False, "s-2": True}
    assert "blob://secret" not in to_canonical_json(payload)
    assert payload["phases"] == ["phase-a", "phase-b"]


def test_digest_requires_completed_unit(two_phase_unit: Unit) -> None:
    with pytest.raises(NotReady):
        build_digest(two_phase_unit)


@pytest.mark.parametrize(
    "hasher",
    [
        _raising_hasher,
        lambda data: hashlib.sha256(data).digest(),
        lambda data: "not-hex",
    ],
)
def test_bad_hash_results_are_unavailable(two_phase_unit: Unit, hasher) -> None:
    unit = _completed(two_phase_unit)
    with pytest.raises(DigestUnavailable):
        build_digest(unit, hasher=hasher)


def test_hash_function_supports_configured_algorithms(two_phase_unit: Unit) -> None:
    unit = _completed(two_phase_unit)
    digests = {name: build_digest(unit, hasher=hash_function(name)) for name in ("sha256", "sha3_256", "blake2s")}
    assert digests["sha256"] == build_digest(unit, hasher=sha256_hex)
    assert len(set(digests.values())) == 3
    with pytest.raises(ValueError):
        hash_function("md5")
