from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FIXED_NOW, fixed_clock
from progression_engine.engine import ProgressionEngine
from progression_engine.errors import Conflict, DigestUnavailable, GateNotSatisfied, GeneratorFailure, NotFound
from progression_engine.generator import OfflineTemplateGenerator, UnitDescriptor
from progression_engine.models import (
    Compensation,
    DigestDeferred,
    EngineEvent,
    PhaseCompleted,
    StepCompleted,
    Unit,
    UnitCompleted,
    UnitStatus,
)
from progression_engine.persistence import InMemoryUnitStore
from progression_engine.settings import EngineSettings
from progression_engine.state_store import FileUnitStore


class _FailingGenerator:
    def __init__(self) -> None:
        self.calls = 0

    def generate(self, descriptor: UnitDescriptor) -> Unit:
        self.calls += 1
        raise ConnectionError("model endpoint unreachable")


class _FixedGenerator:
    def __init__(self, unit: Unit) -> None:
        self.unit = unit

    def generate(self, descriptor: UnitDescriptor) -> Unit:
        return self.unit


def _engine(unit: Unit, **kwargs: object) -> ProgressionEngine:
    store = InMemoryUnitStore()
    store.save(unit)
    return ProgressionEngine(store, clock=fixed_clock, **kwargs)  # type: ignore[arg-type]


def test_complete_step_persists_and_publishes_events(two_phase_unit: Unit) -> None:
    engine = _engine(two_phase_unit)
    seen: list[EngineEvent] = []
    engine.add_listener(seen.append)

    engine.complete_step("UNIT-1", 0, "s-1", {"g-1": True})
    advance = engine.complete_step("UNIT-1", 1, "s-2")

    stored = engine.get_snapshot("UNIT-1")
    assert stored == advance.unit
    assert stored.status is UnitStatus.COMPLETED
    assert stored.version == 2
    assert [type(event) for event in seen] == [
        StepCompleted,
        PhaseCompleted,
        StepCompleted,
        PhaseCompleted,
        UnitCompleted,
    ]


def test_rejected_step_leaves_store_untouched(two_phase_unit: Unit) -> None:
    engine = _engine(two_phase_unit)
    with pytest.raises(GateNotSatisfied):
        engine.complete_step("UNIT-1", 0, "s-1")
    assert engine.get_snapshot("UNIT-1") == two_phase_unit


def test_stale_expected_version_is_a_conflict(two_phase_unit: Unit) -> None:
    engine = _engine(two_phase_unit)
    engine.complete_step("UNIT-1", 0, "s-1", {"g-1": True}, expected_version=0)
    with pytest.raises(Conflict) as exc_info:
        engine.jump_to_phase("UNIT-1", 0, expected_version=0)
    assert exc_info.value.actual_version == 1


def test_concurrent_writer_is_detected_on_save(two_phase_unit: Unit) -> None:
    engine = _engine(two_phase_unit)
    racer = engine.store.load("UNIT-1")
    engine.complete_step("UNIT-1", 0, "s-1", {"g-1": True})
    with pytest.raises(Conflict):
        engine.store.save(racer.model_copy(update={"version": racer.version + 1}), expected_version=racer.version)


def test_no_op_transitions_do_not_bump_version(two_phase_unit: Unit) -> None:
    engine = _engine(two_phase_unit)
    engine.complete_step("UNIT-1", 0, "s-1", {"g-1": True})
    again = engine.complete_step("UNIT-1", 0, "s-1", {"g-1": True})
    assert again.events == ()
    assert engine.get_snapshot("UNIT-1").version == 1


def test_jump_to_phase_persists_view_cursor(two_phase_unit: Unit) -> None:
    engine = _engine(two_phase_unit)
    engine.complete_step("UNIT-1", 0, "s-1", {"g-1": True})
    engine.jump_to_phase("UNIT-1", 0)
    stored = engine.get_snapshot("UNIT-1")
    assert stored.view_phase_index == 0
    assert stored.current_phase_index == 1


def test_retry_digest_after_hash_failure(two_phase_unit: Unit) -> None:
    def broken(data: bytes) -> str:
        raise OSError("no entropy")

    engine = _engine(two_phase_unit, hasher=broken)
    engine.complete_step("UNIT-1", 0, "s-1", {"g-1": True})
    advance = engine.complete_step("UNIT-1", 1, "s-2")
    assert isinstance(advance.events[-1], DigestDeferred)
    assert engine.get_snapshot("UNIT-1").audit_digest is None

    with pytest.raises(DigestUnavailable):
        engine.retry_digest("UNIT-1")

    healthy = ProgressionEngine(engine.store, clock=fixed_clock)
    retried = healthy.retry_digest("UNIT-1").unit
    stored = healthy.get_snapshot("UNIT-1")
    assert stored.audit_digest == retried.audit_digest
    assert stored.final_reward == Compensation(reward_currency=105, reward_xp=35)
    assert stored.completed_at == FIXED_NOW


def test_unknown_unit_is_not_found() -> None:
    engine = ProgressionEngine(InMemoryUnitStore())
    with pytest.raises(NotFound):
        engine.complete_step("missing", 0, "s-1")


def test_create_unit_stores_fresh_offline_directive() -> None:
    engine = ProgressionEngine(InMemoryUnitStore(), generator=OfflineTemplateGenerator(id_factory=lambda: "abc123"))
    unit = engine.create_unit(UnitDescriptor(profile="directive", category="Infrastructure", location="5th & Main"))
    assert unit.id == "DIR-OFF-002-abc123"
    assert unit.version == 0
    assert unit.status is UnitStatus.NOT_STARTED
    assert engine.list_units() == [unit.id]
    with pytest.raises(Conflict):
        engine.create_unit(UnitDescriptor(profile="directive", category="Infrastructure"))


def test_create_unit_falls_back_when_generator_fails() -> None:
    failing = _FailingGenerator()
    engine = ProgressionEngine(InMemoryUnitStore(), generator=failing)
    unit = engine.create_unit(
        UnitDescriptor(profile="mission", category="Civic"),
        fallback=OfflineTemplateGenerator(id_factory=lambda: "fallback"),
    )
    assert failing.calls == 1
    assert unit.id == "MIS-OFF-fallback"


def test_create_unit_without_fallback_surfaces_generator_failure() -> None:
    engine = ProgressionEngine(InMemoryUnitStore(), generator=_FailingGenerator())
    with pytest.raises(GeneratorFailure, match="unreachable"):
        engine.create_unit(UnitDescriptor(profile="mission", category="Civic"))
    assert engine.list_units() == []


def test_create_unit_rejects_malformed_generated_unit(two_phase_unit: Unit) -> None:
    engine = ProgressionEngine(InMemoryUnitStore(), generator=_FixedGenerator(two_phase_unit))
    with pytest.raises(GeneratorFailure, match="phase kinds"):
        engine.create_unit(UnitDescriptor(profile="directive", category="Environment"))


def test_create_unit_needs_some_generator() -> None:
    with pytest.raises(GeneratorFailure):
        ProgressionEngine(InMemoryUnitStore()).create_unit(UnitDescriptor(profile="directive", category="Environment"))


def test_from_settings_uses_file_store_and_configured_hash(tmp_path: Path) -> None:
    settings = EngineSettings(state_store_root="store", hash_algorithm="blake2s").normalized()
    engine = ProgressionEngine.from_settings(settings, repo_root=tmp_path)
    assert isinstance(engine.store, FileUnitStore)
    assert engine.store.root == tmp_path / "store"
    assert isinstance(engine.generator, OfflineTemplateGenerator)
    assert len(engine.hasher(b"payload")) == 64
