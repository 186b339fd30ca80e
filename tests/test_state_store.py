from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import fixed_clock
from progression_engine.advancer import complete_step
from progression_engine.errors import Conflict, NotFound
from progression_engine.models import Unit
from progression_engine.persistence import NEW_UNIT_VERSION
from progression_engine.state_store import FileUnitStore


def test_file_store_round_trip(tmp_path: Path, two_phase_unit: Unit) -> None:
    store = FileUnitStore(tmp_path)
    store.save(two_phase_unit, expected_version=NEW_UNIT_VERSION)
    path = store.unit_path(two_phase_unit.id)
    assert path.is_file()
    record = json.loads(path.read_text(encoding="utf-8"))
    assert record["id"] == "UNIT-1"
    assert record["version"] == 0
    assert store.load("UNIT-1") == two_phase_unit
    assert store.list_ids() == ["UNIT-1"]


def test_file_store_rejects_stale_writes(tmp_path: Path, two_phase_unit: Unit) -> None:
    store = FileUnitStore(tmp_path)
    store.save(two_phase_unit, expected_version=NEW_UNIT_VERSION)
    advanced = complete_step(two_phase_unit, 0, "s-1", True, clock=fixed_clock).unit
    store.save(advanced, expected_version=0)

    with pytest.raises(Conflict) as exc_info:
        store.save(advanced, expected_version=0)
    assert exc_info.value.actual_version == 1
    with pytest.raises(Conflict):
        store.save(two_phase_unit, expected_version=NEW_UNIT_VERSION)
    assert store.load("UNIT-1").version == 1


def test_file_store_missing_unit_is_not_found(tmp_path: Path) -> None:
    with pytest.raises(NotFound):
        FileUnitStore(tmp_path).load("ghost")


def test_file_store_corrupt_record_raises_value_error(tmp_path: Path, two_phase_unit: Unit) -> None:
    store = FileUnitStore(tmp_path)
    store.save(two_phase_unit)
    store.unit_path("UNIT-1").write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        store.load("UNIT-1")
    assert store.list_ids() == []


def test_file_store_sanitizes_ids(tmp_path: Path) -> None:
    store = FileUnitStore(tmp_path)
    path = store.unit_path("../../etc/passwd")
    assert path.parent == store.units_dir
    assert path.name.startswith("etc-passwd-")
    assert store.unit_path("///").parent == store.units_dir
    with pytest.raises(ValueError):
        store.unit_path("   ")


def test_file_store_keeps_ids_that_sanitize_alike_apart(tmp_path: Path, two_phase_unit: Unit) -> None:
    store = FileUnitStore(tmp_path)
    slashed = two_phase_unit.model_copy(update={"id": "team/7"})
    dashed = two_phase_unit.model_copy(update={"id": "team-7", "title": "Dashed"})
    assert store.unit_path("team/7") != store.unit_path("team-7")

    store.save(slashed, expected_version=NEW_UNIT_VERSION)
    with pytest.raises(NotFound):
        store.load("team-7")
    store.save(dashed, expected_version=NEW_UNIT_VERSION)

    assert store.load("team/7").id == "team/7"
    assert store.load("team-7").title == "Dashed"
    assert store.list_ids() == ["team-7", "team/7"]


def test_file_store_load_checks_record_id(tmp_path: Path, two_phase_unit: Unit) -> None:
    store = FileUnitStore(tmp_path)
    store.save(two_phase_unit)
    store.unit_path("UNIT-1").rename(store.unit_path("UNIT-2"))
    with pytest.raises(NotFound):
        store.load("UNIT-2")


def test_file_store_leaves_no_temp_files(tmp_path: Path, two_phase_unit: Unit) -> None:
    store = FileUnitStore(tmp_path)
    store.save(two_phase_unit)
    store.save(two_phase_unit)
    leftovers = [path.name for path in store.units_dir.iterdir() if path.suffix == ".tmp"]
    assert leftovers == []
