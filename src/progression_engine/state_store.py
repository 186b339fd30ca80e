from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import Conflict, NotFound
from .models import Unit
from .persistence import NEW_UNIT_VERSION, restore, snapshot

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_SAFE_ID_RE = re.compile(r"[^A-Za-z0-9_.-]+")
_ID_HASH_CHARS = 12


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar keeps the lock handle stable while the data file itself is
    swapped out by ``os.replace``.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write to a temp file in the same directory, fsync, then rename into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _read_record(path: Path) -> dict:
    """Read one unit record.

    Raises:
        ValueError: If the file is empty, not UTF-8, or not a JSON object.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"unit record at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"unit record at {path} is empty")
    try:
        record = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"unit record at {path} is not valid JSON: {exc}") from exc
    if not isinstance(record, dict):
        raise ValueError(f"unit record at {path} is not a JSON object")
    return record


class FileUnitStore:
    """One JSON file per unit under ``root/units``.

    Writes are atomic (temp file then rename) and every save runs its
    version compare-and-swap under an exclusive file lock, so processes
    sharing the directory cannot silently overwrite each other.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.units_dir = root / "units"
        self.units_dir.mkdir(parents=True, exist_ok=True)

    def unit_path(self, unit_id: str) -> Path:
        """Readable, collision-free file name: the sanitized id plus a short hash of the raw id."""
        if not unit_id.strip():
            raise ValueError("unit id must be a non-empty string")
        safe_id = _SAFE_ID_RE.sub("-", unit_id.strip()).strip("-.")
        suffix = hashlib.sha256(unit_id.encode("utf-8")).hexdigest()[:_ID_HASH_CHARS]
        return self.units_dir / (f"{safe_id}-{suffix}.json" if safe_id else f"{suffix}.json")

    def load(self, unit_id: str) -> Unit:
        """Load and restore a unit.

        Raises:
            NotFound: If no record exists for ``unit_id``.
            ValueError: If the record is corrupt.
        """
        path = self.unit_path(unit_id)
        if not path.is_file():
            raise NotFound(f"unit {unit_id} not found in {self.units_dir}")
        with _locked_file(path):
            record = _read_record(path)
        if record.get("id") != unit_id:
            raise NotFound(f"unit {unit_id} not found in {self.units_dir}; {path.name} holds {record.get('id')!r}")
        return restore(record)

    def save(self, unit: Unit, *, expected_version: int | None = None) -> None:
        """Persist ``unit``; with ``expected_version`` set, only if the stored version still matches.

        Raises:
            Conflict: The stored record moved past ``expected_version``.
        """
        path = self.unit_path(unit.id)
        content = json.dumps(snapshot(unit), indent=2, sort_keys=True)
        with _locked_file(path):
            if expected_version is not None:
                actual = int(_read_record(path).get("version", 0)) if path.is_file() else NEW_UNIT_VERSION
                if actual != expected_version:
                    raise Conflict(unit.id, expected_version, actual)
            _atomic_write_text(path, content)
        logger.debug("saved unit %s at version %d", unit.id, unit.version)

    def list_ids(self) -> list[str]:
        ids = []
        for path in sorted(self.units_dir.glob("*.json")):
            try:
                ids.append(str(_read_record(path).get("id", path.stem)))
            except ValueError:
                logger.warning("skipping unreadable unit record %s", path)
        return sorted(ids)
