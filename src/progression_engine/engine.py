from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable

from . import advancer
from .audit import HashFunction, hash_function, sha256_hex
from .errors import Conflict, GeneratorFailure
from .generator import ContentGenerator, UnitDescriptor, build_generator, ensure_valid
from .models import Advance, EngineEvent, Unit
from .persistence import NEW_UNIT_VERSION, UnitStore, reconcile
from .settings import EngineSettings
from .state_store import FileUnitStore

logger = logging.getLogger(__name__)

EventListener = Callable[[EngineEvent], None]


class ProgressionEngine:
    """Caller-facing surface: load a unit, apply one transition, save it, publish its events.

    Every mutation is a compare-and-swap against the version the transition
    started from, so two writers racing on one unit cannot both win.
    """

    def __init__(
        self,
        store: UnitStore,
        *,
        generator: ContentGenerator | None = None,
        hasher: HashFunction = sha256_hex,
        clock: advancer.Clock = advancer.utc_now,
    ) -> None:
        self.store = store
        self.generator = generator
        self.hasher = hasher
        self.clock = clock
        self._listeners: list[EventListener] = []

    @classmethod
    def from_settings(cls, settings: EngineSettings, repo_root: Path | None = None) -> ProgressionEngine:
        root = repo_root if repo_root is not None else Path.cwd()
        return cls(
            FileUnitStore(settings.state_store_path(root)),
            generator=build_generator(settings),
            hasher=hash_function(settings.hash_algorithm),
        )

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_unit(self, descriptor: UnitDescriptor, *, fallback: ContentGenerator | None = None) -> Unit:
        """Generate, validate and store a new unit.

        Raises:
            GeneratorFailure: If neither the generator nor ``fallback`` produced a valid unit.
        """
        primary = self.generator or fallback
        if primary is None:
            raise GeneratorFailure("no content generator configured")
        try:
            unit = self._generate(primary, descriptor)
        except GeneratorFailure as exc:
            if fallback is None or primary is fallback:
                raise
            logger.warning("primary generator failed (%s); using fallback", exc)
            unit = self._generate(fallback, descriptor)
        unit = reconcile(unit.model_copy(update={"version": 0}))
        self.store.save(unit, expected_version=NEW_UNIT_VERSION)
        logger.info("created %s %s", unit.profile.name, unit.id)
        return unit

    @staticmethod
    def _generate(generator: ContentGenerator, descriptor: UnitDescriptor) -> Unit:
        try:
            unit = generator.generate(descriptor)
        except GeneratorFailure:
            raise
        except Exception as exc:  # noqa: BLE001
            raise GeneratorFailure(f"content generator raised: {exc}") from exc
        return ensure_valid(unit)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def complete_step(
        self,
        unit_id: str,
        phase_index: int,
        step_id: str,
        response: Any = None,
        *,
        expected_version: int | None = None,
    ) -> Advance:
        """Complete one step of a stored unit and save the result.

        Args:
            unit_id: Id of the stored unit.
            phase_index: Index of the phase holding the step; must be the current phase.
            step_id: Id of the step to complete.
            response: Gate answers as a ``StepResponse``, a mapping of gate id to
                answer, or a bare answer for a single-gate step.
            expected_version: When set, refuse to act unless the stored unit is
                at this version.

        Returns:
            The ``Advance`` holding the saved unit and the events published to listeners.

        Raises:
            NotFound: Unknown unit, phase, step or gate.
            Conflict: The stored version differs from ``expected_version``, or
                another writer saved first.
            PhaseLocked: ``phase_index`` is not the current phase.
            OutOfOrder: An earlier-ordered step in the phase is incomplete.
            GateNotSatisfied: A required gate still lacks an acceptable response.
        """
        unit = self._load_expected(unit_id, expected_version)
        advance = advancer.complete_step(
            unit,
            phase_index,
            step_id,
            response,
            clock=self.clock,
            hasher=self.hasher,
        )
        return self._commit(unit, advance)

    def jump_to_phase(self, unit_id: str, target_index: int, *, expected_version: int | None = None) -> Advance:
        """Move the review cursor of a stored unit to an already-reached phase.

        Raises:
            NotFound: Unknown unit or phase.
            OutOfOrder: ``target_index`` lies beyond the reached phase.
            Conflict: The stored version differs from ``expected_version``.
        """
        unit = self._load_expected(unit_id, expected_version)
        return self._commit(unit, advancer.jump_to_phase(unit, target_index))

    def retry_digest(self, unit_id: str) -> Advance:
        """Attach the audit digest to a completed unit that was saved without one.

        Args:
            unit_id: Id of the stored unit.

        Returns:
            The ``Advance`` holding the saved unit; unchanged when a digest already exists.

        Raises:
            NotFound: Unknown unit.
            NotReady: The unit is not completed, or has no completion timestamp.
            DigestUnavailable: The hash function failed again.
        """
        unit = self.store.load(unit_id)
        return self._commit(unit, advancer.attach_digest(unit, hasher=self.hasher))

    def get_snapshot(self, unit_id: str) -> Unit:
        return self.store.load(unit_id)

    def list_units(self) -> list[str]:
        return self.store.list_ids()

    def _load_expected(self, unit_id: str, expected_version: int | None) -> Unit:
        unit = self.store.load(unit_id)
        if expected_version is not None and unit.version != expected_version:
            raise Conflict(unit_id, expected_version, unit.version)
        return unit

    def _commit(self, before: Unit, advance: Advance) -> Advance:
        if advance.unit is before:
            return advance
        self.store.save(advance.unit, expected_version=before.version)
        for event in advance.events:
            for listener in self._listeners:
                listener(event)
        return advance
