from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field

SCHEMA_VERSION = 1


class UnitStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class PhaseKind(str, Enum):
    RECON = "RECON"
    OPERATION = "OPERATION"
    EXECUTION = "EXECUTION"
    VERIFICATION = "VERIFICATION"
    COMPLETION = "COMPLETION"


class GateKind(str, Enum):
    CONFIRMATION = "confirmation"
    EVIDENCE = "evidence"
    OBSERVATION = "observation"
    SAFETY = "safety"


class ResponseShape(str, Enum):
    BOOLEAN = "boolean"
    TEXT = "text"
    PHOTO = "photo"
    VIDEO = "video"
    MULTI_SELECT = "multi_select"


class StepOrdering(str, Enum):
    STRICT = "strict"
    ANY = "any"


class StepOutcome(str, Enum):
    CLEAN_SUCCESS = "CLEAN_SUCCESS"
    RISKY_SUCCESS = "RISKY_SUCCESS"
    PARTIAL_CONFIRMATION = "PARTIAL_CONFIRMATION"


GateResponse = Union[bool, str, tuple[str, ...]]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class ProgressionProfile(_Frozen):
    """Phase-kind sequence and step rules shared by every unit of one shape."""

    name: str
    phase_kinds: tuple[PhaseKind, ...]
    step_ordering: StepOrdering = StepOrdering.ANY
    classify_outcomes: bool = False


MISSION_PROFILE = ProgressionProfile(
    name="mission",
    phase_kinds=(PhaseKind.RECON, PhaseKind.OPERATION),
    step_ordering=StepOrdering.STRICT,
    classify_outcomes=True,
)

DIRECTIVE_PROFILE = ProgressionProfile(
    name="directive",
    phase_kinds=(PhaseKind.RECON, PhaseKind.EXECUTION, PhaseKind.VERIFICATION, PhaseKind.COMPLETION),
    step_ordering=StepOrdering.ANY,
    classify_outcomes=False,
)

BUILTIN_PROFILES: dict[str, ProgressionProfile] = {
    MISSION_PROFILE.name: MISSION_PROFILE,
    DIRECTIVE_PROFILE.name: DIRECTIVE_PROFILE,
}


class Compensation(_Frozen):
    reward_currency: int = Field(default=0, ge=0)
    reward_xp: int = Field(default=0, ge=0)

    def __add__(self, other: Compensation) -> Compensation:
        return Compensation(
            reward_currency=self.reward_currency + other.reward_currency,
            reward_xp=self.reward_xp + other.reward_xp,
        )


class Gate(_Frozen):
    id: str
    kind: GateKind
    prompt: str = ""
    required: bool = True
    shape: ResponseShape = ResponseShape.BOOLEAN
    options: tuple[str, ...] = ()
    response: GateResponse | None = None


class Step(_Frozen):
    id: str
    name: str
    task: str = ""
    instruction: str = ""
    order: int = Field(default=1, ge=0)
    gates: tuple[Gate, ...] = ()
    is_complete: bool = False
    evidence_ref: str | None = None
    outcome: StepOutcome | None = None

    def gate(self, gate_id: str) -> Gate | None:
        for gate in self.gates:
            if gate.id == gate_id:
                return gate
        return None


class Phase(_Frozen):
    id: str
    name: str
    kind: PhaseKind
    description: str = ""
    steps: tuple[Step, ...] = ()
    compensation: Compensation = Field(default_factory=Compensation)
    is_complete: bool = False
    completed_at: datetime | None = None

    def step(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


class Unit(_Frozen):
    """One progression instance: a mission or a directive.

    ``current_phase_index`` is the progress frontier and equals
    ``len(phases)`` once the unit is completed. ``view_phase_index`` is the
    review cursor moved by explicit navigation and never passes the frontier.
    """

    id: str
    title: str = ""
    category: str = ""
    location: str | None = None
    profile: ProgressionProfile = DIRECTIVE_PROFILE
    phases: tuple[Phase, ...] = ()
    current_phase_index: int = 0
    view_phase_index: int = 0
    status: UnitStatus = UnitStatus.NOT_STARTED
    final_reward: Compensation | None = None
    audit_digest: str | None = None
    completed_at: datetime | None = None
    version: int = 0
    schema_version: int = SCHEMA_VERSION

    @property
    def is_completed(self) -> bool:
        return self.status == UnitStatus.COMPLETED

    def iter_steps(self) -> list[Step]:
        return [step for phase in self.phases for step in phase.steps]

    def locate_step(self, step_id: str) -> tuple[int, Step] | None:
        for phase_index, phase in enumerate(self.phases):
            step = phase.step(step_id)
            if step is not None:
                return phase_index, step
        return None


class StepResponse(_Frozen):
    """Answers captured for one step, keyed by gate id."""

    answers: dict[str, GateResponse] = Field(default_factory=dict)
    evidence_ref: str | None = None


@dataclass(frozen=True)
class ValidationIssue:
    severity: str
    location: str
    message: str


# ---------------------------------------------------------------------------
# Transition events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepCompleted:
    phase_index: int
    step_id: str
    outcome: StepOutcome | None = None


@dataclass(frozen=True)
class PhaseCompleted:
    phase_index: int
    phase_id: str


@dataclass(frozen=True)
class UnitCompleted:
    unit_id: str
    final_reward: Compensation
    audit_digest: str | None


@dataclass(frozen=True)
class DigestDeferred:
    unit_id: str
    reason: str


EngineEvent = Union[StepCompleted, PhaseCompleted, UnitCompleted, DigestDeferred]


@dataclass(frozen=True)
class Advance:
    """New unit state plus the events the transition produced."""

    unit: Unit
    events: tuple[EngineEvent, ...] = field(default_factory=tuple)