from importlib.metadata import version

from .advancer import attach_digest, complete_step, jump_to_phase
from .audit import AuditContext, build_digest, build_payload, hash_function, sha256_hex
from .canonical import canonical_bytes, to_canonical_json
from .engine import ProgressionEngine
from .errors import (
    Conflict,
    DigestUnavailable,
    EngineError,
    GateNotSatisfied,
    GeneratorFailure,
    NotFound,
    NotReady,
    OutOfOrder,
    PhaseLocked,
)
from .gates import GateVerdict, can_complete, evaluate_step
from .generator import (
    ContentGenerator,
    LlmContentGenerator,
    OfflineTemplateGenerator,
    UnitDescriptor,
    validate_structure,
)
from .models import (
    DIRECTIVE_PROFILE,
    MISSION_PROFILE,
    Advance,
    Compensation,
    DigestDeferred,
    Gate,
    GateKind,
    Phase,
    PhaseCompleted,
    PhaseKind,
    ProgressionProfile,
    ResponseShape,
    Step,
    StepCompleted,
    StepOrdering,
    StepOutcome,
    StepResponse,
    Unit,
    UnitCompleted,
    UnitStatus,
)
from .outcome import classify
from .persistence import InMemoryUnitStore, UnitStore, restore, snapshot
from .rewards import aggregate
from .settings import EngineSettings
from .state_store import FileUnitStore


def get_version() -> str:
    try:
        return version("progression-engine")
    except Exception:
        return "0.0.0"


__all__ = [
    "Advance",
    "AuditContext",
    "Compensation",
    "Conflict",
    "ContentGenerator",
    "DigestDeferred",
    "DigestUnavailable",
    "EngineError",
    "EngineSettings",
    "FileUnitStore",
    "Gate",
    "GateKind",
    "GateNotSatisfied",
    "GateVerdict",
    "GeneratorFailure",
    "InMemoryUnitStore",
    "LlmContentGenerator",
    "NotFound",
    "NotReady",
    "OfflineTemplateGenerator",
    "OutOfOrder",
    "Phase",
    "PhaseCompleted",
    "PhaseKind",
    "PhaseLocked",
    "ProgressionEngine",
    "ProgressionProfile",
    "ResponseShape",
    "Step",
    "StepCompleted",
    "StepOrdering",
    "StepOutcome",
    "StepResponse",
    "Unit",
    "UnitCompleted",
    "UnitDescriptor",
    "UnitStatus",
    "UnitStore",
    "DIRECTIVE_PROFILE",
    "MISSION_PROFILE",
    "aggregate",
    "attach_digest",
    "build_digest",
    "build_payload",
    "can_complete",
    "canonical_bytes",
    "classify",
    "complete_step",
    "evaluate_step",
    "hash_function",
    "jump_to_phase",
    "restore",
    "sha256_hex",
    "snapshot",
    "to_canonical_json",
    "validate_structure",
]
