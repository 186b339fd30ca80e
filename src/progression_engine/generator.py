from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from pydantic import BaseModel, ValidationError

from .errors import GeneratorFailure
from .llm import StructuredOutputAdapter, build_structured_model
from .models import (
    BUILTIN_PROFILES,
    Compensation,
    Gate,
    GateKind,
    Phase,
    PhaseKind,
    ProgressionProfile,
    ResponseShape,
    Step,
    Unit,
    ValidationIssue,
)
from .settings import EngineSettings
from .templates import (
    DEFAULT_CONFIRMATION_PROMPT,
    DEFAULT_DIRECTIVE_CATEGORY,
    DIRECTIVE_TEMPLATES,
    LEGACY_MISSION_XP,
    MISSION_REWARD_CURRENCY,
    MISSION_TEMPLATES,
)

logger = logging.getLogger(__name__)

PROOF_SHAPES: dict[str, ResponseShape] = {
    "photo": ResponseShape.PHOTO,
    "video": ResponseShape.VIDEO,
    "text": ResponseShape.TEXT,
    "location": ResponseShape.TEXT,
}


@dataclass(frozen=True)
class UnitDescriptor:
    """What the caller asks a generator for."""

    profile: str
    category: str
    location: str | None = None
    approach: str = "EVIDENCE_FIRST"

    def resolve_profile(self) -> ProgressionProfile:
        try:
            return BUILTIN_PROFILES[self.profile]
        except KeyError as exc:
            raise GeneratorFailure(f"unknown progression profile {self.profile!r}") from exc


class ContentGenerator(Protocol):
    def generate(self, descriptor: UnitDescriptor) -> Unit:
        ...


def confirmation_gate(gate_id: str, prompt: str = DEFAULT_CONFIRMATION_PROMPT) -> Gate:
    return Gate(id=gate_id, kind=GateKind.CONFIRMATION, prompt=prompt, required=True, shape=ResponseShape.BOOLEAN)


def proof_gate(step_id: str, proof: str | None, response: Any = None) -> Gate | None:
    """Required evidence gate for a step that demands proof, or None."""
    if not proof:
        return None
    shape = PROOF_SHAPES.get(proof.lower(), ResponseShape.PHOTO)
    return Gate(
        id=f"{step_id}-proof",
        kind=GateKind.EVIDENCE,
        prompt=f"Attach {proof.lower()} proof",
        required=True,
        shape=shape,
        response=response,
    )


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


class OfflineTemplateGenerator:
    """Builds units from the bundled offline templates."""

    def __init__(self, *, id_factory: Callable[[], str] = _short_id) -> None:
        self._id_factory = id_factory

    def generate(self, descriptor: UnitDescriptor) -> Unit:
        profile = descriptor.resolve_profile()
        if profile.name == "mission":
            unit = self._mission(descriptor, profile)
        else:
            unit = self._directive(descriptor, profile)
        ensure_valid(unit)
        logger.info("generated offline %s %s (%d phases)", profile.name, unit.id, len(unit.phases))
        return unit

    def _directive(self, descriptor: UnitDescriptor, profile: ProgressionProfile) -> Unit:
        template = DIRECTIVE_TEMPLATES.get(descriptor.category) or DIRECTIVE_TEMPLATES[DEFAULT_DIRECTIVE_CATEGORY]
        phases = []
        for raw_phase in template["phases"]:
            steps = []
            for raw_step in raw_phase["steps"]:
                gate = proof_gate(raw_step["id"], raw_step["proof"])
                steps.append(
                    Step(
                        id=raw_step["id"],
                        name=raw_step["name"],
                        task=raw_step["task"],
                        instruction=raw_step["instruction"],
                        order=raw_step["order"],
                        gates=(gate,) if gate is not None else (),
                    )
                )
            currency, xp = raw_phase["compensation"]
            phases.append(
                Phase(
                    id=raw_phase["id"],
                    name=raw_phase["name"],
                    kind=PhaseKind(raw_phase["kind"]),
                    description=raw_phase["description"],
                    steps=tuple(steps),
                    compensation=Compensation(reward_currency=currency, reward_xp=xp),
                )
            )
        return Unit(
            id=f"{template['id']}-{self._id_factory()}",
            title=template["title"],
            category=descriptor.category,
            location=descriptor.location,
            profile=profile,
            phases=tuple(phases),
        )

    def _mission(self, descriptor: UnitDescriptor, profile: ProgressionProfile) -> Unit:
        actions = MISSION_TEMPLATES.get(descriptor.approach.upper())
        if actions is None:
            raise GeneratorFailure(f"no offline mission template for approach {descriptor.approach!r}")
        steps = [self._mission_step(index, action) for index, action in enumerate(actions)]
        recon_share = Compensation(
            reward_currency=MISSION_REWARD_CURRENCY // 5,
            reward_xp=LEGACY_MISSION_XP // 5,
        )
        operation_share = Compensation(
            reward_currency=MISSION_REWARD_CURRENCY - recon_share.reward_currency,
            reward_xp=LEGACY_MISSION_XP - recon_share.reward_xp,
        )
        mission_id = f"MIS-OFF-{self._id_factory()}"
        recon_steps = (steps[0].model_copy(update={"order": 1}),)
        operation_steps = tuple(step.model_copy(update={"order": index + 1}) for index, step in enumerate(steps[1:]))
        return Unit(
            id=mission_id,
            title=f"OFFLINE: {descriptor.category} field mission",
            category=descriptor.category,
            location=descriptor.location,
            profile=profile,
            phases=(
                Phase(id=f"{mission_id}-recon", name="Reconnaissance", kind=PhaseKind.RECON, steps=recon_steps, compensation=recon_share),
                Phase(
                    id=f"{mission_id}-operation",
                    name="Operation",
                    kind=PhaseKind.OPERATION,
                    steps=operation_steps,
                    compensation=operation_share,
                ),
            ),
        )

    @staticmethod
    def _mission_step(index: int, action: dict[str, str]) -> Step:
        step_id = f"act-{index}"
        return Step(
            id=step_id,
            name=action["name"],
            task=action["task"],
            order=index + 1,
            gates=(
                confirmation_gate(f"p-{index}-1", prompt=f"Confirm: {action['task']}"),
                Gate(
                    id=f"p-{index}-safety",
                    kind=GateKind.SAFETY,
                    prompt="I am in a safe position to continue",
                    required=False,
                    shape=ResponseShape.BOOLEAN,
                ),
                Gate(
                    id=f"p-{index}-evidence",
                    kind=GateKind.EVIDENCE,
                    prompt="Attach supporting photo",
                    required=False,
                    shape=ResponseShape.PHOTO,
                ),
            ),
        )


def validate_structure(unit: Unit) -> list[ValidationIssue]:
    """Structural checks on a freshly generated unit; generated text is never judged."""
    issues: list[ValidationIssue] = []
    if not unit.id.strip():
        issues.append(ValidationIssue("ERROR", "id", "unit id must be non-empty"))
    if not unit.phases:
        issues.append(ValidationIssue("ERROR", "phases", "unit must include at least one phase"))

    kinds = tuple(phase.kind for phase in unit.phases)
    if unit.phases and kinds != unit.profile.phase_kinds:
        issues.append(
            ValidationIssue(
                "ERROR",
                "phases",
                f"phase kinds {[kind.value for kind in kinds]} do not match profile {unit.profile.name} "
                f"{[kind.value for kind in unit.profile.phase_kinds]}",
            )
        )

    seen_phases: set[str] = set()
    seen_steps: set[str] = set()
    for p_idx, phase in enumerate(unit.phases):
        p_loc = f"phases[{p_idx}]"
        if phase.id in seen_phases:
            issues.append(ValidationIssue("ERROR", p_loc, f"duplicate phase id {phase.id}"))
        seen_phases.add(phase.id)
        if not phase.steps:
            issues.append(ValidationIssue("ERROR", p_loc, "every phase must include at least one step"))
        if phase.compensation.reward_currency < 0 or phase.compensation.reward_xp < 0:
            issues.append(ValidationIssue("ERROR", f"{p_loc}.compensation", "compensation must be non-negative"))
        for s_idx, step in enumerate(phase.steps):
            s_loc = f"{p_loc}.steps[{s_idx}]"
            if step.id in seen_steps:
                issues.append(ValidationIssue("ERROR", s_loc, f"duplicate step id {step.id}"))
            seen_steps.add(step.id)
            gate_ids = [gate.id for gate in step.gates]
            if len(set(gate_ids)) != len(gate_ids):
                issues.append(ValidationIssue("ERROR", s_loc, "gate ids must be unique within a step"))
            for gate in step.gates:
                if gate.shape is ResponseShape.MULTI_SELECT and not gate.options:
                    issues.append(ValidationIssue("WARNING", f"{s_loc}.gates.{gate.id}", "multi-select gate has no options"))
    return issues


def ensure_valid(unit: Unit) -> Unit:
    errors = [issue for issue in validate_structure(unit) if issue.severity == "ERROR"]
    if errors:
        detail = "; ".join(f"{issue.location}: {issue.message}" for issue in errors)
        raise GeneratorFailure(f"generated unit {unit.id or '<unnamed>'} is malformed: {detail}")
    return unit


# ---------------------------------------------------------------------------
# Model-backed generation
# ---------------------------------------------------------------------------


class GeneratedGate(BaseModel):
    kind: GateKind
    prompt: str
    required: bool
    shape: ResponseShape
    options: list[str]


class GeneratedStep(BaseModel):
    name: str
    task: str
    instruction: str
    gates: list[GeneratedGate]


class GeneratedPhase(BaseModel):
    name: str
    kind: PhaseKind
    description: str
    steps: list[GeneratedStep]
    reward_currency: int
    reward_xp: int


class GeneratedPlan(BaseModel):
    """Schema the chat model fills in; ids and ordering are assigned locally."""

    title: str
    phases: list[GeneratedPhase]


def build_generation_prompt(descriptor: UnitDescriptor, profile: ProgressionProfile) -> str:
    kinds = ", ".join(kind.value for kind in profile.phase_kinds)
    return (
        f"ARCHITECT A {profile.name.upper()}.\n"
        f"CATEGORY: {descriptor.category}.\n"
        f"LOCATION: {descriptor.location or 'unspecified'}.\n"
        f"APPROACH: {descriptor.approach}.\n\n"
        "INSTRUCTIONS:\n"
        f"- Produce exactly these phases in this order: {kinds}.\n"
        "- Every phase has 1-3 steps; every step has 1-3 gates.\n"
        "- Use action words: Identify, Confirm, Observe, Capture, Verify. Avoid Evaluate or Analyze.\n"
        "- Assume the user is physically present.\n"
        "- Gate kinds: confirmation, evidence, observation, safety.\n"
        "- Rewards are non-negative whole numbers."
    )


class LlmContentGenerator:
    """Asks a chat model for a ``GeneratedPlan`` and turns it into a unit."""

    def __init__(
        self,
        adapter: StructuredOutputAdapter[GeneratedPlan],
        *,
        id_factory: Callable[[], str] = _short_id,
    ) -> None:
        self._adapter = adapter
        self._id_factory = id_factory

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> LlmContentGenerator:
        adapter = build_structured_model(
            model_name=settings.generator_model,
            schema=GeneratedPlan,
            temperature=settings.generator_temperature,
        )
        return cls(adapter)

    def generate(self, descriptor: UnitDescriptor) -> Unit:
        profile = descriptor.resolve_profile()
        try:
            plan = self._adapter.invoke(build_generation_prompt(descriptor, profile))
        except Exception as exc:  # noqa: BLE001
            raise GeneratorFailure(f"content generation failed: {exc}") from exc
        try:
            unit = self._to_unit(plan, descriptor, profile)
        except ValidationError as exc:
            raise GeneratorFailure(f"generated plan could not be converted: {exc}") from exc
        ensure_valid(unit)
        logger.info("generated %s %s (%d phases)", profile.name, unit.id, len(unit.phases))
        return unit

    def _to_unit(self, plan: GeneratedPlan, descriptor: UnitDescriptor, profile: ProgressionProfile) -> Unit:
        prefix = "MIS" if profile.name == "mission" else "DIR"
        unit_id = f"{prefix}-{self._id_factory()}"
        phases = []
        for raw_phase in plan.phases:
            phase_id = f"{unit_id}-{raw_phase.kind.value.lower()}"
            steps = []
            for s_idx, raw_step in enumerate(raw_phase.steps):
                step_id = f"{phase_id}-step-{s_idx + 1}"
                gates = tuple(
                    Gate(
                        id=f"{step_id}-g{g_idx + 1}",
                        kind=raw_gate.kind,
                        prompt=raw_gate.prompt,
                        required=raw_gate.required,
                        shape=raw_gate.shape,
                        options=tuple(raw_gate.options),
                    )
                    for g_idx, raw_gate in enumerate(raw_step.gates)
                )
                steps.append(
                    Step(
                        id=step_id,
                        name=raw_step.name,
                        task=raw_step.task,
                        instruction=raw_step.instruction,
                        order=s_idx + 1,
                        gates=gates,
                    )
                )
            phases.append(
                Phase(
                    id=phase_id,
                    name=raw_phase.name,
                    kind=raw_phase.kind,
                    description=raw_phase.description,
                    steps=tuple(steps),
                    compensation=Compensation(
                        reward_currency=raw_phase.reward_currency,
                        reward_xp=raw_phase.reward_xp,
                    ),
                )
            )
        return Unit(
            id=unit_id,
            title=plan.title,
            category=descriptor.category,
            location=descriptor.location,
            profile=profile,
            phases=tuple(phases),
        )


def build_generator(settings: EngineSettings) -> ContentGenerator:
    if settings.offline_only:
        return OfflineTemplateGenerator()
    return LlmContentGenerator.from_settings(settings)
