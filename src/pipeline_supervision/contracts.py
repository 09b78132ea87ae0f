# pipeline_supervision/contracts.py
from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from pipeline_supervision._compat import Self, StrEnum, parse_iso8601
from pipeline_supervision.errors import ValidationError
from pipeline_supervision.versions import SemVer, format_context_ref, split_context_ref

# ------------------------------------------------------------------------------
# Shared BaseModel config helpers
# ------------------------------------------------------------------------------

_CONTRACT_CONFIG = ConfigDict(
    extra="forbid",
    validate_assignment=True,
    use_enum_values=False,  # keep enums as enums in Python
)

_IMMUTABLE_CONTRACT_CONFIG = ConfigDict(
    extra="forbid",
    use_enum_values=False,
    frozen=True,
)

_SIGNAL_PAYLOAD_CONFIG = ConfigDict(
    extra="allow",
    frozen=True,
)


def validate_contract(model: type[BaseModel], payload: Any, *, what: str) -> Any:
    """Validate ``payload`` into ``model`` and surface failures as a domain ValidationError."""
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"{what} is malformed: {exc.error_count()} error(s); {exc.errors()[0]['msg']}") from exc


# ------------------------------------------------------------------------------
# Enumerations
# ------------------------------------------------------------------------------


class ContextKind(StrEnum):
    APP = "app"
    MOTOR = "motor"


class SignalType(StrEnum):
    VALIDATION = "validation"
    ERROR = "error"
    LATENCY = "latency"
    COST = "cost"
    COVERAGE = "coverage"
    QUALITY_SCORE = "quality_score"


class Severity(StrEnum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.WARN: 1,
    Severity.ERROR: 2,
    Severity.CRITICAL: 3,
}


class Classification(StrEnum):
    APP = "app"
    MOTOR = "motor"
    MIXED = "mixed"


class Category(StrEnum):
    APP_SPEC = "APP-SPEC"
    APP_BUILD = "APP-BUILD"
    MOTOR_RULES = "MOTOR-RULES"
    MOTOR_PERF = "MOTOR-PERF"
    MIXED_DRIFT = "MIXED-DRIFT"

    @property
    def classification(self) -> Classification:
        return CATEGORY_CLASSIFICATION[self]


CATEGORY_CLASSIFICATION: dict[Category, Classification] = {
    Category.APP_SPEC: Classification.APP,
    Category.APP_BUILD: Classification.APP,
    Category.MOTOR_RULES: Classification.MOTOR,
    Category.MOTOR_PERF: Classification.MOTOR,
    Category.MIXED_DRIFT: Classification.MIXED,
}


class BuildPhase(StrEnum):
    SPEC = "spec"
    BUILD = "build"


class TraceState(StrEnum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    PATCHING_MOTOR = "PATCHING_MOTOR"
    PATCHING_APP = "PATCHING_APP"
    VALIDATING = "VALIDATING"
    RESUMING = "RESUMING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TraceState.SUCCESS, TraceState.FAILED)


class RunMode(StrEnum):
    FRESH = "fresh"
    RESUME = "resume"


class PlantStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


# ------------------------------------------------------------------------------
# Observer signals (Event Envelope)
# ------------------------------------------------------------------------------


class SignalPayload(BaseModel):
    """
    Typed view over an opaque observer payload.

    Known keys are type-checked when present; unknown keys are kept as-is so the
    stored payload stays identical to what the observer sent.
    """

    model_config = _SIGNAL_PAYLOAD_CONFIG
    fingerprint: str | None = None


class ValidationSignal(SignalPayload):
    rule: str | None = None
    message: str | None = None
    phase: BuildPhase | None = None


class ErrorSignal(SignalPayload):
    code: str | None = None
    message: str | None = None
    phase: BuildPhase | None = None


class LatencySignal(SignalPayload):
    duration_ms: float | None = Field(default=None, ge=0)
    budget_ms: float | None = Field(default=None, gt=0)
    timed_out: bool | None = None


class CostSignal(SignalPayload):
    amount: float | None = Field(default=None, ge=0)
    unit: str | None = None
    budget: float | None = Field(default=None, gt=0)


class CoverageSignal(SignalPayload):
    ratio: float | None = Field(default=None, ge=0, le=1)


class QualityScoreSignal(SignalPayload):
    score: float | None = Field(default=None, ge=0, le=1)


SIGNAL_PAYLOAD_MODELS: dict[SignalType, type[SignalPayload]] = {
    SignalType.VALIDATION: ValidationSignal,
    SignalType.ERROR: ErrorSignal,
    SignalType.LATENCY: LatencySignal,
    SignalType.COST: CostSignal,
    SignalType.COVERAGE: CoverageSignal,
    SignalType.QUALITY_SCORE: QualityScoreSignal,
}


class ContextRef(BaseModel):
    """App and motor context versions active when a signal was emitted."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    app_ctx: str
    motor_ctx: str

    @field_validator("app_ctx", "motor_ctx")
    @classmethod
    def _require_versioned_ref(cls, value: str) -> str:
        split_context_ref(value)
        return value

    @property
    def app_context_id(self) -> str:
        return split_context_ref(self.app_ctx)[0]

    @property
    def motor_context_id(self) -> str:
        return split_context_ref(self.motor_ctx)[0]

    @property
    def motor_version(self) -> SemVer:
        return split_context_ref(self.motor_ctx)[1]

    @property
    def motor_key(self) -> str:
        """Motor ref normalized for comparison (``v1.2.0`` and ``1.2.0`` collide)."""
        context_id, version = split_context_ref(self.motor_ctx)
        return format_context_ref(context_id, version)


class EventEnvelope(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    REQUIRED_FIELDS: ClassVar[tuple[str, ...]] = (
        "trace_id",
        "timestamp",
        "scope",
        "signal_type",
        "severity",
        "payload",
    )

    trace_id: str = Field(min_length=1)
    timestamp: str = Field(min_length=1)
    scope: ContextKind
    signal_type: SignalType
    severity: Severity
    payload: dict[str, Any]
    artifact_ids: list[str] = Field(default_factory=list)
    context_ref: ContextRef | None = None

    @field_validator("timestamp")
    @classmethod
    def _require_iso8601(cls, value: str) -> str:
        if parse_iso8601(value) is None:
            raise ValueError("timestamp must be ISO-8601")
        return value

    @model_validator(mode="after")
    def _validate_tagged_payload(self) -> Self:
        SIGNAL_PAYLOAD_MODELS[self.signal_type].model_validate(self.payload)
        return self

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | EventEnvelope) -> EventEnvelope:
        return validate_contract(cls, payload, what="event envelope")

    @property
    def signal(self) -> SignalPayload:
        return SIGNAL_PAYLOAD_MODELS[self.signal_type].model_validate(self.payload)

    @property
    def is_error(self) -> bool:
        return self.severity.rank >= Severity.ERROR.rank

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True, include=set(EventEnvelope.model_fields))


class StoredEvent(EventEnvelope):
    """An ingested envelope with its append position inside the owning trace."""

    event_id: str
    seq: int = Field(ge=1)


# ------------------------------------------------------------------------------
# Context versions
# ------------------------------------------------------------------------------


class ContextVersion(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    kind: ContextKind
    context_id: str = Field(min_length=1)
    version: str
    content_hash: str
    parent_version: str | None = None
    created_at_iso: str
    artifact_ids: list[str] = Field(default_factory=list)
    decision_id: str | None = None

    @field_validator("version", "parent_version")
    @classmethod
    def _require_semver(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return str(SemVer.parse(value))

    @property
    def ref(self) -> str:
        return format_context_ref(self.context_id, self.version)

    @property
    def semver(self) -> SemVer:
        return SemVer.parse(self.version)


class ContextSnapshot(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    version: ContextVersion
    artifacts: dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> ContextKind:
        return self.version.kind

    @property
    def ref(self) -> str:
        return self.version.ref


# ------------------------------------------------------------------------------
# Trace lifecycle
# ------------------------------------------------------------------------------


class TransitionRecord(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    from_state: TraceState
    to_state: TraceState
    reason: str
    decision_id: str | None = None
    at_iso: str


class Trace(BaseModel):
    model_config = _CONTRACT_CONFIG

    trace_id: str = Field(min_length=1)
    app_spec_ref: str
    profile_targets: list[str] = Field(default_factory=list)
    state: TraceState = TraceState.IDLE
    app_ctx: str | None = None
    motor_ctx: str | None = None
    checkpoint_ref: str | None = None
    last_decision_id: str | None = None
    run_epoch: int = 0
    gate_failures: int = 0
    archived: bool = False
    history: list[TransitionRecord] = Field(default_factory=list)
    created_at_iso: str
    updated_at_iso: str

    @property
    def context_ref(self) -> ContextRef | None:
        if self.app_ctx is None or self.motor_ctx is None:
            return None
        return ContextRef(app_ctx=self.app_ctx, motor_ctx=self.motor_ctx)

    def context_for(self, kind: ContextKind) -> str | None:
        return self.motor_ctx if kind is ContextKind.MOTOR else self.app_ctx

    @property
    def visited_states(self) -> list[TraceState]:
        if not self.history:
            return [self.state]
        return [self.history[0].from_state, *(t.to_state for t in self.history)]


# ------------------------------------------------------------------------------
# Action plan (closed tagged variant)
# ------------------------------------------------------------------------------


class PauseStep(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    step: Literal["pause"] = "pause"
    target: Literal["pipeline"] = "pipeline"


class ApplyPatchStep(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    step: Literal["apply_patch"] = "apply_patch"
    target: Literal["motor", "app"]
    patch_ref: str | None = None


class ValidateStep(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    step: Literal["validate"] = "validate"
    target: Literal["motor", "app"]
    patch_ref: str | None = None


class ResumeStep(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    step: Literal["resume"] = "resume"
    target: Literal["pipeline"] = "pipeline"


ActionStep = Annotated[
    Union[PauseStep, ApplyPatchStep, ValidateStep, ResumeStep],
    Field(discriminator="step"),
]


def step_label(step: PauseStep | ApplyPatchStep | ValidateStep | ResumeStep) -> str:
    return f"{step.step}({step.target})"


_PATCH_TARGETS: dict[Classification, tuple[str, ...]] = {
    Classification.MOTOR: ("motor",),
    Classification.APP: ("app",),
    # motor before app, never interleaved
    Classification.MIXED: ("motor", "app"),
}


def standard_action_plan(
    classification: Classification | str,
    *,
    patch_refs: Mapping[str, str] | None = None,
) -> list[PauseStep | ApplyPatchStep | ValidateStep | ResumeStep]:
    refs = dict(patch_refs or {})
    plan: list[PauseStep | ApplyPatchStep | ValidateStep | ResumeStep] = [PauseStep()]
    for target in _PATCH_TARGETS[Classification(classification)]:
        plan.append(ApplyPatchStep(target=target, patch_ref=refs.get(target)))
        plan.append(ValidateStep(target=target, patch_ref=refs.get(target)))
    plan.append(ResumeStep())
    return plan


# ------------------------------------------------------------------------------
# Decision records
# ------------------------------------------------------------------------------


class DecisionRecord(BaseModel):
    """Immutable classification of one incident plus the plan that resolves it."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG

    decision_id: str = Field(min_length=1)
    trace_id: str = Field(min_length=1)
    classification: Classification
    category: Category
    rationale: str = Field(min_length=1)
    action_plan: list[ActionStep] = Field(min_length=2)
    safety_checks: list[str] = Field(default_factory=list)
    event_ids: list[str] = Field(default_factory=list)
    window_end_seq: int = Field(default=0, ge=0)
    supersedes: str | None = None

    @model_validator(mode="after")
    def _validate_plan_shape(self) -> Self:
        if self.category.classification != self.classification:
            raise ValueError(
                f"category {self.category.value} does not belong to classification {self.classification.value}"
            )

        plan = self.action_plan
        if not isinstance(plan[0], PauseStep):
            raise ValueError("action plan must start with pause")
        if not isinstance(plan[-1], ResumeStep):
            raise ValueError("action plan must end with resume")

        middle = plan[1:-1]
        if len(middle) % 2:
            raise ValueError("every apply_patch step must be followed by its validate step")
        patch_targets: list[str] = []
        for patch, validate in zip(middle[::2], middle[1::2]):
            if not isinstance(patch, ApplyPatchStep) or not isinstance(validate, ValidateStep):
                raise ValueError("action plan body must alternate apply_patch and validate")
            if patch.target != validate.target:
                raise ValueError("validate step must target the patch it follows")
            patch_targets.append(patch.target)

        expected = _PATCH_TARGETS[self.classification]
        if tuple(patch_targets) != expected:
            raise ValueError(
                f"{self.classification.value} plan must patch {list(expected)} in that order, got {patch_targets}"
            )
        return self

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | DecisionRecord) -> DecisionRecord:
        return validate_contract(cls, payload, what="decision record")

    @property
    def patch_targets(self) -> list[str]:
        return [step.target for step in self.action_plan if isinstance(step, ApplyPatchStep)]

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# ------------------------------------------------------------------------------
# Motor changelog
# ------------------------------------------------------------------------------


class MotorChangelogEntry(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    entry_id: str = Field(min_length=1)
    motor_context_id: str = Field(min_length=1)
    version_before: str
    version_after: str
    decision_id: str = Field(min_length=1)
    category: Category
    test_results: dict[str, bool] = Field(default_factory=dict)
    validation_results: dict[str, Any] = Field(default_factory=dict)
    impact_metrics: dict[str, float] = Field(default_factory=dict)
    created_at_iso: str

    @model_validator(mode="after")
    def _require_version_bump(self) -> Self:
        if SemVer.parse(self.version_after) <= SemVer.parse(self.version_before):
            raise ValueError("changelog entry must record a strictly increasing motor version")
        return self

    @property
    def ref_before(self) -> str:
        return format_context_ref(self.motor_context_id, SemVer.parse(self.version_before))

    @property
    def ref_after(self) -> str:
        return format_context_ref(self.motor_context_id, SemVer.parse(self.version_after))


# ------------------------------------------------------------------------------
# Plant interface
# ------------------------------------------------------------------------------


class PlantRequest(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    trace_id: str = Field(validation_alias=AliasChoices("trace_id", "traceId"), serialization_alias="traceId")
    app_spec_ref: str = Field(
        validation_alias=AliasChoices("app_spec_ref", "appSpecRef"), serialization_alias="appSpecRef"
    )
    profile_targets: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("profile_targets", "profileTargets"),
        serialization_alias="profileTargets",
    )
    motor_version: str = Field(
        validation_alias=AliasChoices("motor_version", "motorVersion"), serialization_alias="motorVersion"
    )
    run_mode: RunMode = Field(validation_alias=AliasChoices("run_mode", "runMode"), serialization_alias="runMode")
    checkpoint: str | None = None

    @model_validator(mode="after")
    def _resume_needs_checkpoint(self) -> Self:
        if self.run_mode is RunMode.RESUME and not self.checkpoint:
            raise ValueError("resume runs require a checkpoint")
        return self

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PlantResponse(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    trace_id: str = Field(validation_alias=AliasChoices("trace_id", "traceId"), serialization_alias="traceId")
    status: PlantStatus
    artifacts: list[Any] = Field(default_factory=list)
    signals: list[EventEnvelope] = Field(default_factory=list)
    next_checkpoint: str | None = Field(
        default=None,
        validation_alias=AliasChoices("next_checkpoint", "nextCheckpoint"),
        serialization_alias="nextCheckpoint",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PatchProposal(BaseModel):
    """Complete artifact set the Plant proposes for the next context version."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG

    target: ContextKind
    patch_ref: str | None = None
    artifacts: dict[str, Any]


class ValidationReport(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    passed: bool
    checks: dict[str, bool] = Field(default_factory=dict)
    details: dict[str, Any] = Field(default_factory=dict)
