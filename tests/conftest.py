from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any

import pytest

from pipeline_supervision.context_store import ContextStore
from pipeline_supervision.contracts import (
    ApplyPatchStep,
    Category,
    Classification,
    ContextKind,
    ContextSnapshot,
    DecisionRecord,
    PatchProposal,
    PlantRequest,
    PlantResponse,
    PlantStatus,
    Trace,
    TraceState,
    ValidationReport,
    standard_action_plan,
)
from pipeline_supervision.orchestrator import Orchestrator
from pipeline_supervision.settings import (
    DEFAULT_APP_SAFETY_CHECKS,
    DEFAULT_MOTOR_SAFETY_CHECKS,
    OperatorSettings,
)

APP_ARTIFACTS = {"app:spec": {"fields": ["sku", "price"]}, "app:build": {"target": "web"}}
MOTOR_ARTIFACTS = {"motor:rules": {"required": ["sku"]}, "motor:validators": {"strict": True}}

_DEFAULT_CATEGORY = {
    Classification.MOTOR: Category.MOTOR_RULES,
    Classification.APP: Category.APP_BUILD,
    Classification.MIXED: Category.MIXED_DRIFT,
}


class ScriptedPlant:
    """In-memory Plant whose answers are queued up by the test."""

    def __init__(self) -> None:
        self.run_statuses: list[PlantStatus] = []
        self.run_signals: list[list[Mapping[str, Any]]] = []
        self.validations: dict[str, list[bool]] = {}
        self.safety: dict[str, bool] = {}
        self.delays: dict[str, float] = {}
        self.patch_artifacts: dict[str, Callable[[ContextSnapshot], dict[str, Any]]] = {}
        self.proposal_targets: dict[str, str] = {}

        self.requests: list[PlantRequest] = []
        self.patched: list[str] = []
        self.validated: list[tuple[str, str]] = []
        self.safety_calls: list[str] = []
        self._runs = 0

    async def _delay(self, operation: str) -> None:
        seconds = self.delays.get(operation)
        if seconds:
            await asyncio.sleep(seconds)

    async def run(self, request: PlantRequest) -> PlantResponse:
        self.requests.append(request)
        await self._delay("run")
        self._runs += 1
        status = self.run_statuses.pop(0) if self.run_statuses else PlantStatus.PARTIAL
        signals = self.run_signals.pop(0) if self.run_signals else []
        return PlantResponse(
            trace_id=request.trace_id,
            status=status,
            signals=list(signals),
            next_checkpoint=f"ckpt-{request.trace_id}-{self._runs}",
        )

    async def apply_patch(
        self,
        *,
        trace: Trace,
        decision: DecisionRecord,
        step: ApplyPatchStep,
        base: ContextSnapshot,
    ) -> PatchProposal:
        self.patched.append(step.target)
        await self._delay("apply_patch")
        builder = self.patch_artifacts.get(step.target)
        if builder is not None:
            artifacts = builder(base)
        else:
            artifacts = dict(base.artifacts)
            artifacts[f"{step.target}:patch-{len(self.patched)}"] = {"decision": decision.decision_id}
        return PatchProposal(
            target=self.proposal_targets.get(step.target, step.target),
            patch_ref=f"patch-{len(self.patched)}",
            artifacts=artifacts,
        )

    async def validate(self, *, trace: Trace, target: ContextKind, snapshot: ContextSnapshot) -> ValidationReport:
        self.validated.append((target.value, snapshot.version.version))
        await self._delay("validate")
        queue = self.validations.get(target.value)
        passed = queue.pop(0) if queue else True
        return ValidationReport(passed=passed, checks={"smoke": passed})

    async def run_safety_check(self, name: str, proposal: PatchProposal) -> bool:
        self.safety_calls.append(name)
        await self._delay("safety_check")
        return self.safety.get(name, True)


@pytest.fixture
def store(tmp_path: Path) -> ContextStore:
    return ContextStore(tmp_path / "store")


@pytest.fixture
def seeded_store(store: ContextStore) -> ContextStore:
    store.create_context_version(ContextKind.APP, "checkout", APP_ARTIFACTS)
    store.create_context_version(ContextKind.MOTOR, "motor", MOTOR_ARTIFACTS)
    return store


@pytest.fixture
def plant() -> ScriptedPlant:
    return ScriptedPlant()


@pytest.fixture
def make_envelope() -> Callable[..., dict[str, Any]]:
    def _make_envelope(
        *,
        trace_id: str = "T1",
        timestamp: str = "2026-02-11T00:00:00Z",
        scope: str = "app",
        signal_type: str = "validation",
        severity: str = "error",
        payload: Mapping[str, Any] | None = None,
        app_ctx: str = "checkout@1.0.0",
        motor_ctx: str | None = "motor@v1.2.0",
        artifact_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        envelope: dict[str, Any] = {
            "trace_id": trace_id,
            "timestamp": timestamp,
            "scope": scope,
            "signal_type": signal_type,
            "severity": severity,
            "payload": dict(payload)
            if payload is not None
            else {"rule": "schema.required", "message": "sku is missing", "phase": "spec"},
            "artifact_ids": list(artifact_ids or []),
        }
        if motor_ctx is not None:
            envelope["context_ref"] = {"app_ctx": app_ctx, "motor_ctx": motor_ctx}
        return envelope

    return _make_envelope


@pytest.fixture
def make_trace(store: ContextStore) -> Callable[..., Trace]:
    def _make_trace(
        trace_id: str = "T1",
        *,
        profile_targets: list[str] | None = None,
        state: TraceState = TraceState.RUNNING,
        app_ctx: str = "checkout@1.0.0",
        motor_ctx: str = "motor@1.2.0",
        created_at_iso: str = "2026-02-11T00:00:00+00:00",
    ) -> Trace:
        return store.create_trace(
            Trace(
                trace_id=trace_id,
                app_spec_ref=f"spec://{trace_id}",
                profile_targets=profile_targets if profile_targets is not None else ["web"],
                state=state,
                app_ctx=app_ctx,
                motor_ctx=motor_ctx,
                created_at_iso=created_at_iso,
                updated_at_iso=created_at_iso,
            )
        )

    return _make_trace


@pytest.fixture
def make_decision() -> Callable[..., DecisionRecord]:
    def _make_decision(
        *,
        trace_id: str = "T1",
        classification: Classification | str = Classification.MOTOR,
        category: Category | str | None = None,
        safety_checks: list[str] | None = None,
        decision_id: str | None = None,
        window_end_seq: int = 0,
    ) -> DecisionRecord:
        classification = Classification(classification)
        category = Category(category) if category is not None else _DEFAULT_CATEGORY[classification]
        if safety_checks is None:
            names: list[str] = []
            if classification is not Classification.APP:
                names.extend(DEFAULT_MOTOR_SAFETY_CHECKS)
            if classification is not Classification.MOTOR:
                names.extend(DEFAULT_APP_SAFETY_CHECKS)
            safety_checks = list(dict.fromkeys(names))
        return DecisionRecord(
            decision_id=decision_id or f"dec:test:{trace_id}:{category.value}",
            trace_id=trace_id,
            classification=classification,
            category=category,
            rationale=f"[{category.value}] test decision",
            action_plan=standard_action_plan(classification),
            safety_checks=safety_checks,
            window_end_seq=window_end_seq,
        )

    return _make_decision


@pytest.fixture
def make_orchestrator(seeded_store: ContextStore, plant: ScriptedPlant) -> Callable[..., Orchestrator]:
    def _make_orchestrator(**settings: Any) -> Orchestrator:
        return Orchestrator(seeded_store, plant, settings=OperatorSettings(**settings))

    return _make_orchestrator


@pytest.fixture
def start_trace() -> Callable[..., Awaitable[Trace]]:
    async def _start_trace(
        orchestrator: Orchestrator,
        trace_id: str = "T1",
        *,
        profile_targets: list[str] | None = None,
        app_ctx: str = "checkout@1.0.0",
        motor_ctx: str = "motor@1.0.0",
    ) -> Trace:
        return await orchestrator.start(
            trace_id,
            app_spec_ref=f"spec://{trace_id}",
            profile_targets=profile_targets or ["web"],
            app_ctx=app_ctx,
            motor_ctx=motor_ctx,
        )

    return _start_trace
