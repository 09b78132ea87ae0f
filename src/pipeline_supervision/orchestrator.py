# pipeline_supervision/orchestrator.py
"""
Per-trace state machine that drives the Plant through decision records.

    IDLE -> RUNNING -> PAUSED -> PATCHING_{MOTOR,APP} -> VALIDATING -> RESUMING -> RUNNING
                    \\-> SUCCESS / FAILED

Patches are staged while PATCHING, validated while VALIDATING and only then
committed to the context store, so a rejected patch never becomes the active
context version. Gate failures and commit races roll the trace back to PAUSED;
Plant timeouts are fed back as observer events and also pause the trace so the
next review can reclassify.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, TypeVar

from pipeline_supervision._compat import assert_never, utc_now_iso
from pipeline_supervision.adapters.plant import Plant
from pipeline_supervision.classifier import Classifier
from pipeline_supervision.context_store import ContextStore
from pipeline_supervision.contracts import (
    ApplyPatchStep,
    Classification,
    ContextKind,
    ContextSnapshot,
    DecisionRecord,
    EventEnvelope,
    PatchProposal,
    PauseStep,
    PlantRequest,
    PlantResponse,
    PlantStatus,
    ResumeStep,
    RunMode,
    Trace,
    TraceState,
    TransitionRecord,
    ValidateStep,
    ValidationReport,
    step_label,
)
from pipeline_supervision.errors import (
    ConflictError,
    GateFailureError,
    IsolationViolationError,
    PlantTimeoutError,
    TransitionError,
    ValidationError,
)
from pipeline_supervision.ingest import EventIngest
from pipeline_supervision.safety import (
    GateResult,
    SafetyCheckContext,
    SafetyCheckId,
    SafetyCheckOutcome,
    evaluate_gate,
    other_kind,
)
from pipeline_supervision.settings import OperatorSettings
from pipeline_supervision.versions import split_context_ref

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PATCHING_STATE: dict[ContextKind, TraceState] = {
    ContextKind.MOTOR: TraceState.PATCHING_MOTOR,
    ContextKind.APP: TraceState.PATCHING_APP,
}

_TRANSITIONS: dict[TraceState, frozenset[TraceState]] = {
    TraceState.IDLE: frozenset({TraceState.RUNNING}),
    TraceState.RUNNING: frozenset({TraceState.PAUSED, TraceState.SUCCESS, TraceState.FAILED}),
    TraceState.PAUSED: frozenset(
        {TraceState.PATCHING_MOTOR, TraceState.PATCHING_APP, TraceState.RESUMING, TraceState.FAILED}
    ),
    TraceState.PATCHING_MOTOR: frozenset({TraceState.VALIDATING, TraceState.PAUSED, TraceState.FAILED}),
    TraceState.PATCHING_APP: frozenset({TraceState.VALIDATING, TraceState.PAUSED, TraceState.FAILED}),
    TraceState.VALIDATING: frozenset(
        {
            TraceState.RESUMING,
            TraceState.PATCHING_MOTOR,
            TraceState.PATCHING_APP,
            TraceState.PAUSED,
            TraceState.FAILED,
        }
    ),
    TraceState.RESUMING: frozenset({TraceState.RUNNING, TraceState.PAUSED, TraceState.FAILED}),
    TraceState.SUCCESS: frozenset(),
    TraceState.FAILED: frozenset(),
}


def allowed_transitions(state: TraceState) -> frozenset[TraceState]:
    return _TRANSITIONS[state]


@dataclass
class PlanOutcome:
    """What happened when a decision record's action plan was executed."""

    trace_id: str
    decision_id: str
    final_state: TraceState
    executed_steps: list[str] = field(default_factory=list)
    reclassify: bool = False
    error: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.error is None and self.final_state in (TraceState.RUNNING, TraceState.SUCCESS)


@dataclass
class _StagedPatch:
    kind: ContextKind
    proposal: PatchProposal
    snapshot: ContextSnapshot
    gate: GateResult


class Orchestrator:
    def __init__(
        self,
        store: ContextStore,
        plant: Plant,
        *,
        ingest: Optional[EventIngest] = None,
        classifier: Optional[Classifier] = None,
        settings: Optional[OperatorSettings] = None,
    ) -> None:
        self._store = store
        self._plant = plant
        self._settings = settings or OperatorSettings()
        self._ingest = ingest or EventIngest(store)
        self._classifier = classifier or Classifier(store, self._settings)
        self._locks: dict[str, asyncio.Lock] = {}
        self._reviews_in_flight: set[str] = set()

    @property
    def settings(self) -> OperatorSettings:
        return self._settings

    def _lock_for(self, trace_id: str) -> asyncio.Lock:
        return self._locks.setdefault(trace_id, asyncio.Lock())

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(
        self,
        trace: Trace,
        to_state: TraceState,
        *,
        reason: str,
        decision_id: Optional[str] = None,
    ) -> Trace:
        if to_state not in _TRANSITIONS[trace.state]:
            raise TransitionError(f"trace {trace.trace_id}: {trace.state.value} -> {to_state.value} is not allowed")
        now = utc_now_iso()
        trace.history.append(
            TransitionRecord(
                from_state=trace.state,
                to_state=to_state,
                reason=reason,
                decision_id=decision_id,
                at_iso=now,
            )
        )
        if trace.state is TraceState.RUNNING and to_state is TraceState.PAUSED:
            trace.run_epoch += 1
        trace.state = to_state
        trace.updated_at_iso = now
        saved = self._store.save_trace(trace)
        logger.info(
            "trace %s: %s -> %s (%s)",
            trace.trace_id,
            saved.history[-1].from_state.value,
            to_state.value,
            reason,
        )
        return saved

    async def _call_plant(
        self,
        awaitable: Awaitable[T],
        *,
        operation: str,
        target: ContextKind,
        budget_s: float,
    ) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=budget_s)
        except asyncio.TimeoutError as exc:
            raise PlantTimeoutError(operation=operation, target=target.value, budget_s=budget_s) from exc

    # ------------------------------------------------------------------
    # Pipeline lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        trace_id: str,
        *,
        app_spec_ref: str,
        profile_targets: list[str],
        app_ctx: str,
        motor_ctx: str,
    ) -> Trace:
        """Create the trace against existing context versions and move it to RUNNING."""
        app = self._store.get_context(ContextKind.APP, app_ctx)
        motor = self._store.get_context(ContextKind.MOTOR, motor_ctx)
        now = utc_now_iso()
        trace = self._store.create_trace(
            Trace(
                trace_id=trace_id,
                app_spec_ref=app_spec_ref,
                profile_targets=list(profile_targets),
                app_ctx=app.ref,
                motor_ctx=motor.ref,
                created_at_iso=now,
                updated_at_iso=now,
            )
        )
        async with self._lock_for(trace_id):
            return self._transition(trace, TraceState.RUNNING, reason="pipeline start")

    def _plant_request(self, trace: Trace, checkpoint: Optional[str]) -> PlantRequest:
        return PlantRequest(
            trace_id=trace.trace_id,
            app_spec_ref=trace.app_spec_ref,
            profile_targets=list(trace.profile_targets),
            motor_version=trace.motor_ctx or "",
            run_mode=RunMode.RESUME if checkpoint else RunMode.FRESH,
            checkpoint=checkpoint,
        )

    async def run(self, trace_id: str) -> Optional[PlantResponse]:
        """
        Invoke the Plant for a RUNNING trace and absorb its result.

        The trace lock is released while the Plant works, so ``pause`` can land
        mid-run. Results for a run that was paused, or whose checkpoint moved in
        the meantime, are discarded and ``None`` is returned. A timeout is
        recorded as a motor latency event, pauses the trace and returns ``None``.
        """
        async with self._lock_for(trace_id):
            trace = self._store.get_trace(trace_id)
            if trace.state is not TraceState.RUNNING:
                raise TransitionError(f"trace {trace_id} is {trace.state.value}, not RUNNING")
            request = self._plant_request(trace, trace.checkpoint_ref)
            epoch, checkpoint = trace.run_epoch, trace.checkpoint_ref

        try:
            response = await self._call_plant(
                self._plant.run(request),
                operation="run",
                target=ContextKind.MOTOR,
                budget_s=self._settings.run_timeout_s,
            )
        except PlantTimeoutError as exc:
            async with self._lock_for(trace_id):
                trace = self._store.get_trace(trace_id)
                if not self._is_current(trace, epoch, checkpoint):
                    logger.warning("trace %s: discarding timeout of a superseded run", trace_id)
                    return None
                self._record_timeout(trace, exc)
                self._transition(trace, TraceState.PAUSED, reason=str(exc))
            return None

        async with self._lock_for(trace_id):
            trace = self._store.get_trace(trace_id)
            if not self._is_current(trace, epoch, checkpoint):
                logger.warning(
                    "trace %s: discarding stale plant result (epoch %d, checkpoint %s)",
                    trace_id,
                    epoch,
                    checkpoint,
                )
                return None
            self._absorb(trace, response)
        return response

    @staticmethod
    def _is_current(trace: Trace, epoch: int, checkpoint: Optional[str]) -> bool:
        return trace.state is TraceState.RUNNING and trace.run_epoch == epoch and trace.checkpoint_ref == checkpoint

    def _absorb(self, trace: Trace, response: PlantResponse) -> Trace:
        if response.trace_id != trace.trace_id:
            raise ValidationError(f"plant answered for trace {response.trace_id!r}, expected {trace.trace_id!r}")
        self._ingest.submit_many(response.signals)
        if response.next_checkpoint:
            self._store.record_checkpoint(trace.trace_id, response.next_checkpoint)
            trace.checkpoint_ref = response.next_checkpoint

        if response.status is PlantStatus.SUCCESS:
            return self._transition(trace, TraceState.SUCCESS, reason="plant reported success")
        if response.status is PlantStatus.FAILED:
            return self._transition(trace, TraceState.FAILED, reason="plant reported failure")
        trace.updated_at_iso = utc_now_iso()
        return self._store.save_trace(trace)

    async def pause(self, trace_id: str, *, reason: str = "operator pause") -> Trace:
        """Pause a RUNNING trace; results of the run in flight become stale."""
        async with self._lock_for(trace_id):
            trace = self._store.get_trace(trace_id)
            if trace.state is TraceState.PAUSED:
                return trace
            return self._transition(trace, TraceState.PAUSED, reason=reason)

    def _record_timeout(self, trace: Trace, exc: PlantTimeoutError) -> str:
        budget_ms = exc.budget_s * 1000.0
        context_ref = trace.context_ref
        if exc.target == ContextKind.APP.value:
            envelope = EventEnvelope(
                trace_id=trace.trace_id,
                timestamp=utc_now_iso(),
                scope=ContextKind.APP,
                signal_type="error",
                severity="error",
                payload={
                    "code": "plant_timeout",
                    "message": f"plant {exc.operation} exceeded its budget",
                    "phase": "build",
                    "operation": exc.operation,
                },
                context_ref=context_ref,
            )
        else:
            envelope = EventEnvelope(
                trace_id=trace.trace_id,
                timestamp=utc_now_iso(),
                scope=ContextKind.MOTOR,
                signal_type="latency",
                severity="warn",
                payload={
                    "duration_ms": budget_ms,
                    "budget_ms": budget_ms,
                    "timed_out": True,
                    "operation": exc.operation,
                },
                context_ref=context_ref,
            )
        logger.warning("trace %s: %s", trace.trace_id, exc)
        return self._ingest.submit(envelope)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _classify_pending(self, trace_id: str) -> Optional[DecisionRecord]:
        trace = self._store.get_trace(trace_id)
        if trace.state.is_terminal or not self._classifier.has_pending_events(trace_id):
            return None
        record = self._classifier.classify(trace_id)
        if self._store.has_decision_record(record.decision_id):
            return None
        try:
            return self._store.append_decision_record(record)
        except ConflictError:
            return None

    async def review(self, trace_id: str) -> Optional[DecisionRecord]:
        """
        Classify the trace's undecided events and persist the decision record.

        Only one review per trace runs at a time; a concurrent review, or one
        whose window was already decided, returns ``None``.
        """
        if trace_id in self._reviews_in_flight:
            logger.warning("trace %s: review already in flight, discarding", trace_id)
            return None
        self._reviews_in_flight.add(trace_id)
        try:
            return await asyncio.to_thread(self._classify_pending, trace_id)
        finally:
            self._reviews_in_flight.discard(trace_id)

    async def supervise(self, trace_id: str, *, max_rounds: int = 10) -> list[PlanOutcome]:
        """
        Review and handle decisions until the trace is no longer paused by them.

        A plan that rolled back to PAUSED without asking for reclassification is
        retried with the same record; the gate retry cap ends that loop.
        """
        outcomes: list[PlanOutcome] = []
        record: Optional[DecisionRecord] = None
        for _ in range(max_rounds):
            if record is None:
                record = await self.review(trace_id)
                if record is None:
                    break
            outcome = await self.handle_decision(record)
            outcomes.append(outcome)
            if outcome.final_state is not TraceState.PAUSED:
                break
            if outcome.reclassify:
                record = None
        return outcomes

    # ------------------------------------------------------------------
    # Action plans
    # ------------------------------------------------------------------

    async def handle_decision(self, record: DecisionRecord | Mapping[str, Any]) -> PlanOutcome:
        """
        Execute a decision record's action plan against its trace.

        The record is persisted first; handing in an already stored record is a
        retry and is accepted as long as it is identical.
        """
        record = DecisionRecord.from_payload(record)
        if self._store.has_decision_record(record.decision_id):
            if self._store.get_decision_record(record.decision_id) != record:
                raise ConflictError(f"decision id {record.decision_id} is already bound to another record")
        else:
            self._store.append_decision_record(record)

        async with self._lock_for(record.trace_id):
            trace = self._store.get_trace(record.trace_id)
            if trace.state not in (TraceState.RUNNING, TraceState.PAUSED):
                raise TransitionError(f"trace {trace.trace_id} is {trace.state.value}; cannot act on a decision")
            trace.last_decision_id = record.decision_id
            trace = self._store.save_trace(trace)

            outcome = PlanOutcome(trace_id=trace.trace_id, decision_id=record.decision_id, final_state=trace.state)
            try:
                trace = await self._execute_plan(trace, record, outcome)
            except (GateFailureError, ConflictError) as exc:
                trace = self._roll_back(self._store.get_trace(record.trace_id), record, exc)
                outcome.error = str(exc)
            except PlantTimeoutError as exc:
                trace = self._store.get_trace(record.trace_id)
                self._record_timeout(trace, exc)
                trace = self._transition(trace, TraceState.PAUSED, reason=str(exc), decision_id=record.decision_id)
                outcome.reclassify = True
                outcome.error = str(exc)
            except IsolationViolationError as exc:
                trace = self._store.get_trace(record.trace_id)
                self._transition(trace, TraceState.FAILED, reason=str(exc), decision_id=record.decision_id)
                raise
            outcome.final_state = trace.state
        return outcome

    async def _execute_plan(self, trace: Trace, record: DecisionRecord, outcome: PlanOutcome) -> Trace:
        staged: Optional[_StagedPatch] = None
        validation_failures: dict[ContextKind, int] = {}
        # a retried record keeps what an earlier attempt already committed
        committed = {version.kind for version in self._store.versions_for_decision(record.decision_id)}
        plan = record.action_plan
        index = 0
        while index < len(plan):
            step = plan[index]
            if isinstance(step, PauseStep):
                if trace.state is TraceState.RUNNING:
                    trace = self._transition(
                        trace, TraceState.PAUSED, reason=record.category.value, decision_id=record.decision_id
                    )
            elif isinstance(step, ApplyPatchStep):
                kind = ContextKind(step.target)
                if kind in committed:
                    logger.info(
                        "trace %s: %s patch of decision %s is already committed; skipping",
                        trace.trace_id,
                        kind.value,
                        record.decision_id,
                    )
                    # the plan pairs every apply_patch with the validate that follows it
                    index += 2
                    continue
                trace = self._transition(
                    trace,
                    _PATCHING_STATE[kind],
                    reason=f"apply {kind.value} patch",
                    decision_id=record.decision_id,
                )
                staged = await self._stage_patch(trace, record, step)
            elif isinstance(step, ValidateStep):
                kind = ContextKind(step.target)
                if staged is None or staged.kind is not kind:
                    raise TransitionError(f"validate({kind.value}) has no staged {kind.value} patch")
                trace = self._transition(
                    trace,
                    TraceState.VALIDATING,
                    reason=f"validate {kind.value} patch",
                    decision_id=record.decision_id,
                )
                report = await self._call_plant(
                    self._plant.validate(trace=trace, target=kind, snapshot=staged.snapshot),
                    operation="validate",
                    target=kind,
                    budget_s=self._settings.validate_timeout_s,
                )
                if not report.passed:
                    failures = validation_failures.get(kind, 0) + 1
                    validation_failures[kind] = failures
                    outcome.executed_steps.append(step_label(step))
                    if failures > self._settings.max_validation_retries:
                        outcome.error = f"{kind.value} patch failed validation {failures} time(s)"
                        return self._transition(
                            trace,
                            TraceState.FAILED,
                            reason="validation retries exhausted",
                            decision_id=record.decision_id,
                        )
                    logger.warning(
                        "trace %s: %s patch failed validation (%d/%d); retrying",
                        trace.trace_id,
                        kind.value,
                        failures,
                        self._settings.max_validation_retries,
                    )
                    staged = None
                    index -= 1
                    continue
                trace = self._commit(trace, record, staged, report)
                staged = None
            elif isinstance(step, ResumeStep):
                trace = await self._resume(trace, record)
            else:
                assert_never(step)
            outcome.executed_steps.append(step_label(step))
            index += 1
        return trace

    def _checks_for(self, record: DecisionRecord, kind: ContextKind) -> list[str]:
        if record.classification is not Classification.MIXED:
            return list(record.safety_checks)
        own = self._settings.motor_safety_checks if kind is ContextKind.MOTOR else self._settings.app_safety_checks
        foreign = self._settings.app_safety_checks if kind is ContextKind.MOTOR else self._settings.motor_safety_checks
        return [name for name in record.safety_checks if name in own or name not in foreign]

    async def _delegate_check(self, name: str, proposal: PatchProposal) -> bool | SafetyCheckOutcome:
        return await self._call_plant(
            self._plant.run_safety_check(name, proposal),
            operation=f"safety_check:{name}",
            target=proposal.target,
            budget_s=self._settings.validate_timeout_s,
        )

    async def _stage_patch(self, trace: Trace, record: DecisionRecord, step: ApplyPatchStep) -> _StagedPatch:
        kind = ContextKind(step.target)
        current_ref = trace.context_for(kind)
        if current_ref is None:
            raise TransitionError(f"trace {trace.trace_id} has no {kind.value} context to patch")
        # patches build on the head version, not the version the trace started with
        head = self._store.head_version(kind, split_context_ref(current_ref)[0])
        base = self._store.get_context(kind, head.ref if head is not None else current_ref)
        proposal = await self._call_plant(
            self._plant.apply_patch(trace=trace, decision=record, step=step, base=base),
            operation="apply_patch",
            target=kind,
            budget_s=self._settings.patch_timeout_s,
        )
        if proposal.target is not kind:
            raise GateFailureError(
                f"plant proposed a {proposal.target.value} patch for apply_patch({kind.value})",
                failed_checks=("patch_target",),
            )
        bump = self._settings.motor_version_bump if kind is ContextKind.MOTOR else self._settings.app_version_bump
        gate = await evaluate_gate(
            self._checks_for(record, kind),
            SafetyCheckContext(
                kind=kind,
                proposal=proposal,
                parent=base.version,
                proposed_version=str(base.version.semver.bump(bump)),
                foreign_artifact_ids=self._store.namespace_artifact_ids(other_kind(kind)),
            ),
            delegate=self._delegate_check,
        )
        if SafetyCheckId.CONTEXT_ISOLATION.value in gate.failed_checks:
            raise IsolationViolationError(
                f"{kind.value} patch for {base.ref} mixes namespaces: {', '.join(gate.failed_checks)}"
            )
        if not gate.passed:
            raise GateFailureError(
                f"{kind.value} patch for {base.ref} failed safety checks: {', '.join(gate.failed_checks)}",
                failed_checks=gate.failed_checks,
            )
        # the store re-checks isolation for records that did not list context_isolation
        snapshot = self._store.stage_context_version(
            kind,
            base.version.context_id,
            proposal.artifacts,
            base.version.version,
            bump=bump,
            decision_id=record.decision_id,
        )
        return _StagedPatch(kind=kind, proposal=proposal, snapshot=snapshot, gate=gate)

    def _commit(self, trace: Trace, record: DecisionRecord, staged: _StagedPatch, report: ValidationReport) -> Trace:
        if staged.kind is ContextKind.MOTOR:
            version, entry = self._store.commit_motor_patch(
                staged.snapshot,
                decision_id=record.decision_id,
                category=record.category,
                test_results=staged.gate.as_results(),
                validation_results=report.model_dump(mode="json"),
            )
            trace.motor_ctx = version.ref
            logger.info("trace %s: motor now %s (changelog %s)", trace.trace_id, version.ref, entry.entry_id)
        else:
            version = self._store.commit_context_version(staged.snapshot)
            trace.app_ctx = version.ref
            logger.info("trace %s: app now %s", trace.trace_id, version.ref)
        trace.gate_failures = 0
        trace.updated_at_iso = utc_now_iso()
        return self._store.save_trace(trace)

    async def _resume(self, trace: Trace, record: DecisionRecord) -> Trace:
        trace = self._transition(trace, TraceState.RESUMING, reason="patches validated", decision_id=record.decision_id)
        checkpoint = self._store.get_checkpoint(trace.trace_id)
        response = await self._call_plant(
            self._plant.run(self._plant_request(trace, checkpoint)),
            operation="resume",
            target=ContextKind.MOTOR,
            budget_s=self._settings.run_timeout_s,
        )
        trace = self._transition(trace, TraceState.RUNNING, reason="resumed", decision_id=record.decision_id)
        return self._absorb(trace, response)

    def _roll_back(self, trace: Trace, record: DecisionRecord, exc: Exception) -> Trace:
        trace.gate_failures += 1
        failed = trace.gate_failures > self._settings.max_gate_retries
        logger.warning(
            "trace %s: rolling back decision %s (%d/%d): %s",
            trace.trace_id,
            record.decision_id,
            trace.gate_failures,
            self._settings.max_gate_retries,
            exc,
        )
        return self._transition(
            trace,
            TraceState.FAILED if failed else TraceState.PAUSED,
            reason=f"gate retries exhausted: {exc}" if failed else f"rollback: {exc}",
            decision_id=record.decision_id,
        )
