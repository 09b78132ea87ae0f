# pipeline_supervision/classifier.py
"""
Incident classification over an event window.

Rules are evaluated in a fixed order and the first match wins:

1. ``motor_rules``        same error signature on >=2 traces pinned to one motor version
2. ``app_isolated``       the error is absent on another profile under the same motor version
3. ``mixed_drift``        quality score regressed after a motor version bump on the same app
4. ``motor_perf``         latency or cost over budget (including Plant timeouts)
5. ``app_default``        everything else, split into APP-SPEC / APP-BUILD by failure phase

The result depends only on the store's events, traces and context versions, so
classifying the same window twice yields the same record, id included.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pipeline_supervision._compat import UTC, parse_iso8601
from pipeline_supervision.context_store import ContextStore
from pipeline_supervision.contracts import (
    BuildPhase,
    Category,
    Classification,
    ContextKind,
    CostSignal,
    DecisionRecord,
    ErrorSignal,
    LatencySignal,
    QualityScoreSignal,
    SignalType,
    StoredEvent,
    Trace,
    TraceState,
    ValidationSignal,
    standard_action_plan,
)
from pipeline_supervision.errors import NotFoundError
from pipeline_supervision.settings import OperatorSettings
from pipeline_supervision.stable_ids import derive_decision_id, error_signature
from pipeline_supervision.versions import SemVer, format_context_ref, split_context_ref

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=UTC)


@dataclass(frozen=True)
class RuleMatch:
    rule: str
    category: Category
    reason: str
    event_ids: tuple[str, ...]

    @property
    def classification(self) -> Classification:
        return self.category.classification


@dataclass(frozen=True)
class ClassificationView:
    """Everything a rule may read: the trace, its window and the store."""

    store: ContextStore
    settings: OperatorSettings
    trace: Trace
    window: Sequence[StoredEvent]

    @property
    def window_errors(self) -> list[StoredEvent]:
        return [e for e in self.window if e.is_error and e.context_ref is not None]

    def all_events(self) -> list[StoredEvent]:
        return list(self.store.iter_all_events())


Rule = Callable[[ClassificationView], Optional[RuleMatch]]


def _sort_key(event: StoredEvent) -> tuple[datetime, str, int]:
    return (parse_iso8601(event.timestamp) or _EPOCH, event.trace_id, event.seq)


def _app_category(event: StoredEvent) -> Category:
    signal = event.signal
    phase: Optional[BuildPhase] = None
    if isinstance(signal, (ValidationSignal, ErrorSignal)):
        phase = signal.phase
    if phase is BuildPhase.SPEC:
        return Category.APP_SPEC
    if phase is BuildPhase.BUILD:
        return Category.APP_BUILD
    return Category.APP_SPEC if event.signal_type is SignalType.VALIDATION else Category.APP_BUILD


def rule_motor_rules(view: ClassificationView) -> Optional[RuleMatch]:
    errors = view.window_errors
    if not errors:
        return None
    history = [e for e in view.all_events() if e.is_error and e.context_ref is not None]

    for event in errors:
        signature = error_signature(event.signal_type.value, event.payload)
        motor_key = event.context_ref.motor_key
        supporting: dict[str, StoredEvent] = {}
        for other in history:
            if other.context_ref.motor_key != motor_key:
                continue
            if error_signature(other.signal_type.value, other.payload) != signature:
                continue
            supporting.setdefault(other.trace_id, other)
        if len(supporting) >= 2:
            event_ids = tuple(sorted({event.event_id, *(e.event_id for e in supporting.values())}))
            return RuleMatch(
                rule="motor_rules",
                category=Category.MOTOR_RULES,
                reason=(
                    f"error {signature} recurs on {len(supporting)} traces "
                    f"({', '.join(sorted(supporting))}) pinned to motor {motor_key}"
                ),
                event_ids=event_ids,
            )
    return None


def rule_app_isolated(view: ClassificationView) -> Optional[RuleMatch]:
    errors = view.window_errors
    if not errors:
        return None
    profiles = sorted(view.trace.profile_targets)

    for event in errors:
        signature = error_signature(event.signal_type.value, event.payload)
        motor_key = event.context_ref.motor_key
        observed_at = parse_iso8601(event.timestamp) or _EPOCH
        for other in view.store.list_traces(include_archived=True):
            if other.trace_id == view.trace.trace_id or sorted(other.profile_targets) == profiles:
                continue
            # only traces that already existed when the error was observed
            if (parse_iso8601(other.created_at_iso) or _EPOCH) > observed_at:
                continue
            observed = [
                e
                for e in view.store.list_events(other.trace_id)
                if e.context_ref is not None and e.context_ref.motor_key == motor_key
            ]
            if not observed:
                continue
            if any(e.is_error and error_signature(e.signal_type.value, e.payload) == signature for e in observed):
                continue
            return RuleMatch(
                rule="app_isolated",
                category=_app_category(event),
                reason=(
                    f"error {signature} is absent on trace {other.trace_id} "
                    f"(profiles {sorted(other.profile_targets)}) under the same motor {motor_key}"
                ),
                event_ids=(event.event_id,),
            )
    return None


def _prior_motor_version(view: ClassificationView, motor_ref: str, app_id: str) -> Optional[SemVer]:
    motor_id, current = split_context_ref(motor_ref)
    try:
        snapshot = view.store.get_context(ContextKind.MOTOR, format_context_ref(motor_id, current))
    except NotFoundError:
        snapshot = None
    if snapshot is not None and snapshot.version.parent_version is not None:
        return SemVer.parse(snapshot.version.parent_version)

    lower = {
        e.context_ref.motor_version
        for e in view.all_events()
        if e.context_ref is not None
        and e.context_ref.app_context_id == app_id
        and e.context_ref.motor_context_id == motor_id
        and e.context_ref.motor_version < current
    }
    return max(lower) if lower else None


def rule_mixed_drift(view: ClassificationView) -> Optional[RuleMatch]:
    tolerance = view.settings.quality_regression_tolerance
    scored = [
        e
        for e in view.window
        if e.signal_type is SignalType.QUALITY_SCORE
        and e.context_ref is not None
        and isinstance(e.signal, QualityScoreSignal)
        and e.signal.score is not None
    ]

    for event in scored:
        ref = event.context_ref
        app_id = ref.app_context_id
        prior = _prior_motor_version(view, ref.motor_ctx, app_id)
        if prior is None:
            continue
        prior_key = format_context_ref(ref.motor_context_id, prior)
        baseline_events = sorted(
            (
                e
                for e in view.all_events()
                if e.signal_type is SignalType.QUALITY_SCORE
                and e.context_ref is not None
                and e.context_ref.app_context_id == app_id
                and e.context_ref.motor_key == prior_key
                and e.signal.score is not None
            ),
            key=_sort_key,
        )
        if not baseline_events:
            continue
        baseline = baseline_events[-1]
        before = float(baseline.payload["score"])
        after = float(event.payload["score"])
        if after < before - tolerance:
            return RuleMatch(
                rule="mixed_drift",
                category=Category.MIXED_DRIFT,
                reason=(
                    f"quality_score for app {app_id} fell from {before:g} on motor {prior_key} "
                    f"to {after:g} on motor {ref.motor_key}"
                ),
                event_ids=(baseline.event_id, event.event_id),
            )
    return None


def rule_motor_perf(view: ClassificationView) -> Optional[RuleMatch]:
    breaches: list[tuple[StoredEvent, str]] = []
    for event in view.window:
        signal = event.signal
        if isinstance(signal, LatencySignal):
            budget = signal.budget_ms or view.settings.latency_budget_ms
            if signal.timed_out:
                breaches.append((event, f"{event.event_id} timed out"))
            elif signal.duration_ms is not None and signal.duration_ms > budget:
                breaches.append((event, f"{event.event_id} latency {signal.duration_ms:g}ms > {budget:g}ms"))
        elif isinstance(signal, CostSignal):
            budget = signal.budget or view.settings.cost_budget
            if signal.amount is not None and signal.amount > budget:
                breaches.append((event, f"{event.event_id} cost {signal.amount:g} > {budget:g}"))
    if not breaches:
        return None
    return RuleMatch(
        rule="motor_perf",
        category=Category.MOTOR_PERF,
        reason="; ".join(detail for _, detail in breaches),
        event_ids=tuple(event.event_id for event, _ in breaches),
    )


def rule_app_default(view: ClassificationView) -> Optional[RuleMatch]:
    # most severe event wins; earliest on ties
    trigger = max(view.window, key=lambda e: (e.severity.rank, -e.seq))
    category = _app_category(trigger)
    return RuleMatch(
        rule="app_default",
        category=category,
        reason=f"{trigger.severity.value} {trigger.signal_type.value} signal from {trigger.scope.value} scope",
        event_ids=(trigger.event_id,),
    )


RULES: tuple[tuple[str, Rule], ...] = (
    ("motor_rules", rule_motor_rules),
    ("app_isolated", rule_app_isolated),
    ("mixed_drift", rule_mixed_drift),
    ("motor_perf", rule_motor_perf),
    ("app_default", rule_app_default),
)


def unresolved_decision_id(trace: Trace) -> Optional[str]:
    """Decision the trace was paused under, if it is still paused under it."""
    if trace.state is not TraceState.PAUSED or not trace.history:
        return None
    return trace.history[-1].decision_id


def render_rationale(match: RuleMatch) -> str:
    return f"[{match.category.value}] rule {match.rule}: {match.reason}. Evidence: {', '.join(match.event_ids)}"


class Classifier:
    def __init__(self, store: ContextStore, settings: Optional[OperatorSettings] = None) -> None:
        self._store = store
        self._settings = settings or OperatorSettings()

    def window(self, trace_id: str, window_since: Optional[str] = None) -> list[StoredEvent]:
        """Events not yet covered by a decision, or every event at/after ``window_since``."""
        if window_since is not None:
            return self._store.list_events(trace_id, since=window_since)
        last = self._store.last_decision_record(trace_id)
        return self._store.list_events(trace_id, since_seq=last.window_end_seq if last else None)

    def has_pending_events(self, trace_id: str) -> bool:
        return bool(self.window(trace_id))

    def classify(self, trace_id: str, window_since: Optional[str] = None) -> DecisionRecord:
        """Classify the trace's event window into an unpersisted decision record."""
        trace = self._store.get_trace(trace_id)
        window = self.window(trace_id, window_since)
        if not window:
            raise NotFoundError(f"trace {trace_id!r} has no events to classify")

        view = ClassificationView(store=self._store, settings=self._settings, trace=trace, window=window)
        match: Optional[RuleMatch] = None
        for _, rule in RULES:
            match = rule(view)
            if match is not None:
                break
        assert match is not None  # app_default always matches a non-empty window

        supersedes = unresolved_decision_id(trace)
        window_end_seq = max(e.seq for e in window)
        record = DecisionRecord(
            decision_id=derive_decision_id(
                trace_id=trace_id,
                classification=match.classification.value,
                category=match.category.value,
                event_ids=match.event_ids,
                window_end_seq=window_end_seq,
                supersedes=supersedes,
            ),
            trace_id=trace_id,
            classification=match.classification,
            category=match.category,
            rationale=render_rationale(match),
            action_plan=standard_action_plan(match.classification),
            safety_checks=self._safety_checks_for(match.classification),
            event_ids=list(match.event_ids),
            window_end_seq=window_end_seq,
            supersedes=supersedes,
        )
        logger.info(
            "classified trace %s as %s/%s via %s",
            trace_id,
            record.classification.value,
            record.category.value,
            match.rule,
        )
        return record

    def _safety_checks_for(self, classification: Classification) -> list[str]:
        names: list[str] = []
        if classification in (Classification.MOTOR, Classification.MIXED):
            names.extend(self._settings.motor_safety_checks)
        if classification in (Classification.APP, Classification.MIXED):
            names.extend(self._settings.app_safety_checks)
        return list(dict.fromkeys(names))


def supersede(record: DecisionRecord, **changes: object) -> DecisionRecord:
    """Correction of ``record``: a new record with a fresh id that points back at it."""
    payload = record.model_dump(mode="json")
    payload.update(changes)
    payload["supersedes"] = record.decision_id
    payload["decision_id"] = derive_decision_id(
        trace_id=str(payload["trace_id"]),
        classification=str(payload["classification"]),
        category=str(payload["category"]),
        event_ids=[str(e) for e in payload.get("event_ids") or []],
        window_end_seq=int(payload.get("window_end_seq") or 0),
        supersedes=record.decision_id,
    )
    if "classification" in changes and "action_plan" not in changes:
        plan = standard_action_plan(str(payload["classification"]))
        payload["action_plan"] = [step.model_dump(mode="json", exclude_none=True) for step in plan]
    return DecisionRecord.from_payload(payload)
