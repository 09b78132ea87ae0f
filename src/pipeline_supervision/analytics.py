# pipeline_supervision/analytics.py
from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from pipeline_supervision.context_store import ContextStore
from pipeline_supervision.contracts import (
    DecisionRecord,
    LatencySignal,
    MotorChangelogEntry,
    QualityScoreSignal,
    StoredEvent,
    Trace,
    TransitionRecord,
)

_ANALYTICS_CONFIG = ConfigDict(extra="forbid", frozen=True)


class VersionWindowStats(BaseModel):
    """Aggregate of the events emitted while one motor version was active."""

    model_config = _ANALYTICS_CONFIG

    motor_ref: str
    event_count: int = 0
    error_count: int = 0
    trace_count: int = 0
    quality_score_total: float = 0.0
    quality_score_count: int = 0
    latency_ms_total: float = 0.0
    latency_count: int = 0

    @property
    def quality_score_mean(self) -> Optional[float]:
        if self.quality_score_count <= 0:
            return None
        return self.quality_score_total / float(self.quality_score_count)

    @property
    def latency_ms_mean(self) -> Optional[float]:
        if self.latency_count <= 0:
            return None
        return self.latency_ms_total / float(self.latency_count)

    @property
    def error_rate(self) -> float:
        if self.event_count <= 0:
            return 0.0
        return self.error_count / float(self.event_count)


class MotorImpactMetrics(BaseModel):
    model_config = _ANALYTICS_CONFIG

    entry_id: str
    before: VersionWindowStats
    after: VersionWindowStats

    def as_metrics(self) -> dict[str, float]:
        """Flat metric map suitable for a changelog entry's ``impact_metrics``."""
        metrics: dict[str, float] = {
            "traces_before": float(self.before.trace_count),
            "traces_after": float(self.after.trace_count),
            "error_rate_before": self.before.error_rate,
            "error_rate_after": self.after.error_rate,
        }
        for name in ("quality_score_mean", "latency_ms_mean"):
            before = getattr(self.before, name)
            after = getattr(self.after, name)
            if before is not None:
                metrics[f"{name}_before"] = before
            if after is not None:
                metrics[f"{name}_after"] = after
            if before is not None and after is not None:
                metrics[f"{name}_delta"] = after - before
        return metrics


def version_window_stats(events: Iterable[StoredEvent], motor_ref: str) -> VersionWindowStats:
    """Pure aggregation over events whose context_ref names ``motor_ref``."""
    event_count = 0
    error_count = 0
    traces: set[str] = set()
    quality_total = 0.0
    quality_count = 0
    latency_total = 0.0
    latency_count = 0

    for event in events:
        if event.context_ref is None or event.context_ref.motor_key != motor_ref:
            continue
        event_count += 1
        traces.add(event.trace_id)
        if event.is_error:
            error_count += 1
        signal = event.signal
        if isinstance(signal, QualityScoreSignal) and signal.score is not None:
            quality_total += signal.score
            quality_count += 1
        elif isinstance(signal, LatencySignal) and signal.duration_ms is not None:
            latency_total += signal.duration_ms
            latency_count += 1

    return VersionWindowStats(
        motor_ref=motor_ref,
        event_count=event_count,
        error_count=error_count,
        trace_count=len(traces),
        quality_score_total=quality_total,
        quality_score_count=quality_count,
        latency_ms_total=latency_total,
        latency_count=latency_count,
    )


def measure_motor_impact(store: ContextStore, entry: MotorChangelogEntry) -> MotorImpactMetrics:
    events = list(store.iter_all_events())
    return MotorImpactMetrics(
        entry_id=entry.entry_id,
        before=version_window_stats(events, entry.ref_before),
        after=version_window_stats(events, entry.ref_after),
    )


def record_motor_impact(store: ContextStore, entry_id: str) -> MotorChangelogEntry:
    """Measure a committed motor change and attach the metrics to its changelog entry."""
    entry = store.get_changelog_entry(entry_id)
    return store.record_changelog_impact(entry_id, measure_motor_impact(store, entry).as_metrics())


class TraceTimeline(BaseModel):
    """Post-mortem view of one trace."""

    model_config = _ANALYTICS_CONFIG

    trace: Trace
    transitions: list[TransitionRecord] = Field(default_factory=list)
    decisions: list[DecisionRecord] = Field(default_factory=list)
    changelog: list[MotorChangelogEntry] = Field(default_factory=list)

    @property
    def last_decision(self) -> Optional[DecisionRecord]:
        return self.decisions[-1] if self.decisions else None

    @property
    def states(self) -> Sequence[str]:
        return [state.value for state in self.trace.visited_states]


def trace_timeline(store: ContextStore, trace_id: str) -> TraceTimeline:
    trace = store.get_trace(trace_id)
    decisions = store.list_decision_records(trace_id)
    decision_ids = {record.decision_id for record in decisions}
    return TraceTimeline(
        trace=trace,
        transitions=list(trace.history),
        decisions=decisions,
        changelog=[entry for entry in store.list_changelog() if entry.decision_id in decision_ids],
    )
