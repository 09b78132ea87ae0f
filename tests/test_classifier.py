from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from pipeline_supervision.classifier import Classifier, supersede
from pipeline_supervision.context_store import ContextStore
from pipeline_supervision.contracts import (
    Category,
    Classification,
    ContextKind,
    Trace,
    TraceState,
    TransitionRecord,
    step_label,
)
from pipeline_supervision.errors import NotFoundError
from pipeline_supervision.settings import OperatorSettings
from pipeline_supervision.versions import VersionBump

SHARED_FAILURE = {"rule": "schema.required", "message": "sku is missing", "phase": "spec"}


def _ingest(store: ContextStore, *envelopes: dict[str, Any]) -> list[str]:
    return [store.append_event(envelope["trace_id"], envelope) for envelope in envelopes]


def test_same_failure_on_two_traces_with_same_motor_is_motor_rules(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
) -> None:
    make_trace("T1")
    make_trace("T2")
    _ingest(
        store,
        make_envelope(trace_id="T1", payload=SHARED_FAILURE),
        make_envelope(trace_id="T2", payload=SHARED_FAILURE, motor_ctx="motor@1.2.0"),
    )

    record = Classifier(store).classify("T1")

    assert record.classification is Classification.MOTOR
    assert record.category is Category.MOTOR_RULES
    assert record.event_ids == ["evt:T1:1", "evt:T2:1"]
    assert "rule motor_rules" in record.rationale
    assert "evt:T2:1" in record.rationale
    assert record.safety_checks == ["context_isolation", "semver_bump", "validators:strict"]


def test_same_failure_under_different_motor_versions_is_not_motor_rules(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
) -> None:
    make_trace("T1")
    make_trace("T2")
    _ingest(
        store,
        make_envelope(trace_id="T1", payload=SHARED_FAILURE, motor_ctx="motor@1.2.0"),
        make_envelope(trace_id="T2", payload=SHARED_FAILURE, motor_ctx="motor@1.1.0"),
    )

    record = Classifier(store).classify("T1")

    assert record.classification is Classification.APP
    assert record.category is Category.APP_SPEC


def test_failure_absent_on_other_profile_is_app(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
) -> None:
    make_trace("T1", profile_targets=["web"])
    make_trace("T3", profile_targets=["mobile"])
    _ingest(
        store,
        make_envelope(trace_id="T3", signal_type="coverage", severity="info", payload={"ratio": 0.9}),
        make_envelope(trace_id="T1", payload=SHARED_FAILURE),
    )

    record = Classifier(store).classify("T1")

    assert record.classification is Classification.APP
    assert record.category is Category.APP_SPEC
    assert "rule app_isolated" in record.rationale
    assert "T3" in record.rationale
    assert [step_label(s) for s in record.action_plan] == [
        "pause(pipeline)",
        "apply_patch(app)",
        "validate(app)",
        "resume(pipeline)",
    ]
    assert record.safety_checks == ["context_isolation"]


def test_profile_trace_started_after_the_failure_is_not_a_comparison(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
) -> None:
    make_trace("T1", profile_targets=["web"])
    make_trace("T3", profile_targets=["mobile"], created_at_iso="2026-02-12T00:00:00+00:00")
    _ingest(
        store,
        make_envelope(trace_id="T1", payload=SHARED_FAILURE),
        make_envelope(
            trace_id="T3",
            timestamp="2026-02-12T00:05:00Z",
            signal_type="coverage",
            severity="info",
            payload={"ratio": 0.9},
        ),
    )

    record = Classifier(store).classify("T1")

    assert record.category is Category.APP_SPEC
    assert "rule app_isolated" not in record.rationale
    assert "rule app_default" in record.rationale


def test_quality_drop_after_motor_bump_is_mixed_drift(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
) -> None:
    make_trace("T5", motor_ctx="motor@1.1.0")
    make_trace("T6", motor_ctx="motor@1.2.0")
    _ingest(
        store,
        make_envelope(
            trace_id="T5",
            signal_type="quality_score",
            severity="info",
            payload={"score": 0.92},
            motor_ctx="motor@v1.1.0",
        ),
        make_envelope(
            trace_id="T6",
            timestamp="2026-02-12T00:00:00Z",
            signal_type="quality_score",
            severity="warn",
            payload={"score": 0.71},
            motor_ctx="motor@v1.2.0",
        ),
    )

    record = Classifier(store).classify("T6")

    assert record.classification is Classification.MIXED
    assert record.category is Category.MIXED_DRIFT
    assert [step_label(s) for s in record.action_plan] == [
        "pause(pipeline)",
        "apply_patch(motor)",
        "validate(motor)",
        "apply_patch(app)",
        "validate(app)",
        "resume(pipeline)",
    ]
    assert record.event_ids == ["evt:T5:1", "evt:T6:1"]
    assert record.safety_checks == ["context_isolation", "semver_bump", "validators:strict"]


def test_drift_baseline_follows_the_stored_parent_version(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
) -> None:
    v1 = store.create_context_version(ContextKind.MOTOR, "motor", {"motor:rules": 1})
    v2 = store.create_context_version(ContextKind.MOTOR, "motor", {"motor:rules": 2}, v1.version, bump=VersionBump.MINOR)
    store.create_context_version(ContextKind.MOTOR, "motor", {"motor:rules": 3}, v2.version, bump=VersionBump.MINOR)
    make_trace("T4", motor_ctx="motor@1.0.0")
    make_trace("T5", motor_ctx="motor@1.1.0")
    make_trace("T6", motor_ctx="motor@1.2.0")
    quality = dict(signal_type="quality_score", severity="info")
    _ingest(
        store,
        make_envelope(trace_id="T4", payload={"score": 0.70}, motor_ctx="motor@1.0.0", **quality),
        make_envelope(trace_id="T5", payload={"score": 0.95}, motor_ctx="motor@1.1.0", **quality),
        make_envelope(trace_id="T6", payload={"score": 0.72}, motor_ctx="motor@1.2.0", **quality),
    )

    record = Classifier(store).classify("T6")

    assert record.category is Category.MIXED_DRIFT
    assert record.event_ids == ["evt:T5:1", "evt:T6:1"]


def test_small_quality_dip_within_tolerance_is_not_drift(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
) -> None:
    make_trace("T5", motor_ctx="motor@1.1.0")
    make_trace("T6", motor_ctx="motor@1.2.0")
    quality = dict(signal_type="quality_score", severity="warn")
    _ingest(
        store,
        make_envelope(trace_id="T5", payload={"score": 0.92}, motor_ctx="motor@1.1.0", **quality),
        make_envelope(trace_id="T6", payload={"score": 0.90}, motor_ctx="motor@1.2.0", **quality),
    )

    record = Classifier(store).classify("T6")

    assert record.classification is Classification.APP


@pytest.mark.parametrize(
    ("signal_type", "payload"),
    [
        ("latency", {"duration_ms": 45_000}),
        ("latency", {"duration_ms": 900, "budget_ms": 500}),
        ("latency", {"timed_out": True}),
        ("cost", {"amount": 9.5, "unit": "usd"}),
    ],
)
def test_budget_breach_is_motor_perf(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
    signal_type: str,
    payload: dict[str, Any],
) -> None:
    make_trace("T1")
    _ingest(store, make_envelope(scope="motor", signal_type=signal_type, severity="warn", payload=payload))

    record = Classifier(store).classify("T1")

    assert record.classification is Classification.MOTOR
    assert record.category is Category.MOTOR_PERF


def test_budgets_come_from_settings(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
) -> None:
    make_trace("T1")
    _ingest(store, make_envelope(scope="motor", signal_type="latency", severity="warn", payload={"duration_ms": 2_000}))

    relaxed = Classifier(store).classify("T1")
    strict = Classifier(store, OperatorSettings(latency_budget_ms=1_000)).classify("T1")

    assert relaxed.category is not Category.MOTOR_PERF
    assert strict.category is Category.MOTOR_PERF


@pytest.mark.parametrize(
    ("signal_type", "payload", "expected"),
    [
        ("validation", {"rule": "r", "phase": "spec"}, Category.APP_SPEC),
        ("validation", {"rule": "r", "phase": "build"}, Category.APP_BUILD),
        ("error", {"code": "E1", "phase": "spec"}, Category.APP_SPEC),
        ("error", {"code": "E1"}, Category.APP_BUILD),
        ("validation", {"rule": "r"}, Category.APP_SPEC),
    ],
)
def test_fallback_splits_app_failures_by_phase(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
    signal_type: str,
    payload: dict[str, Any],
    expected: Category,
) -> None:
    make_trace("T1")
    _ingest(store, make_envelope(signal_type=signal_type, payload=payload))

    record = Classifier(store).classify("T1")

    assert record.category is expected
    assert "rule app_default" in record.rationale


def test_classification_is_deterministic(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
) -> None:
    make_trace("T1")
    make_trace("T2")
    _ingest(
        store,
        make_envelope(trace_id="T1", payload=SHARED_FAILURE),
        make_envelope(trace_id="T2", payload=SHARED_FAILURE),
    )

    first = Classifier(store).classify("T1")
    second = Classifier(store).classify("T1")

    assert first == second
    assert first.decision_id.startswith("dec_")


def test_window_starts_after_last_decision(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
) -> None:
    make_trace("T1")
    classifier = Classifier(store)

    with pytest.raises(NotFoundError):
        classifier.classify("T1")

    _ingest(store, make_envelope(payload={"rule": "r", "phase": "spec"}))
    first = store.append_decision_record(classifier.classify("T1"))
    assert first.window_end_seq == 1
    assert classifier.has_pending_events("T1") is False
    with pytest.raises(NotFoundError):
        classifier.classify("T1")

    _ingest(
        store,
        make_envelope(timestamp="2026-02-11T01:00:00Z", signal_type="error", payload={"code": "E", "phase": "build"}),
    )
    second = classifier.classify("T1")
    assert second.event_ids == ["evt:T1:2"]
    assert second.category is Category.APP_BUILD
    assert second.supersedes is None

    assert classifier.classify("T1", window_since="2026-02-11T00:00:00Z").window_end_seq == 2


def test_new_decision_supersedes_the_one_the_trace_is_paused_under(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
) -> None:
    make_trace("T1")
    classifier = Classifier(store)
    _ingest(store, make_envelope())
    first = store.append_decision_record(classifier.classify("T1"))

    trace = store.get_trace("T1")
    trace.history.append(
        TransitionRecord(
            from_state=TraceState.RUNNING,
            to_state=TraceState.PAUSED,
            reason="gate failure",
            decision_id=first.decision_id,
            at_iso="2026-02-11T00:10:00+00:00",
        )
    )
    trace.state = TraceState.PAUSED
    store.save_trace(trace)
    _ingest(store, make_envelope(timestamp="2026-02-11T00:11:00Z"))

    second = classifier.classify("T1")

    assert second.supersedes == first.decision_id
    assert second.decision_id != first.decision_id
    store.append_decision_record(second)


def test_supersede_builds_correction_with_fresh_id(
    store: ContextStore,
    make_trace: Callable[..., Trace],
    make_envelope: Callable[..., dict[str, Any]],
) -> None:
    make_trace("T1")
    _ingest(store, make_envelope())
    original = store.append_decision_record(Classifier(store).classify("T1"))

    correction = supersede(original, classification="motor", category="MOTOR-RULES", rationale="operator override")

    assert correction.supersedes == original.decision_id
    assert correction.decision_id != original.decision_id
    assert correction.patch_targets == ["motor"]
    assert store.append_decision_record(correction).rationale == "operator override"
