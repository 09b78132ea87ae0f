# pipeline_supervision/context_store.py
from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Iterator, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from pipeline_supervision._compat import StrEnum, parse_iso8601, utc_now_iso
from pipeline_supervision.adapters.persistence import JOURNAL_FILENAME, PathLike, append_jsonl, read_jsonl
from pipeline_supervision.contracts import (
    Category,
    ContextKind,
    ContextSnapshot,
    ContextVersion,
    DecisionRecord,
    EventEnvelope,
    MotorChangelogEntry,
    StoredEvent,
    Trace,
    validate_contract,
)
from pipeline_supervision.errors import (
    ConflictError,
    IsolationViolationError,
    NotFoundError,
    ValidationError,
)
from pipeline_supervision.safety import isolation_violations, other_kind
from pipeline_supervision.stable_ids import content_hash, derive_changelog_entry_id, event_id
from pipeline_supervision.versions import INITIAL_VERSION, SemVer, VersionBump, split_context_ref

logger = logging.getLogger(__name__)


class RecordKind(StrEnum):
    CONTEXT_VERSION = "context_version"
    MOTOR_COMMIT = "motor_commit"
    EVENT = "event"
    DECISION = "decision_record"
    CHANGELOG = "changelog_entry"
    CHANGELOG_IMPACT = "changelog_impact"
    CHECKPOINT = "checkpoint"
    TRACE = "trace"


class ContextStore:
    """
    Durable owner of contexts, events, decision records, checkpoints, traces and
    the motor changelog for every trace.

    Every write appends one record to an fsynced JSONL journal before it becomes
    visible in memory; opening a store replays the journal. One lock guards all
    mutations, so the motor version counter and the changelog advance one
    commit at a time.
    """

    def __init__(self, root: PathLike) -> None:
        self._root = Path(root)
        self._journal_path = self._root / JOURNAL_FILENAME
        self._lock = threading.RLock()

        self._contexts: dict[ContextKind, dict[str, list[ContextSnapshot]]] = {
            ContextKind.APP: {},
            ContextKind.MOTOR: {},
        }
        self._artifact_owner: dict[str, ContextKind] = {}
        self._events: dict[str, list[StoredEvent]] = {}
        self._decisions: dict[str, DecisionRecord] = {}
        self._decisions_by_trace: dict[str, list[str]] = {}
        self._changelog: dict[str, MotorChangelogEntry] = {}
        self._checkpoints: dict[str, str] = {}
        self._traces: dict[str, Trace] = {}

        self._root.mkdir(parents=True, exist_ok=True)
        if self._journal_path.exists():
            self._replay()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def journal_path(self) -> Path:
        return self._journal_path

    # ------------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------------

    def _write(self, kind: RecordKind, body: Mapping[str, Any]) -> None:
        append_jsonl(self._journal_path, {"record_kind": kind.value, **body})

    def _replay(self) -> None:
        records = 0
        lineno = 0
        try:
            for meta, raw in read_jsonl(self._journal_path):
                lineno = meta["lineno"]
                self._apply(RecordKind(raw.get("record_kind")), raw)
                records += 1
        except (KeyError, ValueError, PydanticValidationError) as exc:
            raise ValidationError(
                f"journal {self._journal_path} is malformed after {records} valid records (last line read {lineno}): {exc}"
            ) from exc
        logger.info("replayed %d journal records from %s", records, self._journal_path)

    def _apply(self, kind: RecordKind, raw: Mapping[str, Any]) -> None:
        if kind is RecordKind.CONTEXT_VERSION:
            self._apply_snapshot(ContextSnapshot.model_validate(raw["snapshot"]))
        elif kind is RecordKind.MOTOR_COMMIT:
            self._apply_snapshot(ContextSnapshot.model_validate(raw["snapshot"]))
            self._apply_changelog(MotorChangelogEntry.model_validate(raw["entry"]))
        elif kind is RecordKind.EVENT:
            self._apply_event(StoredEvent.model_validate(raw["event"]))
        elif kind is RecordKind.DECISION:
            self._apply_decision(DecisionRecord.model_validate(raw["decision"]))
        elif kind is RecordKind.CHANGELOG:
            self._apply_changelog(MotorChangelogEntry.model_validate(raw["entry"]))
        elif kind is RecordKind.CHANGELOG_IMPACT:
            self._apply_impact(str(raw["entry_id"]), raw["impact_metrics"])
        elif kind is RecordKind.CHECKPOINT:
            self._checkpoints[str(raw["trace_id"])] = str(raw["checkpoint_ref"])
        elif kind is RecordKind.TRACE:
            trace = Trace.model_validate(raw["trace"])
            self._traces[trace.trace_id] = trace

    def _apply_snapshot(self, snapshot: ContextSnapshot) -> None:
        version = snapshot.version
        self._contexts[version.kind].setdefault(version.context_id, []).append(snapshot)
        for artifact_id in version.artifact_ids:
            self._artifact_owner.setdefault(artifact_id, version.kind)

    def _apply_event(self, event: StoredEvent) -> None:
        self._events.setdefault(event.trace_id, []).append(event)

    def _apply_decision(self, record: DecisionRecord) -> None:
        self._decisions[record.decision_id] = record
        self._decisions_by_trace.setdefault(record.trace_id, []).append(record.decision_id)

    def _apply_changelog(self, entry: MotorChangelogEntry) -> None:
        self._changelog[entry.entry_id] = entry

    def _apply_impact(self, entry_id: str, metrics: Mapping[str, float]) -> None:
        entry = self._changelog[entry_id]
        merged = {**entry.impact_metrics, **{str(k): float(v) for k, v in metrics.items()}}
        self._changelog[entry_id] = entry.model_copy(update={"impact_metrics": merged})

    # ------------------------------------------------------------------
    # Contexts
    # ------------------------------------------------------------------

    def _head(self, kind: ContextKind, context_id: str) -> Optional[ContextSnapshot]:
        versions = self._contexts[kind].get(context_id)
        return versions[-1] if versions else None

    def _check_isolation(self, kind: ContextKind, artifact_ids: list[str]) -> None:
        foreign = [aid for aid, owner in self._artifact_owner.items() if owner is not kind]
        offending = isolation_violations(kind, artifact_ids, foreign)
        if offending:
            raise IsolationViolationError(
                f"{kind.value} context cannot store {other_kind(kind).value} artifacts: {offending}"
            )

    def stage_context_version(
        self,
        kind: ContextKind | str,
        context_id: str,
        artifacts: Mapping[str, Any],
        parent_version: Optional[str] = None,
        *,
        bump: VersionBump | str = VersionBump.PATCH,
        created_at_iso: Optional[str] = None,
        decision_id: Optional[str] = None,
    ) -> ContextSnapshot:
        """
        Build the snapshot that ``create_context_version`` would store, without storing it.
        ``decision_id`` tags the version with the decision that produced it.

        Raises the same errors as the real write: ``IsolationViolationError`` for mixed
        namespaces, ``ConflictError`` when ``parent_version`` is not the current head,
        ``NotFoundError`` when a parent is named for a context id that does not exist.
        """
        try:
            kind = ContextKind(kind)
            bump = VersionBump(bump)
            parent = str(SemVer.parse(parent_version)) if parent_version is not None else None
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        artifact_ids = sorted(artifacts)

        with self._lock:
            self._check_isolation(kind, artifact_ids)
            head = self._head(kind, context_id)
            if head is None:
                if parent is not None:
                    raise NotFoundError(f"unknown {kind.value} context {context_id!r}")
                version = INITIAL_VERSION
            else:
                if parent is None:
                    raise ConflictError(f"{kind.value} context {context_id!r} already exists at {head.version.version}")
                if parent != head.version.version:
                    raise ConflictError(
                        f"{kind.value} context {context_id!r} advanced to {head.version.version}; parent {parent} is stale"
                    )
                version = str(head.version.semver.bump(bump))

            context_version = ContextVersion(
                kind=kind,
                context_id=context_id,
                version=version,
                content_hash=content_hash(artifacts),
                parent_version=parent,
                created_at_iso=created_at_iso or utc_now_iso(),
                artifact_ids=artifact_ids,
                decision_id=decision_id,
            )
            return ContextSnapshot(version=context_version, artifacts=copy.deepcopy(dict(artifacts)))

    def _recheck_staged(self, snapshot: ContextSnapshot) -> None:
        version = snapshot.version
        self._check_isolation(version.kind, list(version.artifact_ids))
        head = self._head(version.kind, version.context_id)
        head_version = head.version.version if head is not None else None
        if head_version != version.parent_version:
            raise ConflictError(
                f"{version.kind.value} context {version.context_id!r} advanced to {head_version}; "
                f"staged parent {version.parent_version} is stale"
            )

    def create_context_version(
        self,
        kind: ContextKind | str,
        context_id: str,
        artifacts: Mapping[str, Any],
        parent_version: Optional[str] = None,
        *,
        bump: VersionBump | str = VersionBump.PATCH,
    ) -> ContextVersion:
        with self._lock:
            snapshot = self.stage_context_version(kind, context_id, artifacts, parent_version, bump=bump)
            return self.commit_context_version(snapshot)

    def commit_context_version(self, snapshot: ContextSnapshot) -> ContextVersion:
        """Store a staged snapshot, re-checking its parent under the store lock."""
        with self._lock:
            self._recheck_staged(snapshot)
            self._write(RecordKind.CONTEXT_VERSION, {"snapshot": snapshot.model_dump(mode="json")})
            self._apply_snapshot(snapshot)
        logger.info("stored %s context %s", snapshot.kind.value, snapshot.ref)
        return snapshot.version

    def commit_motor_patch(
        self,
        snapshot: ContextSnapshot,
        *,
        decision_id: str,
        category: Category | str,
        test_results: Mapping[str, bool],
        validation_results: Optional[Mapping[str, Any]] = None,
    ) -> tuple[ContextVersion, MotorChangelogEntry]:
        """
        Store a staged motor version together with its changelog entry.

        Both land in one journal record, so either both are durable or neither is.
        """
        version = snapshot.version
        if version.kind is not ContextKind.MOTOR:
            raise ValidationError("commit_motor_patch only accepts motor snapshots")
        if version.parent_version is None:
            raise ValidationError("a motor patch needs a parent version")

        entry = MotorChangelogEntry(
            entry_id=derive_changelog_entry_id(
                decision_id=decision_id,
                motor_context_id=version.context_id,
                version_after=version.version,
            ),
            motor_context_id=version.context_id,
            version_before=version.parent_version,
            version_after=version.version,
            decision_id=decision_id,
            category=Category(category),
            test_results=dict(test_results),
            validation_results=dict(validation_results or {}),
            created_at_iso=utc_now_iso(),
        )

        with self._lock:
            self._recheck_staged(snapshot)
            if entry.entry_id in self._changelog:
                raise ConflictError(f"changelog entry {entry.entry_id} already exists")
            self._write(
                RecordKind.MOTOR_COMMIT,
                {"snapshot": snapshot.model_dump(mode="json"), "entry": entry.model_dump(mode="json")},
            )
            self._apply_snapshot(snapshot)
            self._apply_changelog(entry)
        logger.info(
            "committed motor %s -> %s for decision %s",
            entry.version_before,
            entry.version_after,
            decision_id,
        )
        return version, entry

    def get_context(self, kind: ContextKind | str, version_ref: str) -> ContextSnapshot:
        try:
            kind = ContextKind(kind)
            context_id, wanted = split_context_ref(version_ref)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        with self._lock:
            for snapshot in self._contexts[kind].get(context_id, ()):
                if snapshot.version.semver == wanted:
                    return snapshot.model_copy(deep=True)
        raise NotFoundError(f"unknown {kind.value} context version {version_ref!r}")

    def head_version(self, kind: ContextKind | str, context_id: str) -> Optional[ContextVersion]:
        with self._lock:
            head = self._head(ContextKind(kind), context_id)
            return head.version if head is not None else None

    def list_context_versions(self, kind: ContextKind | str, context_id: str) -> list[ContextVersion]:
        with self._lock:
            return [snapshot.version for snapshot in self._contexts[ContextKind(kind)].get(context_id, ())]

    def versions_for_decision(self, decision_id: str) -> list[ContextVersion]:
        """Stored context versions, of either kind, that were produced by ``decision_id``."""
        with self._lock:
            return [
                snapshot.version
                for by_id in self._contexts.values()
                for versions in by_id.values()
                for snapshot in versions
                if snapshot.version.decision_id == decision_id
            ]

    def namespace_artifact_ids(self, kind: ContextKind | str) -> frozenset[str]:
        kind = ContextKind(kind)
        with self._lock:
            return frozenset(aid for aid, owner in self._artifact_owner.items() if owner is kind)

    # ------------------------------------------------------------------
    # Traces (written by the orchestrator only)
    # ------------------------------------------------------------------

    def create_trace(self, trace: Trace) -> Trace:
        with self._lock:
            if trace.trace_id in self._traces:
                raise ConflictError(f"trace {trace.trace_id!r} already exists")
            return self.save_trace(trace)

    def save_trace(self, trace: Trace) -> Trace:
        stored = trace.model_copy(deep=True)
        with self._lock:
            self._write(RecordKind.TRACE, {"trace": stored.model_dump(mode="json")})
            self._traces[stored.trace_id] = stored
        return stored.model_copy(deep=True)

    def get_trace(self, trace_id: str) -> Trace:
        with self._lock:
            trace = self._traces.get(trace_id)
            if trace is None:
                raise NotFoundError(f"unknown trace {trace_id!r}")
            return trace.model_copy(deep=True)

    def list_traces(self, *, include_archived: bool = False) -> list[Trace]:
        with self._lock:
            traces = sorted(self._traces.values(), key=lambda t: t.trace_id)
            return [t.model_copy(deep=True) for t in traces if include_archived or not t.archived]

    def archive_trace(self, trace_id: str) -> Trace:
        trace = self.get_trace(trace_id)
        if trace.archived:
            return trace
        trace.archived = True
        trace.updated_at_iso = utc_now_iso()
        return self.save_trace(trace)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def append_event(self, trace_id: str, event: EventEnvelope | Mapping[str, Any]) -> str:
        envelope = EventEnvelope.from_payload(event)
        if envelope.trace_id != trace_id:
            raise ValidationError(f"event trace_id {envelope.trace_id!r} does not match {trace_id!r}")

        with self._lock:
            if trace_id not in self._traces:
                raise NotFoundError(f"unknown trace {trace_id!r}")
            seq = len(self._events.get(trace_id, ())) + 1
            stored = StoredEvent(
                **envelope.model_dump(include=set(EventEnvelope.model_fields)),
                event_id=event_id(trace_id, seq),
                seq=seq,
            )
            self._write(RecordKind.EVENT, {"event": stored.model_dump(mode="json")})
            self._apply_event(stored)
        return stored.event_id

    def list_events(
        self,
        trace_id: str,
        *,
        since_seq: Optional[int] = None,
        since: Optional[str] = None,
    ) -> list[StoredEvent]:
        """Events of one trace in append order, optionally after ``since_seq`` or at/after ``since``."""
        since_dt: Optional[datetime] = None
        if since is not None:
            since_dt = parse_iso8601(since)
            if since_dt is None:
                raise ValidationError(f"window start {since!r} is not ISO-8601")

        with self._lock:
            if trace_id not in self._traces:
                raise NotFoundError(f"unknown trace {trace_id!r}")
            events = list(self._events.get(trace_id, ()))

        if since_seq is not None:
            events = [e for e in events if e.seq > since_seq]
        if since_dt is not None:
            events = [e for e in events if (parse_iso8601(e.timestamp) or since_dt) >= since_dt]
        return events

    def iter_all_events(self) -> Iterator[StoredEvent]:
        """Every stored event, ordered by trace id then sequence."""
        with self._lock:
            snapshot = {trace_id: list(events) for trace_id, events in self._events.items()}
        for trace_id in sorted(snapshot):
            yield from snapshot[trace_id]

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def record_checkpoint(self, trace_id: str, checkpoint_ref: str) -> None:
        if not checkpoint_ref:
            raise ValidationError("checkpoint_ref must be non-empty")
        with self._lock:
            if trace_id not in self._traces:
                raise NotFoundError(f"unknown trace {trace_id!r}")
            self._write(RecordKind.CHECKPOINT, {"trace_id": trace_id, "checkpoint_ref": checkpoint_ref})
            self._checkpoints[trace_id] = checkpoint_ref

    def get_checkpoint(self, trace_id: str) -> Optional[str]:
        with self._lock:
            if trace_id not in self._traces:
                raise NotFoundError(f"unknown trace {trace_id!r}")
            return self._checkpoints.get(trace_id)

    # ------------------------------------------------------------------
    # Decision records
    # ------------------------------------------------------------------

    def append_decision_record(self, record: DecisionRecord | Mapping[str, Any]) -> DecisionRecord:
        record = DecisionRecord.from_payload(record)
        with self._lock:
            if record.decision_id in self._decisions:
                raise ConflictError(f"decision record {record.decision_id} already exists")
            if record.trace_id not in self._traces:
                raise NotFoundError(f"unknown trace {record.trace_id!r}")
            if record.supersedes is not None and record.supersedes not in self._decisions:
                raise NotFoundError(f"superseded decision {record.supersedes!r} is unknown")
            self._write(RecordKind.DECISION, {"decision": record.model_dump(mode="json")})
            self._apply_decision(record)
        logger.info(
            "recorded decision %s for trace %s: %s/%s",
            record.decision_id,
            record.trace_id,
            record.classification.value,
            record.category.value,
        )
        return record

    def get_decision_record(self, decision_id: str) -> DecisionRecord:
        with self._lock:
            record = self._decisions.get(decision_id)
        if record is None:
            raise NotFoundError(f"unknown decision record {decision_id!r}")
        return record

    def has_decision_record(self, decision_id: str) -> bool:
        with self._lock:
            return decision_id in self._decisions

    def list_decision_records(self, trace_id: str) -> list[DecisionRecord]:
        with self._lock:
            return [self._decisions[d] for d in self._decisions_by_trace.get(trace_id, ())]

    def last_decision_record(self, trace_id: str) -> Optional[DecisionRecord]:
        records = self.list_decision_records(trace_id)
        return records[-1] if records else None

    # ------------------------------------------------------------------
    # Motor changelog
    # ------------------------------------------------------------------

    def append_changelog_entry(self, entry: MotorChangelogEntry | Mapping[str, Any]) -> MotorChangelogEntry:
        entry = validate_contract(MotorChangelogEntry, entry, what="changelog entry")
        with self._lock:
            if entry.entry_id in self._changelog:
                raise ConflictError(f"changelog entry {entry.entry_id} already exists")
            if not self.has_decision_record(entry.decision_id):
                raise NotFoundError(f"changelog entry references unknown decision {entry.decision_id!r}")
            self._write(RecordKind.CHANGELOG, {"entry": entry.model_dump(mode="json")})
            self._apply_changelog(entry)
        return entry

    def record_changelog_impact(self, entry_id: str, impact_metrics: Mapping[str, float]) -> MotorChangelogEntry:
        """Attach post-hoc impact metrics; the original entry line is never rewritten."""
        with self._lock:
            if entry_id not in self._changelog:
                raise NotFoundError(f"unknown changelog entry {entry_id!r}")
            metrics = {str(k): float(v) for k, v in impact_metrics.items()}
            self._write(RecordKind.CHANGELOG_IMPACT, {"entry_id": entry_id, "impact_metrics": metrics})
            self._apply_impact(entry_id, metrics)
            return self._changelog[entry_id]

    def get_changelog_entry(self, entry_id: str) -> MotorChangelogEntry:
        with self._lock:
            entry = self._changelog.get(entry_id)
        if entry is None:
            raise NotFoundError(f"unknown changelog entry {entry_id!r}")
        return entry

    def list_changelog(self, *, motor_context_id: Optional[str] = None) -> list[MotorChangelogEntry]:
        with self._lock:
            entries = list(self._changelog.values())
        if motor_context_id is not None:
            entries = [e for e in entries if e.motor_context_id == motor_context_id]
        return entries
