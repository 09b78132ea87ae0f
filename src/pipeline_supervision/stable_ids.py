# pipeline_supervision/stable_ids.py
from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import Any


def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _canon(obj: Any) -> str:
    """
    Canonical JSON string (stable across runs) for hashing.
    """
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)


def content_hash(artifacts: Mapping[str, Any]) -> str:
    """Content address of an artifact set; independent of insertion order."""
    return "sha256:" + _sha256_hex(_canon(dict(artifacts)))


def payload_fingerprint(payload: Mapping[str, Any]) -> str:
    explicit = payload.get("fingerprint")
    if isinstance(explicit, str) and explicit.strip():
        return explicit.strip()
    return "fp_" + _sha256_hex(_canon(dict(payload)))[:32]


def error_signature(signal_type: str, payload: Mapping[str, Any]) -> str:
    return f"{signal_type}:{payload_fingerprint(payload)}"


def event_id(trace_id: str, seq: int) -> str:
    return f"evt:{trace_id}:{seq}"


def derive_decision_id(
    *,
    trace_id: str,
    classification: str,
    category: str,
    event_ids: Iterable[str],
    window_end_seq: int,
    supersedes: str | None = None,
) -> str:
    key_obj = {
        "trace_id": trace_id,
        "classification": classification,
        "category": category,
        "event_ids": sorted(event_ids),
        "window_end_seq": window_end_seq,
        "supersedes": supersedes,
    }
    return "dec_" + _sha256_hex(_canon(key_obj))


def derive_changelog_entry_id(*, decision_id: str, motor_context_id: str, version_after: str) -> str:
    key_obj = {
        "decision_id": decision_id,
        "motor_context_id": motor_context_id,
        "version_after": version_after,
    }
    return "chg_" + _sha256_hex(_canon(key_obj))
