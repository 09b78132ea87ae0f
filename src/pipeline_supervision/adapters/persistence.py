# pipeline_supervision/adapters/persistence.py
from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Iterator, Tuple, Union

from pydantic import BaseModel

JsonObj = Dict[str, Any]
PathLike = Union[str, Path]

JOURNAL_FILENAME = "journal.jsonl"


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def append_jsonl(path: PathLike, record: Mapping[str, Any] | BaseModel, *, durable: bool = True) -> None:
    """
    Append ``record`` to ``path`` as a single JSON line.

    With ``durable`` the line is flushed and fsynced before returning, so a
    record the caller saw written survives a crash.
    """
    if isinstance(record, BaseModel):
        record = record.model_dump(mode="json")
    if not isinstance(record, Mapping):
        raise ValueError(f"journal records must be JSON objects, got {type(record).__name__}")

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(dict(record), ensure_ascii=False, default=_json_default)
    with p.open("a", encoding="utf-8") as f:
        f.write(line + "\n")
        if durable:
            f.flush()
            os.fsync(f.fileno())


def read_jsonl(path: PathLike) -> Iterator[Tuple[JsonObj, JsonObj]]:
    """Yield ``(meta, record)`` per non-blank line; ``meta`` carries ``path`` and ``lineno``."""
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            record = json.loads(line)
            if not isinstance(record, dict):
                raise ValueError(f"{p}:{lineno}: expected a JSON object, got {type(record).__name__}")
            yield {"path": str(p), "lineno": lineno}, record
