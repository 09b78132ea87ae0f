from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pipeline_supervision.context_store import ContextStore
from pipeline_supervision.contracts import EventEnvelope

logger = logging.getLogger(__name__)

EnvelopeLike = EventEnvelope | Mapping[str, Any]


def validate_envelope(envelope: EnvelopeLike) -> EventEnvelope:
    """Validate one observer envelope; raises ``ValidationError`` on any schema violation."""
    return EventEnvelope.from_payload(envelope)


class EventIngest:
    """Validation and forwarding layer between observers and the context store."""

    def __init__(self, store: ContextStore) -> None:
        self._store = store

    def submit(self, envelope: EnvelopeLike) -> str:
        validated = validate_envelope(envelope)
        event_id = self._store.append_event(validated.trace_id, validated)
        logger.debug(
            "ingested %s %s/%s as %s",
            validated.scope.value,
            validated.signal_type.value,
            validated.severity.value,
            event_id,
        )
        return event_id

    def submit_many(self, envelopes: Iterable[EnvelopeLike]) -> list[str]:
        """
        Validate the whole batch and resolve its traces first; a malformed envelope or
        an unknown trace rejects the batch before any write.
        """
        validated = [validate_envelope(envelope) for envelope in envelopes]
        for trace_id in dict.fromkeys(envelope.trace_id for envelope in validated):
            self._store.get_trace(trace_id)
        return [self._store.append_event(envelope.trace_id, envelope) for envelope in validated]
