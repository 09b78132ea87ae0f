"""
opobs distribution import namespace.

Re-exports the operator surface of the core `pipeline_supervision` package
for convenience imports.
"""

from importlib.metadata import PackageNotFoundError, version

# src/opobs/__init__.py
from pipeline_supervision.analytics import measure_motor_impact, record_motor_impact, trace_timeline
from pipeline_supervision.classifier import Classifier
from pipeline_supervision.context_store import ContextStore
from pipeline_supervision.contracts import DecisionRecord, EventEnvelope, TraceState
from pipeline_supervision.errors import (
    ConflictError,
    GateFailureError,
    IsolationViolationError,
    NotFoundError,
    PlantTimeoutError,
    SupervisionError,
    ValidationError,
)
from pipeline_supervision.ingest import EventIngest
from pipeline_supervision.orchestrator import Orchestrator, PlanOutcome
from pipeline_supervision.settings import OperatorSettings

try:
    __version__ = version("opobs")
except PackageNotFoundError:  # pragma: no cover - fallback for source checkouts
    __version__ = "0+unknown"

__all__ = [
    "Classifier",
    "ConflictError",
    "ContextStore",
    "DecisionRecord",
    "EventEnvelope",
    "EventIngest",
    "GateFailureError",
    "IsolationViolationError",
    "NotFoundError",
    "OperatorSettings",
    "Orchestrator",
    "PlanOutcome",
    "PlantTimeoutError",
    "SupervisionError",
    "TraceState",
    "ValidationError",
    "__version__",
    "measure_motor_impact",
    "record_motor_impact",
    "trace_timeline",
]
