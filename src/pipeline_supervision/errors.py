# pipeline_supervision/errors.py
from __future__ import annotations

from collections.abc import Sequence


class SupervisionError(Exception):
    """Base class for every error raised by the supervision core."""


class ValidationError(SupervisionError, ValueError):
    """Malformed envelope, decision record or journal row. Rejected, never retried."""


class NotFoundError(SupervisionError, KeyError):
    """Unknown context, trace, decision or checkpoint reference."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable.
        return str(self.args[0]) if self.args else ""


class ConflictError(SupervisionError):
    """A concurrent write already advanced the same parent, or an id was reused."""


class IsolationViolationError(SupervisionError):
    """App and motor artifacts were mixed in one namespace."""


class TransitionError(SupervisionError):
    """A state-machine transition that the lifecycle does not allow."""


class GateFailureError(SupervisionError):
    """A motor patch failed its safety gate or could not be committed."""

    def __init__(self, message: str, *, failed_checks: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.failed_checks = tuple(failed_checks)


class PlantTimeoutError(SupervisionError, TimeoutError):
    """A Plant call exceeded its timeout budget."""

    def __init__(self, *, operation: str, target: str, budget_s: float) -> None:
        super().__init__(f"plant {operation} on {target} exceeded {budget_s:g}s budget")
        self.operation = operation
        self.target = target
        self.budget_s = budget_s
