from __future__ import annotations

from typing import Protocol

from pipeline_supervision.contracts import (
    ApplyPatchStep,
    ContextKind,
    ContextSnapshot,
    DecisionRecord,
    PatchProposal,
    PlantRequest,
    PlantResponse,
    Trace,
    ValidationReport,
)
from pipeline_supervision.safety import SafetyCheckOutcome


class Plant(Protocol):
    """External tool/platform that builds an app spec against a motor version."""

    async def run(self, request: PlantRequest) -> PlantResponse:
        """Execute a fresh or resumed build and return its result and signals."""
        ...

    async def apply_patch(
        self,
        *,
        trace: Trace,
        decision: DecisionRecord,
        step: ApplyPatchStep,
        base: ContextSnapshot,
    ) -> PatchProposal:
        """Return the full artifact set of the patched context, derived from ``base`` and targeted at ``step.target``."""
        ...

    async def validate(
        self,
        *,
        trace: Trace,
        target: ContextKind,
        snapshot: ContextSnapshot,
    ) -> ValidationReport:
        """Validate a staged (not yet stored) context version."""
        ...

    async def run_safety_check(self, name: str, proposal: PatchProposal) -> bool | SafetyCheckOutcome:
        """Evaluate a named safety check the operator does not implement itself."""
        ...
