from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from pipeline_supervision._compat import StrEnum
from pipeline_supervision.contracts import ContextKind, ContextVersion, PatchProposal
from pipeline_supervision.versions import SemVer


class SafetyCheckId(StrEnum):
    CONTEXT_ISOLATION = "context_isolation"
    SEMVER_BUMP = "semver_bump"


NAMESPACE_PREFIXES: dict[ContextKind, str] = {
    ContextKind.APP: "app:",
    ContextKind.MOTOR: "motor:",
}


def other_kind(kind: ContextKind) -> ContextKind:
    return ContextKind.APP if kind is ContextKind.MOTOR else ContextKind.MOTOR


@dataclass(frozen=True)
class SafetyCheckOutcome:
    check: str
    passed: bool
    code: str
    reason: str
    details: Mapping[str, Any] = field(default_factory=dict)


class CheckContext(Protocol):
    kind: ContextKind
    proposal: PatchProposal
    parent: Optional[ContextVersion]
    proposed_version: str
    foreign_artifact_ids: frozenset[str]


@dataclass(frozen=True)
class SafetyCheckContext:
    kind: ContextKind
    proposal: PatchProposal
    parent: Optional[ContextVersion]
    proposed_version: str
    foreign_artifact_ids: frozenset[str] = frozenset()


Checker = Callable[[CheckContext], SafetyCheckOutcome]
Delegate = Callable[[str, PatchProposal], Awaitable[bool | SafetyCheckOutcome]]


def _ok(check: str, code: str, details: Optional[Mapping[str, Any]] = None) -> SafetyCheckOutcome:
    detail_map = dict(details or {})
    return SafetyCheckOutcome(
        check=check,
        passed=True,
        reason=str(detail_map.get("message") or code),
        code=code,
        details=detail_map,
    )


def isolation_violations(
    kind: ContextKind,
    artifact_ids: Iterable[str],
    foreign_artifact_ids: Iterable[str] = (),
) -> list[str]:
    """Artifact ids that belong to the other namespace, by prefix or by prior ownership."""
    foreign_prefix = NAMESPACE_PREFIXES[other_kind(kind)]
    owned_elsewhere = set(foreign_artifact_ids)
    return sorted(
        artifact_id
        for artifact_id in set(artifact_ids)
        if artifact_id.startswith(foreign_prefix) or artifact_id in owned_elsewhere
    )


def check_context_isolation(ctx: CheckContext) -> SafetyCheckOutcome:
    offending = isolation_violations(ctx.kind, ctx.proposal.artifacts, ctx.foreign_artifact_ids)
    if offending:
        return SafetyCheckOutcome(
            check=SafetyCheckId.CONTEXT_ISOLATION.value,
            passed=False,
            code="foreign_artifact_ids",
            reason=f"{ctx.kind.value} patch references artifacts owned by the {other_kind(ctx.kind).value} namespace.",
            details={"artifact_ids": offending},
        )
    return _ok(SafetyCheckId.CONTEXT_ISOLATION.value, "namespace_isolated")


def check_semver_bump(ctx: CheckContext) -> SafetyCheckOutcome:
    if ctx.parent is None:
        return _ok(SafetyCheckId.SEMVER_BUMP.value, "initial_version")

    try:
        proposed = SemVer.parse(ctx.proposed_version)
    except ValueError:
        return SafetyCheckOutcome(
            check=SafetyCheckId.SEMVER_BUMP.value,
            passed=False,
            code="invalid_version",
            reason="Proposed version is not a semantic version.",
            details={"proposed_version": ctx.proposed_version},
        )

    if proposed <= ctx.parent.semver:
        return SafetyCheckOutcome(
            check=SafetyCheckId.SEMVER_BUMP.value,
            passed=False,
            code="version_not_bumped",
            reason="Proposed version must be strictly greater than its parent.",
            details={"parent_version": ctx.parent.version, "proposed_version": str(proposed)},
        )
    return _ok(
        SafetyCheckId.SEMVER_BUMP.value,
        "version_bumped",
        {"parent_version": ctx.parent.version, "proposed_version": str(proposed)},
    )


REGISTRY: dict[str, Checker] = {
    SafetyCheckId.CONTEXT_ISOLATION.value: check_context_isolation,
    SafetyCheckId.SEMVER_BUMP.value: check_semver_bump,
}


def normalize_outcome(check: str, raw: bool | SafetyCheckOutcome) -> SafetyCheckOutcome:
    if isinstance(raw, SafetyCheckOutcome):
        return raw
    if raw:
        return _ok(check, "delegated_check_passed")
    return SafetyCheckOutcome(
        check=check,
        passed=False,
        code="delegated_check_failed",
        reason=f"Safety check {check} reported failure.",
    )


@dataclass(frozen=True)
class GateResult:
    outcomes: tuple[SafetyCheckOutcome, ...] = ()

    @property
    def passed(self) -> bool:
        return all(outcome.passed for outcome in self.outcomes)

    @property
    def failed_checks(self) -> tuple[str, ...]:
        return tuple(outcome.check for outcome in self.outcomes if not outcome.passed)

    def as_results(self) -> dict[str, bool]:
        return {outcome.check: outcome.passed for outcome in self.outcomes}


async def evaluate_gate(
    check_names: Iterable[str],
    ctx: CheckContext,
    *,
    delegate: Delegate,
    registry: Mapping[str, Checker] = REGISTRY,
) -> GateResult:
    """
    Run every named check in order. Names missing from ``registry`` go to ``delegate``
    (the Plant's safety-check surface). Every check runs, including after a failure.
    """
    outcomes: list[SafetyCheckOutcome] = []
    for name in dict.fromkeys(check_names):
        checker = registry.get(name)
        if checker is not None:
            outcomes.append(checker(ctx))
            continue
        outcomes.append(normalize_outcome(name, await delegate(name, ctx.proposal)))
    return GateResult(outcomes=tuple(outcomes))
