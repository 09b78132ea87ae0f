from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pipeline_supervision.contracts import validate_contract
from pipeline_supervision.versions import VersionBump

ENV_PREFIX = "OPOBS_"

DEFAULT_MOTOR_SAFETY_CHECKS = ("context_isolation", "semver_bump", "validators:strict")
DEFAULT_APP_SAFETY_CHECKS = ("context_isolation",)


class OperatorSettings(BaseModel):
    """Tunables for classification budgets, retry caps and Plant timeouts."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_validation_retries: int = Field(default=2, ge=0)
    max_gate_retries: int = Field(default=2, ge=0)

    patch_timeout_s: float = Field(default=300.0, gt=0)
    validate_timeout_s: float = Field(default=300.0, gt=0)
    run_timeout_s: float = Field(default=900.0, gt=0)

    latency_budget_ms: float = Field(default=30_000.0, gt=0)
    cost_budget: float = Field(default=5.0, gt=0)
    quality_regression_tolerance: float = Field(default=0.05, ge=0, le=1)

    motor_version_bump: VersionBump = VersionBump.MINOR
    app_version_bump: VersionBump = VersionBump.PATCH

    motor_safety_checks: tuple[str, ...] = DEFAULT_MOTOR_SAFETY_CHECKS
    app_safety_checks: tuple[str, ...] = DEFAULT_APP_SAFETY_CHECKS

    @field_validator("motor_safety_checks", "app_safety_checks", mode="before")
    @classmethod
    def _split_check_names(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(name.strip() for name in value.split(",") if name.strip())
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, *, prefix: str = ENV_PREFIX) -> OperatorSettings:
        """
        Read overrides from ``<prefix><FIELD_NAME>`` variables, e.g. ``OPOBS_MAX_GATE_RETRIES=3``.
        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        raw: dict[str, Any] = {}
        for name in cls.model_fields:
            key = f"{prefix}{name.upper()}"
            if key in env:
                raw[name] = env[key]
        return validate_contract(cls, raw, what="operator settings")
