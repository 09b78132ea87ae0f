from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from pipeline_supervision.errors import ValidationError
from pipeline_supervision.settings import (
    DEFAULT_APP_SAFETY_CHECKS,
    DEFAULT_MOTOR_SAFETY_CHECKS,
    OperatorSettings,
)
from pipeline_supervision.versions import VersionBump


def test_defaults() -> None:
    settings = OperatorSettings()

    assert settings.max_gate_retries == 2
    assert settings.max_validation_retries == 2
    assert settings.motor_version_bump is VersionBump.MINOR
    assert settings.app_version_bump is VersionBump.PATCH
    assert settings.motor_safety_checks == DEFAULT_MOTOR_SAFETY_CHECKS
    assert settings.app_safety_checks == DEFAULT_APP_SAFETY_CHECKS


def test_from_env_reads_prefixed_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPOBS_MAX_GATE_RETRIES", "5")
    monkeypatch.setenv("OPOBS_LATENCY_BUDGET_MS", "1500.5")
    monkeypatch.setenv("OPOBS_MOTOR_VERSION_BUMP", "major")
    monkeypatch.setenv("OPOBS_MOTOR_SAFETY_CHECKS", "semver_bump, validators:strict,,")
    monkeypatch.setenv("OTHER_MAX_GATE_RETRIES", "9")

    settings = OperatorSettings.from_env()

    assert settings.max_gate_retries == 5
    assert settings.latency_budget_ms == 1500.5
    assert settings.motor_version_bump is VersionBump.MAJOR
    assert settings.motor_safety_checks == ("semver_bump", "validators:strict")
    assert settings.max_validation_retries == 2


def test_from_env_accepts_explicit_mapping_and_prefix() -> None:
    settings = OperatorSettings.from_env({"SUP_RUN_TIMEOUT_S": "12", "OPOBS_RUN_TIMEOUT_S": "99"}, prefix="SUP_")

    assert settings.run_timeout_s == 12.0


@pytest.mark.parametrize(
    "environ",
    [
        {"OPOBS_MAX_GATE_RETRIES": "-1"},
        {"OPOBS_PATCH_TIMEOUT_S": "0"},
        {"OPOBS_QUALITY_REGRESSION_TOLERANCE": "1.5"},
        {"OPOBS_APP_VERSION_BUMP": "sideways"},
    ],
)
def test_invalid_overrides_raise_domain_validation_error(environ: dict[str, str]) -> None:
    with pytest.raises(ValidationError):
        OperatorSettings.from_env(environ)


def test_settings_are_frozen() -> None:
    settings = OperatorSettings()

    with pytest.raises(PydanticValidationError):
        settings.max_gate_retries = 10  # type: ignore[misc]
