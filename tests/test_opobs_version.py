from __future__ import annotations

import importlib.metadata
import importlib.util
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
MODULE_PATH = ROOT / "src" / "opobs" / "__init__.py"


def test_opobs_version_falls_back_when_distribution_is_not_installed(monkeypatch) -> None:
    spec = importlib.util.spec_from_file_location("opobs_init_under_test", MODULE_PATH)
    assert spec and spec.loader

    module = importlib.util.module_from_spec(spec)

    def _raise_not_found(_: str) -> str:
        raise importlib.metadata.PackageNotFoundError

    monkeypatch.setattr(importlib.metadata, "version", _raise_not_found)

    spec.loader.exec_module(module)

    assert module.__version__ == "0+unknown"
    assert module.Orchestrator.__module__ == "pipeline_supervision.orchestrator"
    assert "trace_timeline" in module.__all__
