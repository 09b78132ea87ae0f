from __future__ import annotations

import re
from dataclasses import dataclass

from pipeline_supervision._compat import StrEnum

_SEMVER_PATTERN = re.compile(r"^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)$")

INITIAL_VERSION = "1.0.0"


class VersionBump(StrEnum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"


@dataclass(frozen=True, order=True)
class SemVer:
    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, raw: str) -> SemVer:
        match = _SEMVER_PATTERN.match((raw or "").strip())
        if match is None:
            raise ValueError(f"not a semantic version: {raw!r}")
        major, minor, patch = (int(part) for part in match.groups())
        return cls(major, minor, patch)

    def bump(self, kind: VersionBump | str) -> SemVer:
        kind = VersionBump(kind)
        if kind is VersionBump.MAJOR:
            return SemVer(self.major + 1, 0, 0)
        if kind is VersionBump.MINOR:
            return SemVer(self.major, self.minor + 1, 0)
        return SemVer(self.major, self.minor, self.patch + 1)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def split_context_ref(ref: str) -> tuple[str, SemVer]:
    """Split ``"<context_id>@<version>"`` into its id and parsed version."""
    context_id, sep, version = (ref or "").rpartition("@")
    if not sep or not context_id:
        raise ValueError(f"context ref must look like '<id>@<version>': {ref!r}")
    return context_id, SemVer.parse(version)


def format_context_ref(context_id: str, version: SemVer | str) -> str:
    return f"{context_id}@{version}"


def normalize_context_ref(ref: str) -> str:
    context_id, version = split_context_ref(ref)
    return format_context_ref(context_id, version)
