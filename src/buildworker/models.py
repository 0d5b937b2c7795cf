"""Core typed dataclasses shared by build and deploy requests."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any

from buildworker.errors import RequestError

# Checks out the ref that was current before this session instead of a named
# revision, so a fresh upstream fetch can take over.
PREVIOUS = "previous"

# Check pipeline step names, usable as rollback triggers.
STATIC_ANALYSIS = "static_analysis"
TEST_SUITE = "test_suite"
HOST_COMPATIBILITY = "host_compatibility"
CROSS_PLATFORM_COMPILE = "cross_platform_compile"

MODULE_STEPS = (STATIC_ANALYSIS, TEST_SUITE, HOST_COMPATIBILITY, CROSS_PLATFORM_COMPILE)
HOST_STEPS = (STATIC_ANALYSIS, TEST_SUITE, CROSS_PLATFORM_COMPILE)


@dataclass(frozen=True, slots=True)
class ModuleRef:
    identifier: str
    version: str

    def __str__(self) -> str:
        return f"{self.identifier}@{self.version}"


@dataclass(frozen=True, slots=True)
class Platform:
    """A build target. Values are what GOOS, GOARCH and GOARM are set to."""

    os: str
    arch: str
    arm: str = ""
    cgo: bool = False

    def __str__(self) -> str:
        return f"{self.os}/{self.arch}{self.arm}"

    def to_dict(self) -> dict[str, object]:
        # Key names match the output of `go tool dist list -json`.
        return {"GOOS": self.os, "GOARCH": self.arch, "GOARM": self.arm, "CgoSupported": self.cgo}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Platform:
        return cls(
            os=str(payload.get("GOOS", "")),
            arch=str(payload.get("GOARCH", "")),
            arm=str(payload.get("GOARM", "") or ""),
            cgo=bool(payload.get("CgoSupported", False)),
        )


@dataclass(frozen=True, slots=True)
class PlatformFilter:
    """Exclusion rule; empty fields are wildcards."""

    os: str = ""
    arch: str = ""
    arm: str = ""

    def matches(self, platform: Platform) -> bool:
        return (
            (not self.os or self.os == platform.os)
            and (not self.arch or self.arch == platform.arch)
            and (not self.arm or self.arm == platform.arm)
        )


def validate_module_identifier(identifier: str) -> str:
    """Reject identifiers that would escape the cache or workspace tree."""
    if not identifier or not identifier.strip():
        raise RequestError("Module identifier must be non-empty.")
    path = PurePosixPath(identifier)
    if path.is_absolute() or "\\" in identifier or any(part in ("", ".", "..") for part in identifier.split("/")):
        raise RequestError(
            "Module identifier is not a safe relative path.",
            hint="Use an import path such as `github.com/user/repo`.",
            context={"module": identifier},
        )
    return identifier


def module_map(host_module: str, host_version: str, modules: tuple[ModuleRef, ...] | list[ModuleRef]) -> dict[str, str]:
    """Build the identifier -> version mapping for one environment.

    The host module is always present; every identifier appears at most once.
    """
    mapping: dict[str, str] = {}
    for ref in modules:
        validate_module_identifier(ref.identifier)
        if not ref.version:
            raise RequestError("Module version must be non-empty.", context={"module": ref.identifier})
        if ref.identifier in mapping:
            raise RequestError(
                "Module requested more than once.",
                hint="Request each module at exactly one version.",
                context={"module": ref.identifier},
            )
        if ref.identifier == host_module:
            raise RequestError(
                "The host module is selected with the host version, not as an extension.",
                context={"module": ref.identifier},
            )
        mapping[ref.identifier] = ref.version
    mapping[host_module] = host_version
    return mapping
