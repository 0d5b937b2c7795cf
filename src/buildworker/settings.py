"""Worker configuration."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

from buildworker.errors import ConfigurationError
from buildworker.models import HOST_STEPS, MODULE_STEPS, PlatformFilter

HOST_MODULE = "github.com/mholt/caddy"

# Platforms we do not build for at this time.
UNSUPPORTED_PLATFORMS: tuple[PlatformFilter, ...] = (
    PlatformFilter(os="android"),  # linker errors
    PlatformFilter(os="darwin", arch="arm"),  # runtime.read_tls_fallback not defined
    PlatformFilter(os="darwin", arch="arm64"),  # linker errors
    PlatformFilter(os="linux", arch="s390x"),  # undefined: newCipher in a dependency
    PlatformFilter(os="nacl"),  # syscall-related compile errors
    PlatformFilter(os="plan9"),  # syscall-related compile errors
)


@dataclass(frozen=True, slots=True)
class Settings:
    cache_root: Path
    host_module: str = HOST_MODULE
    default_host_version: str = "master"
    entry_file: str = "caddy/caddymain/run.go"
    main_package: str = "caddy"
    version_package: str = "github.com/mholt/caddy/caddy/caddymain"
    binary_name: str = "caddy"
    dist_dir: str = "dist"
    dist_assets: tuple[str, ...] = ("README.txt", "LICENSES.txt", "CHANGES.txt", "init")
    workspace_root: Path | None = None
    backup_root: Path | None = None
    command_timeout: float = 900.0
    parallel_build_ops: int = 4
    compile_workers: int = 1
    fail_fast: bool = True
    rollback_triggers: frozenset[str] = frozenset({"host_compatibility"})
    host_rollback_triggers: frozenset[str] = frozenset({"test_suite"})
    skip_hidden: bool = False
    skip_test_fixtures: bool = False
    race_detector: bool = True
    exclusions: tuple[PlatformFilter, ...] = UNSUPPORTED_PLATFORMS
    passthrough_env: tuple[str, ...] = ("PATH", "TMPDIR", "HOME", "GOCACHE", "GOROOT")
    go_binary: str = "go"
    git_binary: str = "git"

    def with_overrides(self, **changes: object) -> Settings:
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        gopath = env.get("GOPATH", "")
        if not gopath:
            raise ConfigurationError(
                "GOPATH is not set.",
                hint="Point GOPATH at the shared package cache directory.",
                context={"operation": "settings"},
            )
        # Only the first GOPATH entry is the package cache.
        cache_root = Path(gopath.split(os.pathsep)[0])

        settings = cls(cache_root=cache_root)
        changes: dict[str, object] = {}
        if value := env.get("BUILDWORKER_HOST_MODULE"):
            changes["host_module"] = value
        if value := env.get("BUILDWORKER_WORKSPACE_ROOT"):
            changes["workspace_root"] = Path(value)
        if value := env.get("BUILDWORKER_BACKUP_ROOT"):
            changes["backup_root"] = Path(value)
        if value := env.get("BUILDWORKER_COMMAND_TIMEOUT"):
            changes["command_timeout"] = _parse_float("BUILDWORKER_COMMAND_TIMEOUT", value)
        if value := env.get("BUILDWORKER_PARALLEL_BUILD_OPS"):
            changes["parallel_build_ops"] = _parse_int("BUILDWORKER_PARALLEL_BUILD_OPS", value)
        if value := env.get("BUILDWORKER_COMPILE_WORKERS"):
            changes["compile_workers"] = _parse_int("BUILDWORKER_COMPILE_WORKERS", value)
        if value := env.get("BUILDWORKER_FAIL_FAST"):
            changes["fail_fast"] = _parse_bool("BUILDWORKER_FAIL_FAST", value)
        if value := env.get("BUILDWORKER_ROLLBACK_TRIGGERS"):
            changes["rollback_triggers"] = _parse_steps("BUILDWORKER_ROLLBACK_TRIGGERS", value, MODULE_STEPS)
        if value := env.get("BUILDWORKER_HOST_ROLLBACK_TRIGGERS"):
            changes["host_rollback_triggers"] = _parse_steps("BUILDWORKER_HOST_ROLLBACK_TRIGGERS", value, HOST_STEPS)
        if value := env.get("BUILDWORKER_SKIP_TEST_FIXTURES"):
            changes["skip_test_fixtures"] = _parse_bool("BUILDWORKER_SKIP_TEST_FIXTURES", value)
        return settings.with_overrides(**changes) if changes else settings


def _parse_int(name: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer.", context={"value": raw}) from exc
    if value < 1:
        raise ConfigurationError(f"{name} must be at least 1.", context={"value": raw})
    return value


def _parse_float(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number of seconds.", context={"value": raw}) from exc
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive.", context={"value": raw})
    return value


def _parse_bool(name: str, raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be a boolean.", context={"value": raw})


def _parse_steps(name: str, raw: str, known: tuple[str, ...]) -> frozenset[str]:
    steps = frozenset(step.strip() for step in raw.split(",") if step.strip())
    unknown = sorted(steps - set(known))
    if unknown:
        raise ConfigurationError(
            f"{name} names unknown check steps: {', '.join(unknown)}.",
            hint=f"Valid steps: {', '.join(known)}.",
            context={"value": raw},
        )
    return steps
