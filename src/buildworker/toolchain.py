"""Go toolchain invocations: vet, test, compile and the platform matrix."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from buildworker.models import Platform
from buildworker.process import CommandRunner
from buildworker.resolver import gopath_env

# Cross-compiling for darwin without cgo has historically produced broken
# binaries, so it is the one OS that links dynamically.
DYNAMIC_LINK_OSES = frozenset({"darwin"})


def cgo_enabled(platform: Platform) -> bool:
    return platform.os in DYNAMIC_LINK_OSES


def platform_env(platform: Platform) -> dict[str, str]:
    return {
        "CGO_ENABLED": "1" if cgo_enabled(platform) else "0",
        "GOOS": platform.os,
        "GOARCH": platform.arch,
        "GOARM": platform.arm,
    }


class Toolchain(Protocol):
    def vet(self, directory: Path, *, gopath: Sequence[Path], module: str | None = None) -> None:
        """Static analysis of every package under ``directory``."""

    def test(self, directory: Path, *, gopath: Sequence[Path], module: str | None = None) -> None:
        """Run the test suite of every package under ``directory``."""

    def compile(self, module: str, *, gopath: Sequence[Path], platform: Platform) -> None:
        """Compile ``module`` and its subpackages for ``platform`` without producing a binary."""

    def build_binary(
        self,
        directory: Path,
        *,
        gopath: Sequence[Path],
        platform: Platform,
        output: Path,
        ldflags: str,
    ) -> None:
        """Compile and link the main package in ``directory`` to ``output``."""

    def dist_list(self) -> str:
        """Raw JSON platform matrix reported by the toolchain."""


@dataclass(slots=True)
class GoToolchain:
    runner: CommandRunner
    tool: str = "go"
    race: bool = True
    parallel_build_ops: int = 4

    def vet(self, directory: Path, *, gopath: Sequence[Path], module: str | None = None) -> None:
        # Run from inside the workspace copy with ./... so go does not pick
        # the package up from the cache entry of GOPATH instead.
        self.runner.run(
            [self.tool, "vet", "./..."],
            cwd=directory,
            env=gopath_env(gopath),
            operation="go vet",
            module=module,
        )

    def test(self, directory: Path, *, gopath: Sequence[Path], module: str | None = None) -> None:
        argv = [self.tool, "test"]
        if self.race:
            argv.append("-race")
        argv.append("./...")
        self.runner.run(
            argv,
            cwd=directory,
            env=gopath_env(gopath),
            operation="go test",
            module=module,
        )

    def compile(self, module: str, *, gopath: Sequence[Path], platform: Platform) -> None:
        self.runner.run(
            [self.tool, "build", "-p", str(self.parallel_build_ops), f"{module}/..."],
            env={**gopath_env(gopath), **platform_env(platform)},
            operation="go build",
            module=module,
            platform=str(platform),
        )

    def build_binary(
        self,
        directory: Path,
        *,
        gopath: Sequence[Path],
        platform: Platform,
        output: Path,
        ldflags: str,
    ) -> None:
        self.runner.run(
            [self.tool, "build", "-ldflags", ldflags, "-o", str(output)],
            cwd=directory,
            env={**gopath_env(gopath), **platform_env(platform)},
            operation="go build",
            platform=str(platform),
        )

    def dist_list(self) -> str:
        result = self.runner.run([self.tool, "tool", "dist", "list", "-json"], operation="go tool dist list")
        return result.stdout
