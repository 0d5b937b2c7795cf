"""Dependency resolution: materialize a module and its imports into a GOPATH."""

from __future__ import annotations

import os
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from buildworker.process import CommandRunner


class DependencyResolver(Protocol):
    def ensure(self, module: str, *, gopath: Sequence[Path], include_subpackages: bool = False) -> None:
        """Add whatever is missing for ``module``; never touch existing checkouts."""

    def update(self, module: str, *, gopath: Sequence[Path], include_subpackages: bool = False) -> None:
        """Move ``module`` and its dependencies to the latest upstream revision."""


def gopath_env(gopath: Sequence[Path]) -> dict[str, str]:
    # The first entry receives anything `go get` downloads.
    return {
        "GOPATH": os.pathsep.join(str(path) for path in gopath),
        "GO111MODULE": "off",
    }


@dataclass(slots=True)
class GoGetResolver:
    runner: CommandRunner
    tool: str = "go"

    def ensure(self, module: str, *, gopath: Sequence[Path], include_subpackages: bool = False) -> None:
        self._get(module, gopath=gopath, include_subpackages=include_subpackages, update=False)

    def update(self, module: str, *, gopath: Sequence[Path], include_subpackages: bool = False) -> None:
        self._get(module, gopath=gopath, include_subpackages=include_subpackages, update=True)

    def _get(
        self,
        module: str,
        *,
        gopath: Sequence[Path],
        include_subpackages: bool,
        update: bool,
    ) -> None:
        target = f"{module}/..." if include_subpackages else module
        argv = [self.tool, "get"]
        if update:
            argv.append("-u")
        argv.extend(["-d", "-t", "-x", target])
        self.runner.run(
            argv,
            env=gopath_env(gopath),
            operation="go get -u" if update else "go get",
            module=module,
        )
