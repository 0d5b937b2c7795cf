"""Shared test fixtures.

Module sources are real git repositories under an ``upstream`` directory.
The fake resolver materializes them into a GOPATH with ``git clone`` the way
``go get -d`` would, and the fake toolchain records what it was asked to do
instead of running ``go``.
"""

from __future__ import annotations

import json
import subprocess
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from buildworker.errors import CommandError
from buildworker.locking import LockRegistry
from buildworker.models import Platform
from buildworker.process import CommandRunner
from buildworker.service import BuildService
from buildworker.settings import HOST_MODULE, Settings

PLUGIN_MODULE = "github.com/example/plugin"
OTHER_PLUGIN_MODULE = "github.com/example/other"

RUN_GO = """package caddymain

import (
\t"fmt"
\t"os"

\t"github.com/mholt/caddy"
)

func Run() {
\tfmt.Fprintln(os.Stderr, caddy.AppName)
}
"""

DIST_LIST = [
    {"GOOS": "linux", "GOARCH": "amd64", "CgoSupported": True},
    {"GOOS": "linux", "GOARCH": "arm", "CgoSupported": True},
    {"GOOS": "darwin", "GOARCH": "amd64", "CgoSupported": True},
    {"GOOS": "darwin", "GOARCH": "arm", "CgoSupported": True},
    {"GOOS": "windows", "GOARCH": "amd64", "CgoSupported": True},
    {"GOOS": "plan9", "GOARCH": "386", "CgoSupported": False},
]


def run_git(argv: list[str], *, cwd: Path) -> str:
    completed = subprocess.run(
        ["git", *argv],
        cwd=cwd,
        check=False,
        text=True,
        capture_output=True,
    )
    if completed.returncode != 0:
        raise RuntimeError(f"git {' '.join(argv)} failed: {completed.stderr.strip()}")
    return completed.stdout.strip()


@dataclass(slots=True)
class Upstream:
    """Directory of bare-bones upstream repositories keyed by module identifier."""

    root: Path

    def repo(self, module: str) -> Path:
        return self.root / module

    def create(self, module: str, files: dict[str, str]) -> str:
        path = self.repo(module)
        path.mkdir(parents=True)
        run_git(["init"], cwd=path)
        run_git(["checkout", "-b", "main"], cwd=path)
        run_git(["config", "user.email", "buildworker@example.com"], cwd=path)
        run_git(["config", "user.name", "Buildworker Test"], cwd=path)
        return self.commit(module, files, "initial")

    def commit(self, module: str, files: dict[str, str], message: str) -> str:
        path = self.repo(module)
        for name, content in files.items():
            target = path / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        run_git(["add", "--all"], cwd=path)
        run_git(["commit", "-m", message], cwd=path)
        return run_git(["rev-parse", "HEAD"], cwd=path)

    def tag(self, module: str, name: str) -> None:
        run_git(["tag", "-a", name, "-m", name], cwd=self.repo(module))


@dataclass(slots=True)
class CloningResolver:
    """Resolver that clones from :class:`Upstream` instead of running ``go get``."""

    runner: CommandRunner
    upstream: Upstream
    failing_updates: set[str] = field(default_factory=set)
    calls: list[tuple[str, str, tuple[Path, ...]]] = field(default_factory=list)

    def ensure(self, module: str, *, gopath: Sequence[Path], include_subpackages: bool = False) -> None:
        self.calls.append(("ensure", module, tuple(gopath)))
        if any((entry / "src" / module).is_dir() for entry in gopath):
            return
        self._clone(module, gopath[0])

    def update(self, module: str, *, gopath: Sequence[Path], include_subpackages: bool = False) -> None:
        self.calls.append(("update", module, tuple(gopath)))
        if module in self.failing_updates:
            raise CommandError("Command failed.", context={"operation": "go get -u", "module": module})
        checkout = gopath[0] / "src" / module
        if not checkout.is_dir():
            self._clone(module, gopath[0])
            return
        self.runner.run(["git", "-C", str(checkout), "fetch", "--quiet", "origin"], operation="go get -u", module=module)
        self.runner.run(
            ["git", "-C", str(checkout), "merge", "--quiet", "--ff-only", "origin/main"],
            operation="go get -u",
            module=module,
        )

    def _clone(self, module: str, gopath_entry: Path) -> None:
        destination = gopath_entry / "src" / module
        destination.parent.mkdir(parents=True, exist_ok=True)
        self.runner.run(
            ["git", "clone", "--quiet", str(self.upstream.repo(module)), str(destination)],
            operation="go get",
            module=module,
        )


@dataclass(slots=True)
class RecordingToolchain:
    """Stands in for ``go``; failures are configured per operation."""

    dist: list[dict[str, object]] = field(default_factory=lambda: list(DIST_LIST))
    failing_vet: set[str] = field(default_factory=set)
    failing_tests: set[str] = field(default_factory=set)
    failing_compiles: set[str] = field(default_factory=set)
    # Host tests fail while the entry file imports this module.
    host_rejects: str | None = None
    calls: list[tuple[str, str]] = field(default_factory=list)
    entry_snapshots: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _record(self, operation: str, subject: str) -> None:
        with self._lock:
            self.calls.append((operation, subject))

    def vet(self, directory: Path, *, gopath: Sequence[Path], module: str | None = None) -> None:
        self._record("vet", module or str(directory))
        if module in self.failing_vet:
            raise CommandError("Command failed.", context={"operation": "go vet", "stderr": "vet: bad printf"})

    def test(self, directory: Path, *, gopath: Sequence[Path], module: str | None = None) -> None:
        self._record("test", module or str(directory))
        entry = directory / "caddy" / "caddymain" / "run.go"
        if module == HOST_MODULE and entry.exists():
            source = entry.read_text(encoding="utf-8")
            self.entry_snapshots.append(source)
            if self.host_rejects and f'"{self.host_rejects}"' in source:
                raise CommandError("Command failed.", context={"operation": "go test", "stderr": "FAIL caddy"})
        if module in self.failing_tests:
            raise CommandError("Command failed.", context={"operation": "go test", "stderr": "--- FAIL: TestThing"})

    def compile(self, module: str, *, gopath: Sequence[Path], platform: Platform) -> None:
        self._record("compile", f"{module} {platform}")
        if str(platform) in self.failing_compiles:
            raise CommandError("Command failed.", context={"operation": "go build", "stderr": "undefined: syscall"})

    def build_binary(
        self,
        directory: Path,
        *,
        gopath: Sequence[Path],
        platform: Platform,
        output: Path,
        ldflags: str,
    ) -> None:
        self._record("build", str(platform))
        output.write_text(f"binary for {platform}\n{ldflags}\n", encoding="utf-8")

    def dist_list(self) -> str:
        return json.dumps(self.dist)


@pytest.fixture
def upstream(tmp_path: Path) -> Upstream:
    repos = Upstream(tmp_path / "upstream")
    repos.create(
        HOST_MODULE,
        {
            "caddy.go": 'package caddy\n\nconst AppName = "Caddy"\n',
            "caddy/main.go": 'package main\n\nimport "github.com/mholt/caddy/caddy/caddymain"\n\nfunc main() { caddymain.Run() }\n',
            "caddy/caddymain/run.go": RUN_GO,
            "dist/README.txt": "readme\n",
            "dist/LICENSES.txt": "licenses\n",
            "dist/CHANGES.txt": "changes\n",
            "dist/init/README.md": "init scripts\n",
        },
    )
    repos.tag(HOST_MODULE, "v1.2.3")
    repos.create(PLUGIN_MODULE, {"plugin.go": "package plugin\n", "plugin_test.go": "package plugin\n"})
    repos.tag(PLUGIN_MODULE, "v0.1.0")
    repos.create(OTHER_PLUGIN_MODULE, {"other.go": "package other\n"})
    return repos


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        cache_root=tmp_path / "gopath",
        workspace_root=tmp_path / "work",
        backup_root=tmp_path / "backups",
        passthrough_env=("PATH", "HOME"),
        command_timeout=60.0,
    )


@pytest.fixture
def registry() -> LockRegistry:
    return LockRegistry()


@pytest.fixture
def toolchain() -> RecordingToolchain:
    return RecordingToolchain()


@pytest.fixture
def resolvers() -> list[CloningResolver]:
    """Every resolver handed out by the service, in creation order."""
    return []


@pytest.fixture
def failing_updates() -> set[str]:
    return set()


@pytest.fixture
def service(
    settings: Settings,
    registry: LockRegistry,
    upstream: Upstream,
    toolchain: RecordingToolchain,
    resolvers: list[CloningResolver],
    failing_updates: set[str],
) -> BuildService:
    def make_resolver(runner: CommandRunner) -> CloningResolver:
        resolver = CloningResolver(runner, upstream, failing_updates=failing_updates)
        resolvers.append(resolver)
        return resolver

    return BuildService(
        settings,
        registry=registry,
        resolver_factory=make_resolver,
        toolchain_factory=lambda _runner: toolchain,
    )


def tree_digest(root: Path) -> dict[str, bytes]:
    """Relative path -> content for every regular file under ``root``."""
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file() and not path.is_symlink()
    }
