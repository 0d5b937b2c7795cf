"""Git operations against module checkouts."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from buildworker.models import PREVIOUS
from buildworker.process import CommandRunner


@dataclass(slots=True)
class GitAdapter:
    runner: CommandRunner
    binary: str = "git"

    def fetch(self, repo: Path, *, module: str | None = None) -> None:
        self._git(repo, "fetch", module=module)

    def checkout(self, repo: Path, version: str, *, module: str | None = None) -> None:
        # `git checkout -` returns to the ref that was checked out before.
        target = "-" if version == PREVIOUS else version
        self._git(repo, "checkout", "--quiet", target, module=module)

    def exact_tag(self, repo: Path) -> str:
        """Tag at HEAD, or an empty string when HEAD is not tagged."""
        result = self.runner.run(
            [self.binary, "-C", str(repo), "describe", "--exact-match", "HEAD"],
            operation="git",
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else ""

    def nearest_tag(self, repo: Path) -> str:
        return self._git(repo, "describe", "--abbrev=0", "--tags", "HEAD")

    def short_commit(self, repo: Path) -> str:
        return self._git(repo, "rev-parse", "--short", "HEAD")

    def short_stat(self, repo: Path) -> str:
        return self._git(repo, "diff-index", "--shortstat", "HEAD")

    def modified_files(self, repo: Path) -> tuple[str, ...]:
        output = self._git(repo, "diff-index", "--name-only", "HEAD")
        return tuple(line for line in output.splitlines() if line.strip())

    def _git(self, repo: Path, *args: str, module: str | None = None) -> str:
        result = self.runner.run(
            [self.binary, "-C", str(repo), *args],
            operation="git",
            module=module,
        )
        return result.stdout.strip()
