"""Shared package cache: one canonical checkout per module identifier."""

from __future__ import annotations

import secrets
import shutil
import tempfile
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from buildworker.errors import RollbackError
from buildworker.locking import LockRegistry, ReadWriteLock
from buildworker.models import validate_module_identifier

TEST_FIXTURE_DIRS = frozenset({"testdata"})
TEST_FILE_SUFFIX = "_test.go"


def deep_copy(
    src: Path,
    dest: Path,
    *,
    skip_hidden: bool = False,
    skip_test_fixtures: bool = False,
) -> None:
    """Copy the tree at ``src`` to ``dest``, keeping permission bits and symlinks."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(
        src,
        dest,
        symlinks=True,
        ignore=_ignore_filter(skip_hidden=skip_hidden, skip_test_fixtures=skip_test_fixtures),
        copy_function=shutil.copy2,
    )


def _ignore_filter(*, skip_hidden: bool, skip_test_fixtures: bool) -> Callable[[str, list[str]], set[str]] | None:
    if not skip_hidden and not skip_test_fixtures:
        return None

    def ignore(_directory: str, names: list[str]) -> set[str]:
        skipped = set()
        for name in names:
            if skip_hidden and name.startswith("."):
                skipped.add(name)
            elif skip_test_fixtures and (name in TEST_FIXTURE_DIRS or name.endswith(TEST_FILE_SUFFIX)):
                skipped.add(name)
        return skipped

    return ignore


@dataclass(frozen=True, slots=True)
class CacheSnapshot:
    path: Path
    created_at: str

    @property
    def tree(self) -> Path:
        return self.path / "cache"


@dataclass(slots=True)
class PackageCache:
    """The persistent GOPATH every workspace is provisioned from.

    Callers take the cache lock themselves: the provisioner needs to
    downgrade from write to read in the middle of its work, and deploys hold
    the write lock across backup and update.
    """

    root: Path
    registry: LockRegistry

    def __post_init__(self) -> None:
        self.root = Path(self.root)

    @property
    def identity(self) -> str:
        return str(self.root.resolve())

    @property
    def lock(self) -> ReadWriteLock:
        return self.registry.lock_for(self.identity)

    def shared(self) -> AbstractContextManager[None]:
        return self.registry.read(self.identity)

    def exclusive(self) -> AbstractContextManager[None]:
        return self.registry.write(self.identity)

    def path(self, module: str) -> Path:
        validate_module_identifier(module)
        return self.root / "src" / module

    def contains(self, module: str) -> bool:
        return self.path(module).is_dir()

    def snapshot(self, backup_root: Path | None = None) -> CacheSnapshot:
        """Copy the whole cache aside. Caller must hold the write lock."""
        if backup_root is not None:
            backup_root.mkdir(parents=True, exist_ok=True)
        backup_dir = Path(tempfile.mkdtemp(prefix="gopath_backup_", dir=backup_root))
        try:
            deep_copy(self.root, backup_dir / "cache")
        except BaseException:
            shutil.rmtree(backup_dir, ignore_errors=True)
            raise
        return CacheSnapshot(path=backup_dir, created_at=datetime.now(UTC).isoformat())

    def restore(self, snapshot: CacheSnapshot) -> None:
        """Replace the live cache with ``snapshot``. Caller must hold the write lock.

        The live tree is renamed aside first and only deleted once the copy
        back succeeded, so a failed restore never destroys both copies.
        """
        aside = self.root.with_name(f"{self.root.name}_tmp_{secrets.token_hex(4)}")
        context = {
            "operation": "restore",
            "cache": str(self.root),
            "backup": str(snapshot.tree),
            "set_aside": str(aside),
        }
        try:
            self.root.rename(aside)
        except OSError as exc:
            raise RollbackError(
                "Could not move the live cache aside.",
                hint="The live cache was not modified by the restore; the backup is kept.",
                context={**context, "error": str(exc)},
            ) from exc
        try:
            deep_copy(snapshot.tree, self.root)
        except OSError as exc:
            raise RollbackError(
                "Copying the backup into place failed.",
                hint="Recover manually from `set_aside` or `backup`; both are kept on disk.",
                context={**context, "error": str(exc)},
            ) from exc
        try:
            shutil.rmtree(aside)
        except OSError as exc:
            raise RollbackError(
                "Cache restored, but the set-aside copy could not be deleted.",
                hint="Delete `set_aside` by hand.",
                context={**context, "error": str(exc)},
            ) from exc

    def discard(self, snapshot: CacheSnapshot) -> None:
        shutil.rmtree(snapshot.path)
