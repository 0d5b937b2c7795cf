import os
from pathlib import Path

import pytest
from conftest import tree_digest

from buildworker.cache import PackageCache, deep_copy
from buildworker.errors import RequestError, RollbackError
from buildworker.locking import LockRegistry


def _populate(root: Path) -> None:
    module = root / "src" / "github.com" / "a" / "b"
    (module / "testdata").mkdir(parents=True)
    (module / ".git").mkdir()
    (module / "b.go").write_text("package b\n", encoding="utf-8")
    (module / "b_test.go").write_text("package b\n", encoding="utf-8")
    (module / "testdata" / "fixture.txt").write_text("x\n", encoding="utf-8")
    (module / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
    script = module / "gen.sh"
    script.write_text("#!/bin/sh\n", encoding="utf-8")
    script.chmod(0o755)
    os.symlink("b.go", module / "alias.go")


def test_deep_copy_keeps_modes_and_symlinks(tmp_path: Path) -> None:
    _populate(tmp_path / "src_tree")
    deep_copy(tmp_path / "src_tree", tmp_path / "copy")

    module = tmp_path / "copy" / "src" / "github.com" / "a" / "b"
    assert os.access(module / "gen.sh", os.X_OK)
    assert (module / "alias.go").is_symlink()
    assert os.readlink(module / "alias.go") == "b.go"
    assert (module / ".git" / "HEAD").exists()


def test_deep_copy_filters(tmp_path: Path) -> None:
    _populate(tmp_path / "src_tree")
    deep_copy(tmp_path / "src_tree", tmp_path / "copy", skip_hidden=True, skip_test_fixtures=True)

    module = tmp_path / "copy" / "src" / "github.com" / "a" / "b"
    assert sorted(p.name for p in module.iterdir()) == ["alias.go", "b.go", "gen.sh"]


def test_cache_path_validates_identifier(tmp_path: Path) -> None:
    cache = PackageCache(tmp_path / "gopath", LockRegistry())
    assert cache.path("github.com/a/b") == tmp_path / "gopath" / "src" / "github.com" / "a" / "b"
    with pytest.raises(RequestError):
        cache.path("../outside")


def test_caches_at_the_same_path_share_a_lock(tmp_path: Path) -> None:
    registry = LockRegistry()
    (tmp_path / "gopath").mkdir()
    first = PackageCache(tmp_path / "gopath", registry)
    second = PackageCache(tmp_path / "." / "gopath", registry)
    assert first.lock is second.lock


def test_snapshot_and_restore(tmp_path: Path) -> None:
    cache = PackageCache(tmp_path / "gopath", LockRegistry())
    _populate(cache.root)
    before = tree_digest(cache.root)

    with cache.exclusive():
        snapshot = cache.snapshot(tmp_path / "backups")
        (cache.root / "src" / "github.com" / "a" / "b" / "b.go").write_text("package changed\n", encoding="utf-8")
        (cache.root / "src" / "github.com" / "new").mkdir()
        cache.restore(snapshot)

    assert tree_digest(cache.root) == before
    assert not (cache.root / "src" / "github.com" / "new").exists()
    assert list(tmp_path.glob("gopath_tmp_*")) == []

    cache.discard(snapshot)
    assert not snapshot.path.exists()


def test_failed_copy_back_keeps_both_trees(tmp_path: Path) -> None:
    cache = PackageCache(tmp_path / "gopath", LockRegistry())
    _populate(cache.root)
    snapshot = cache.snapshot(tmp_path / "backups")
    # Destroy the backup tree so the copy back fails.
    for path in sorted(snapshot.tree.rglob("*"), reverse=True):
        if path.is_dir() and not path.is_symlink():
            path.rmdir()
        else:
            path.unlink()
    snapshot.tree.rmdir()

    with pytest.raises(RollbackError) as excinfo:
        cache.restore(snapshot)

    set_aside = Path(excinfo.value.context["set_aside"])
    assert (set_aside / "src" / "github.com" / "a" / "b" / "b.go").exists()
    assert snapshot.path.exists()
