from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import OTHER_PLUGIN_MODULE, PLUGIN_MODULE, RecordingToolchain, Upstream, run_git, tree_digest

from buildworker.cache import CacheSnapshot, PackageCache
from buildworker.checks import CheckPipeline
from buildworker.deploy import DeployState, DeployTransaction
from buildworker.errors import ProvisioningError, RollbackError, ValidationError
from buildworker.models import ModuleRef
from buildworker.observability import ActivityLog
from buildworker.service import BuildService
from buildworker.settings import HOST_MODULE, Settings


def _seed_cache(service: BuildService) -> None:
    """Populate the cache the way a first build would."""
    outcome = service.build("main", service.supported_platforms()[0], [ModuleRef(PLUGIN_MODULE, "main")])
    outcome.cleanup()


def _cache_head(settings: Settings, module: str) -> str:
    return run_git(["rev-parse", "HEAD"], cwd=settings.cache_root / "src" / module)


def _backups(settings: Settings) -> list[Path]:
    assert settings.backup_root is not None
    if not settings.backup_root.exists():
        return []
    return list(settings.backup_root.iterdir())


def test_passing_deploy_commits_new_revision_and_drops_backup(
    service: BuildService, settings: Settings, upstream: Upstream
) -> None:
    _seed_cache(service)
    new_head = upstream.commit(PLUGIN_MODULE, {"plugin.go": "package plugin\n\nvar V = 2\n"}, "v2")

    result = service.deploy_module("main", ModuleRef(PLUGIN_MODULE, "main"))

    assert result.state == DeployState.COMMITTED
    assert result.committed
    assert _cache_head(settings, PLUGIN_MODULE) == new_head
    assert _backups(settings) == []


def test_host_compatibility_failure_restores_cache_byte_for_byte(
    service: BuildService,
    settings: Settings,
    upstream: Upstream,
    toolchain: RecordingToolchain,
) -> None:
    _seed_cache(service)
    before = tree_digest(settings.cache_root)
    upstream.commit(PLUGIN_MODULE, {"plugin.go": "package plugin\n\nvar Broken = true\n"}, "breaks caddy")
    toolchain.host_rejects = PLUGIN_MODULE
    log = ActivityLog()

    with pytest.raises(ValidationError) as excinfo:
        service.deploy_module("main", ModuleRef(PLUGIN_MODULE, "main"), log=log)

    assert excinfo.value.context["deploy_state"] == DeployState.ROLLED_BACK
    assert excinfo.value.report is not None
    assert excinfo.value.report.rollback_required
    assert tree_digest(settings.cache_root) == before
    assert _backups(settings) == []
    assert not list(settings.cache_root.parent.glob(f"{settings.cache_root.name}_tmp_*"))
    assert "package cache restored from backup" in log.to_text()


def test_module_test_failure_keeps_the_update(
    service: BuildService,
    settings: Settings,
    upstream: Upstream,
    toolchain: RecordingToolchain,
) -> None:
    _seed_cache(service)
    new_head = upstream.commit(PLUGIN_MODULE, {"plugin.go": "package plugin\n\nvar V = 3\n"}, "v3")
    toolchain.failing_tests = {PLUGIN_MODULE}

    with pytest.raises(ValidationError) as excinfo:
        service.deploy_module("main", ModuleRef(PLUGIN_MODULE, "main"))

    assert excinfo.value.context["deploy_state"] == DeployState.COMMITTED
    assert excinfo.value.context["failed_steps"] == "test_suite"
    assert _cache_head(settings, PLUGIN_MODULE) == new_head
    assert _backups(settings) == []


def test_compile_failure_can_be_made_a_rollback_trigger(
    service: BuildService,
    settings: Settings,
    upstream: Upstream,
    toolchain: RecordingToolchain,
) -> None:
    triggers = frozenset({"host_compatibility", "cross_platform_compile"})
    service.settings = settings.with_overrides(rollback_triggers=triggers)
    _seed_cache(service)
    old_head = _cache_head(settings, PLUGIN_MODULE)
    upstream.commit(PLUGIN_MODULE, {"plugin.go": "package plugin\n\nvar V = 4\n"}, "v4")
    toolchain.failing_compiles = {"windows/amd64"}

    with pytest.raises(ValidationError) as excinfo:
        service.deploy_module("main", ModuleRef(PLUGIN_MODULE, "main"))

    assert excinfo.value.context["deploy_state"] == DeployState.ROLLED_BACK
    assert _cache_head(settings, PLUGIN_MODULE) == old_head


def test_failed_update_rolls_back(
    service: BuildService,
    settings: Settings,
    failing_updates: set[str],
) -> None:
    _seed_cache(service)
    before = tree_digest(settings.cache_root)
    failing_updates.add(PLUGIN_MODULE)

    with pytest.raises(ProvisioningError) as excinfo:
        service.deploy_module("main", ModuleRef(PLUGIN_MODULE, "main"))

    assert excinfo.value.context["deploy_state"] == DeployState.ROLLED_BACK
    assert tree_digest(settings.cache_root) == before
    assert _backups(settings) == []


def test_roster_modules_are_wired_in_during_host_compatibility(
    service: BuildService,
    toolchain: RecordingToolchain,
) -> None:
    _seed_cache(service)
    result = service.deploy_module(
        "main",
        ModuleRef(PLUGIN_MODULE, "main"),
        roster=[ModuleRef(OTHER_PLUGIN_MODULE, "main"), ModuleRef(PLUGIN_MODULE, "v0.1.0")],
    )

    assert result.committed
    wired = toolchain.entry_snapshots[-1]
    assert f'_ "{OTHER_PLUGIN_MODULE}"' in wired
    assert wired.count(f'"{PLUGIN_MODULE}"') == 1


def test_host_deploy_updates_the_host(
    service: BuildService,
    settings: Settings,
    upstream: Upstream,
    resolvers: list,
) -> None:
    _seed_cache(service)
    new_head = upstream.commit(HOST_MODULE, {"caddy.go": 'package caddy\n\nconst AppName = "Caddy 2"\n'}, "bump")

    result = service.deploy_host("main")

    assert result.committed
    assert result.target == HOST_MODULE
    assert _cache_head(settings, HOST_MODULE) == new_head
    updates = [call for resolver in resolvers for call in resolver.calls if call[0] == "update"]
    assert [call[1] for call in updates] == [HOST_MODULE]


def test_host_test_failure_rolls_back_a_host_deploy(
    service: BuildService,
    settings: Settings,
    upstream: Upstream,
    toolchain: RecordingToolchain,
) -> None:
    _seed_cache(service)
    before = tree_digest(settings.cache_root)
    upstream.commit(HOST_MODULE, {"caddy.go": "package caddy\n"}, "drop AppName")
    toolchain.failing_tests = {HOST_MODULE}

    with pytest.raises(ValidationError) as excinfo:
        service.deploy_host("main")

    assert excinfo.value.context["deploy_state"] == DeployState.ROLLED_BACK
    assert tree_digest(settings.cache_root) == before


def test_restore_failure_is_loud_and_keeps_the_backup(
    service: BuildService,
    settings: Settings,
    upstream: Upstream,
    toolchain: RecordingToolchain,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _seed_cache(service)
    upstream.commit(PLUGIN_MODULE, {"plugin.go": "package plugin\n\nvar Broken = true\n"}, "breaks caddy")
    toolchain.host_rejects = PLUGIN_MODULE

    def broken_restore(self: PackageCache, snapshot: CacheSnapshot) -> None:
        raise RollbackError("Copying the backup into place failed.", context={"backup": str(snapshot.tree)})

    monkeypatch.setattr(PackageCache, "restore", broken_restore)
    log = ActivityLog()

    with pytest.raises(RollbackError):
        service.deploy_module("main", ModuleRef(PLUGIN_MODULE, "main"), log=log)

    assert len(_backups(settings)) == 1
    assert any(record["level"] == "critical" for record in log.snapshot())
    recovery_log = _backups(settings)[0] / "activity.jsonl"
    recovery = [json.loads(line) for line in recovery_log.read_text(encoding="utf-8").splitlines()]
    assert any(record["level"] == "critical" for record in recovery)


def test_host_revision_without_entry_file_rolls_back(
    service: BuildService,
    settings: Settings,
    upstream: Upstream,
) -> None:
    _seed_cache(service)
    before = tree_digest(settings.cache_root)
    upstream.commit(PLUGIN_MODULE, {"plugin.go": "package plugin\n\nvar V = 5\n"}, "v5")
    host = upstream.repo(HOST_MODULE)
    run_git(["rm", "--quiet", "caddy/caddymain/run.go"], cwd=host)
    run_git(["commit", "-m", "move the entry point"], cwd=host)
    pinned = run_git(["rev-parse", "HEAD"], cwd=host)

    with pytest.raises(ValidationError) as excinfo:
        service.deploy_module(pinned, ModuleRef(PLUGIN_MODULE, "main"))

    assert excinfo.value.context["failed_steps"] == "host_compatibility"
    assert excinfo.value.context["deploy_state"] == DeployState.ROLLED_BACK
    assert excinfo.value.context["path"].endswith("caddy/caddymain/run.go")
    assert tree_digest(settings.cache_root) == before
    assert _backups(settings) == []


def test_unexpected_failure_during_validation_rolls_back(
    service: BuildService,
    settings: Settings,
    upstream: Upstream,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _seed_cache(service)
    before = tree_digest(settings.cache_root)
    upstream.commit(PLUGIN_MODULE, {"plugin.go": "package plugin\n\nvar V = 6\n"}, "v6")

    def crash(self: CheckPipeline, module: str) -> None:
        raise RuntimeError("worker thread died")

    monkeypatch.setattr(CheckPipeline, "run", crash)
    log = ActivityLog()

    with pytest.raises(RuntimeError):
        service.deploy_module("main", ModuleRef(PLUGIN_MODULE, "main"), log=log)

    assert tree_digest(settings.cache_root) == before
    assert _backups(settings) == []
    assert "package cache restored from backup" in log.to_text()


def test_transaction_rejects_illegal_transitions(service: BuildService) -> None:
    env = service.environment(ActivityLog(), host_version="main")
    try:
        txn = DeployTransaction(env, HOST_MODULE)
        txn.advance(DeployState.BACKING_UP)
        with pytest.raises(RuntimeError):
            txn.advance(DeployState.COMMITTED)
        txn.advance(DeployState.UPDATING)
        txn.advance(DeployState.VALIDATING)
        txn.advance(DeployState.COMMITTED)
        assert txn.resolved
        with pytest.raises(RuntimeError):
            txn.advance(DeployState.ROLLING_BACK)
    finally:
        env.close()
