"""Service facade: one instance per process, one call per request."""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from buildworker.assemble import BuildAssembler
from buildworker.deploy import DeployCoordinator, DeployResult
from buildworker.locking import LockRegistry
from buildworker.models import ModuleRef, Platform
from buildworker.observability import ActivityLog
from buildworker.platforms import PlatformCatalog
from buildworker.process import CommandRunner, passthrough_env
from buildworker.resolver import DependencyResolver
from buildworker.settings import Settings
from buildworker.signing import Signer
from buildworker.toolchain import GoToolchain, Toolchain
from buildworker.workspace import BuildEnvironment, sweep_stale_workspaces

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BuildOutcome:
    archive: Path
    scratch_dir: Path
    signature: bytes | None = None

    def cleanup(self) -> None:
        shutil.rmtree(self.scratch_dir, ignore_errors=True)


@dataclass(slots=True)
class BuildService:
    settings: Settings
    registry: LockRegistry = field(default_factory=LockRegistry)
    signer: Signer | None = None
    resolver_factory: Callable[[CommandRunner], DependencyResolver] | None = None
    toolchain_factory: Callable[[CommandRunner], Toolchain] | None = None

    def startup(self) -> list[Path]:
        self.settings.cache_root.mkdir(parents=True, exist_ok=True)
        removed = sweep_stale_workspaces(self.settings.workspace_root)
        for path in removed:
            logger.info("removed stale workspace %s", path)
        return removed

    def runner(self, log: ActivityLog) -> CommandRunner:
        return CommandRunner(
            log,
            timeout=self.settings.command_timeout,
            base_env=passthrough_env(self.settings.passthrough_env),
        )

    def toolchain(self, runner: CommandRunner) -> Toolchain:
        if self.toolchain_factory is not None:
            return self.toolchain_factory(runner)
        return GoToolchain(
            runner,
            tool=self.settings.go_binary,
            race=self.settings.race_detector,
            parallel_build_ops=self.settings.parallel_build_ops,
        )

    def environment(
        self,
        log: ActivityLog,
        *,
        host_version: str | None,
        modules: Sequence[ModuleRef] = (),
    ) -> BuildEnvironment:
        return BuildEnvironment.create(
            self.settings,
            self.registry,
            host_version=host_version,
            modules=modules,
            log=log,
            **self._collaborators(self.runner(log)),
        )

    def _collaborators(self, runner: CommandRunner) -> dict[str, Any]:
        return {
            "runner": runner,
            "resolver": self.resolver_factory(runner) if self.resolver_factory is not None else None,
            "toolchain": self.toolchain(runner),
        }

    def supported_platforms(self, *, log: ActivityLog | None = None) -> list[Platform]:
        runner = self.runner(log or ActivityLog())
        return PlatformCatalog(self.toolchain(runner)).list(self.settings.exclusions)

    def build(
        self,
        host_version: str | None,
        platform: Platform,
        modules: Sequence[ModuleRef] = (),
        *,
        log: ActivityLog | None = None,
    ) -> BuildOutcome:
        """Build and package the host with ``modules`` for ``platform``.

        The caller owns the outcome and must call :meth:`BuildOutcome.cleanup`.
        """
        log = log or ActivityLog()
        runner = self.runner(log)
        target = PlatformCatalog(self.toolchain(runner)).require(platform, self.settings.exclusions)

        if self.settings.workspace_root is not None:
            self.settings.workspace_root.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix="buildworker_artifact_", dir=self.settings.workspace_root))
        try:
            with BuildEnvironment.open(
                self.settings,
                self.registry,
                host_version=host_version,
                modules=modules,
                log=log,
                **self._collaborators(runner),
            ) as env:
                # The build reads the cache through GOPATH.
                with env.cache.shared():
                    archive = BuildAssembler(env).assemble(target, scratch)
            signature = self.signer.sign(archive) if self.signer is not None else None
        except BaseException:
            shutil.rmtree(scratch, ignore_errors=True)
            raise
        return BuildOutcome(archive=archive, scratch_dir=scratch, signature=signature)

    def deploy_host(self, host_version: str | None, *, log: ActivityLog | None = None) -> DeployResult:
        log = log or ActivityLog()
        platforms = self.supported_platforms(log=log)
        env = self.environment(log, host_version=host_version)
        try:
            coordinator = DeployCoordinator(env, platforms, self.settings.host_rollback_triggers)
            return coordinator.deploy(self.settings.host_module)
        finally:
            env.close()

    def deploy_module(
        self,
        host_version: str | None,
        target: ModuleRef,
        roster: Sequence[ModuleRef] = (),
        *,
        log: ActivityLog | None = None,
    ) -> DeployResult:
        """Deploy one extension module.

        ``roster`` is the set of modules currently shipped; they are wired in
        next to ``target`` when checking host compatibility. An entry for
        ``target`` in the roster is replaced by ``target`` itself.
        """
        log = log or ActivityLog()
        companions = [ref for ref in roster if ref.identifier != target.identifier]
        platforms = self.supported_platforms(log=log)
        env = self.environment(log, host_version=host_version, modules=[*companions, target])
        try:
            coordinator = DeployCoordinator(
                env,
                platforms,
                self.settings.rollback_triggers,
                companions=[ref.identifier for ref in companions],
            )
            return coordinator.deploy(target.identifier)
        finally:
            env.close()
