"""Ephemeral build environments provisioned from the shared package cache."""

from __future__ import annotations

import shutil
import tempfile
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from buildworker.cache import PackageCache, deep_copy
from buildworker.errors import CommandError, ProvisioningError
from buildworker.locking import LockRegistry
from buildworker.models import ModuleRef, module_map
from buildworker.observability import ActivityLog
from buildworker.process import CommandRunner, passthrough_env
from buildworker.resolver import DependencyResolver, GoGetResolver
from buildworker.settings import Settings
from buildworker.toolchain import GoToolchain, Toolchain
from buildworker.vcs import GitAdapter

WORKSPACE_PREFIX = "gopath_"
BACKUP_PREFIX = "gopath_backup_"


def new_workspace_dir(root: Path | None = None) -> Path:
    if root is not None:
        root.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%m%d-%H%M")
    return Path(tempfile.mkdtemp(prefix=f"{WORKSPACE_PREFIX}{stamp}.", dir=root))


def provision_workspace(
    cache: PackageCache,
    workspace: Path,
    modules: Mapping[str, str],
    *,
    resolver: DependencyResolver,
    vcs: GitAdapter,
    host_module: str,
    log: ActivityLog,
    skip_hidden: bool = False,
    skip_test_fixtures: bool = False,
) -> None:
    """Populate ``workspace`` with every module in ``modules`` at its requested version.

    For each module, in order:

    1. under the cache write lock, resolve the module into the cache (adds
       missing packages only; the host module brings its whole subtree);
    2. downgrade to a read lock and copy the module tree into the workspace;
    3. fetch in the workspace copy so the requested revision is reachable;
    4. check out the requested version;
    5. resolve again with the workspace first on GOPATH, since the checked
       out revision may import packages the cache tip does not.

    The first failing step aborts. The caller owns deleting the workspace.
    """
    lock = cache.lock
    for module, version in modules.items():
        subtree = module == host_module
        destination = workspace / "src" / module
        log.info(f"provisioning {module}@{version}", operation="provision", module=module)

        lock.acquire_write()
        try:
            _step(
                "resolve into cache",
                module,
                lambda: resolver.ensure(module, gopath=[cache.root], include_subpackages=subtree),
            )
            if not cache.contains(module):
                raise ProvisioningError(
                    "Module is missing from the package cache after resolving it.",
                    context={"module": module, "cache": str(cache.root)},
                )
        except BaseException:
            lock.release_write()
            raise

        lock.downgrade()
        try:
            _step(
                "copy from cache",
                module,
                lambda: deep_copy(
                    cache.path(module),
                    destination,
                    skip_hidden=skip_hidden,
                    skip_test_fixtures=skip_test_fixtures,
                ),
            )
            _step("fetch", module, lambda: vcs.fetch(destination, module=module))
            _step("checkout", module, lambda: vcs.checkout(destination, version, module=module))
            _step(
                "resolve into workspace",
                module,
                lambda: resolver.ensure(module, gopath=[workspace, cache.root], include_subpackages=subtree),
            )
        finally:
            lock.release_read()


def _step(name: str, module: str, action: Callable[[], object]) -> None:
    try:
        action()
    except CommandError as exc:
        raise ProvisioningError(
            f"Provisioning step failed: {name}.",
            hint=exc.hint,
            context={**exc.context, "module": module, "step": name},
        ) from exc
    except OSError as exc:
        raise ProvisioningError(
            f"Provisioning step failed: {name}.",
            context={"module": module, "step": name, "error": str(exc)},
        ) from exc


@dataclass(slots=True)
class BuildEnvironment:
    """One request's workspace plus the module versions it was asked for.

    The workspace belongs to this environment alone and is deleted by
    :meth:`close`. The shared cache is only read, except by the resolver
    during provisioning and by a deploy's update step.
    """

    settings: Settings
    cache: PackageCache
    modules: dict[str, str]
    workspace_path: Path
    log: ActivityLog
    runner: CommandRunner
    vcs: GitAdapter
    resolver: DependencyResolver
    toolchain: Toolchain
    provisioned: bool = field(default=False, init=False)
    closed: bool = field(default=False, init=False)

    @classmethod
    def create(
        cls,
        settings: Settings,
        registry: LockRegistry,
        *,
        host_version: str | None = None,
        modules: Sequence[ModuleRef] = (),
        log: ActivityLog | None = None,
        runner: CommandRunner | None = None,
        vcs: GitAdapter | None = None,
        resolver: DependencyResolver | None = None,
        toolchain: Toolchain | None = None,
    ) -> BuildEnvironment:
        mapping = module_map(settings.host_module, host_version or settings.default_host_version, list(modules))
        log = log or ActivityLog()
        if runner is None:
            runner = CommandRunner(
                log,
                timeout=settings.command_timeout,
                base_env=passthrough_env(settings.passthrough_env),
            )
        workspace = new_workspace_dir(settings.workspace_root)
        log.info(f"created workspace {workspace}", operation="workspace")
        return cls(
            settings=settings,
            cache=PackageCache(settings.cache_root, registry),
            modules=mapping,
            workspace_path=workspace,
            log=log,
            runner=runner,
            vcs=vcs or GitAdapter(runner, binary=settings.git_binary),
            resolver=resolver or GoGetResolver(runner, tool=settings.go_binary),
            toolchain=toolchain
            or GoToolchain(
                runner,
                tool=settings.go_binary,
                race=settings.race_detector,
                parallel_build_ops=settings.parallel_build_ops,
            ),
        )

    @classmethod
    @contextmanager
    def open(cls, settings: Settings, registry: LockRegistry, **kwargs: Any) -> Iterator[BuildEnvironment]:
        """Create and provision an environment; always delete its workspace on exit."""
        env = cls.create(settings, registry, **kwargs)
        try:
            env.provision()
            yield env
        finally:
            env.close()

    @property
    def cache_path(self) -> Path:
        return self.cache.root

    @property
    def gopath(self) -> tuple[Path, ...]:
        # Workspace first: `go` resolves imports against the requested versions
        # before falling back to the cache.
        return (self.workspace_path, self.cache.root)

    @property
    def host_module(self) -> str:
        return self.settings.host_module

    @property
    def host_version(self) -> str:
        return self.modules[self.settings.host_module]

    @property
    def extension_modules(self) -> dict[str, str]:
        return {module: version for module, version in self.modules.items() if module != self.settings.host_module}

    @property
    def has_extensions(self) -> bool:
        return bool(self.extension_modules)

    def module_path(self, module: str) -> Path:
        return self.workspace_path / "src" / module

    @property
    def host_path(self) -> Path:
        return self.module_path(self.settings.host_module)

    @property
    def entry_file(self) -> Path:
        return self.host_path / self.settings.entry_file

    def provision(self) -> None:
        if self.closed:
            raise ProvisioningError("Environment is closed.", context={"workspace": str(self.workspace_path)})
        if self.provisioned:
            return
        provision_workspace(
            self.cache,
            self.workspace_path,
            self.modules,
            resolver=self.resolver,
            vcs=self.vcs,
            host_module=self.settings.host_module,
            log=self.log,
            skip_hidden=self.settings.skip_hidden,
            skip_test_fixtures=self.settings.skip_test_fixtures,
        )
        self.provisioned = True

    def reset(self) -> None:
        """Empty the workspace so the next :meth:`provision` copies fresh from the cache."""
        shutil.rmtree(self.workspace_path / "src", ignore_errors=True)
        shutil.rmtree(self.workspace_path / "pkg", ignore_errors=True)
        self.provisioned = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        shutil.rmtree(self.workspace_path, ignore_errors=True)
        if self.workspace_path.exists():
            self.log.error(f"could not delete workspace {self.workspace_path}", operation="workspace")
        else:
            self.log.info(f"deleted workspace {self.workspace_path}", operation="workspace")


def sweep_stale_workspaces(root: Path | None = None, *, older_than: float = 24 * 3600) -> list[Path]:
    """Delete workspaces left behind by a crashed worker.

    Deploy backups share the prefix but are kept: they may be the only copy
    of a cache whose restore failed.
    """
    base = Path(root) if root is not None else Path(tempfile.gettempdir())
    if not base.is_dir():
        return []
    cutoff = time.time() - older_than
    removed: list[Path] = []
    for candidate in sorted(base.glob(f"{WORKSPACE_PREFIX}*")):
        if candidate.name.startswith(BACKUP_PREFIX) or not candidate.is_dir():
            continue
        try:
            if candidate.stat().st_mtime >= cutoff:
                continue
            shutil.rmtree(candidate)
        except FileNotFoundError:
            continue
        removed.append(candidate)
    return removed
