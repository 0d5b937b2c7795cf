"""Deploy coordinator: update the shared cache, validate, then commit or roll back.

A deploy moves exactly one module (the host or one extension) in the
package cache to its latest upstream revision. The cache is copied aside
first; if validation says the update is unsafe, the copy is put back.

Backup and update happen under a single exclusive hold of the cache lock, so
no other writer can slip in between the snapshot and the change it guards.
Transactions against one cache are serialized by the registry.
"""

from __future__ import annotations

from collections.abc import Collection, Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from buildworker.cache import CacheSnapshot
from buildworker.checks import CheckPipeline, PipelineReport
from buildworker.errors import BuildworkerError, ProvisioningError, RequestError, RollbackError
from buildworker.models import Platform
from buildworker.workspace import BuildEnvironment


class DeployState(StrEnum):
    IDLE = "idle"
    BACKING_UP = "backing_up"
    UPDATING = "updating"
    VALIDATING = "validating"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


_TRANSITIONS: dict[DeployState, frozenset[DeployState]] = {
    DeployState.IDLE: frozenset({DeployState.BACKING_UP}),
    # A failed backup leaves nothing to undo.
    DeployState.BACKING_UP: frozenset({DeployState.UPDATING, DeployState.IDLE}),
    DeployState.UPDATING: frozenset({DeployState.VALIDATING, DeployState.ROLLING_BACK}),
    DeployState.VALIDATING: frozenset({DeployState.COMMITTED, DeployState.ROLLING_BACK}),
    DeployState.ROLLING_BACK: frozenset({DeployState.ROLLED_BACK}),
    DeployState.COMMITTED: frozenset(),
    DeployState.ROLLED_BACK: frozenset(),
}

RESOLVED_STATES = frozenset({DeployState.COMMITTED, DeployState.ROLLED_BACK})

# Written next to a backup that could not be restored, for manual recovery.
RECOVERY_LOG = "activity.jsonl"


@dataclass(slots=True)
class DeployTransaction:
    env: BuildEnvironment
    target: str
    state: DeployState = DeployState.IDLE
    snapshot: CacheSnapshot | None = None
    history: list[DeployState] = field(default_factory=lambda: [DeployState.IDLE])

    @property
    def resolved(self) -> bool:
        return self.state in RESOLVED_STATES

    def advance(self, state: DeployState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal deploy transition {self.state} -> {state}")
        self.state = state
        self.history.append(state)
        self.env.log.info(f"deploy {self.target}: {state}", operation="deploy", module=self.target)


@dataclass(frozen=True, slots=True)
class DeployResult:
    target: str
    state: DeployState
    report: PipelineReport | None = None

    @property
    def committed(self) -> bool:
        return self.state == DeployState.COMMITTED


@dataclass(slots=True)
class DeployCoordinator:
    env: BuildEnvironment
    platforms: Sequence[Platform]
    rollback_triggers: Collection[str]
    companions: Sequence[str] = ()

    def deploy(self, target: str) -> DeployResult:
        """Update ``target`` in the cache and keep the update only if it validates.

        Raises ``ValidationError`` when a check fails (the error context
        says whether the cache was rolled back or kept), ``ProvisioningError``
        when the backup or update fails, and ``RollbackError`` when putting
        the backup back fails. In the last case the backup stays on disk.
        """
        env = self.env
        if target not in env.modules:
            raise RequestError(
                "Deploy target is not part of the build environment.",
                context={"module": target},
            )
        cache = env.cache
        txn = DeployTransaction(env, target)
        with cache.registry.transaction(cache.identity):
            with cache.exclusive():
                self._backup(txn)
                self._update(txn)

            txn.advance(DeployState.VALIDATING)
            try:
                # Copy fresh from the updated cache. Provisioning takes the
                # cache lock itself.
                env.reset()
                env.provision()
                with cache.shared():
                    report = self.pipeline().run(target)
            except ProvisioningError as exc:
                self._rollback(txn)
                raise ProvisioningError(
                    f"Updated {target} could not be provisioned; cache rolled back.",
                    hint=exc.hint,
                    context={**exc.context, "deploy_state": txn.state.value},
                ) from exc
            except BaseException:
                self._rollback(txn)
                raise

            if report.ok:
                self._commit(txn)
                return DeployResult(target, txn.state, report)
            if report.rollback_required:
                self._rollback(txn)
            else:
                env.log.info(
                    f"deploy {target}: failed step does not require a rollback; keeping the update",
                    operation="deploy",
                    module=target,
                )
                self._commit(txn)
            report.raise_for_failures(deploy_state=txn.state.value)
        return DeployResult(target, txn.state, report)

    def pipeline(self) -> CheckPipeline:
        settings = self.env.settings
        return CheckPipeline(
            self.env,
            self.platforms,
            rollback_triggers=self.rollback_triggers,
            fail_fast=settings.fail_fast,
            compile_workers=settings.compile_workers,
            companions=tuple(self.companions),
        )

    def _backup(self, txn: DeployTransaction) -> None:
        txn.advance(DeployState.BACKING_UP)
        try:
            txn.snapshot = self.env.cache.snapshot(self.env.settings.backup_root)
        except OSError as exc:
            txn.advance(DeployState.IDLE)
            raise ProvisioningError(
                "Backing up the package cache failed; nothing was changed.",
                context={"cache": str(self.env.cache.root), "error": str(exc)},
            ) from exc
        self.env.log.info(f"backed up cache to {txn.snapshot.path}", operation="deploy", module=txn.target)

    def _update(self, txn: DeployTransaction) -> None:
        """Run under the exclusive lock taken in :meth:`deploy`."""
        txn.advance(DeployState.UPDATING)
        env = self.env
        try:
            env.resolver.update(
                txn.target,
                gopath=[env.cache_path],
                include_subpackages=txn.target == env.host_module,
            )
        except BuildworkerError as exc:
            self._restore(txn)
            raise ProvisioningError(
                f"Updating {txn.target} in the package cache failed; cache rolled back.",
                hint=exc.hint,
                context={**exc.context, "module": txn.target, "deploy_state": txn.state.value},
            ) from exc

    def _commit(self, txn: DeployTransaction) -> None:
        txn.advance(DeployState.COMMITTED)
        if txn.snapshot is not None:
            self.env.cache.discard(txn.snapshot)
            self.env.log.info(f"deleted backup {txn.snapshot.path}", operation="deploy", module=txn.target)

    def _rollback(self, txn: DeployTransaction) -> None:
        with self.env.cache.exclusive():
            self._restore(txn)

    def _restore(self, txn: DeployTransaction) -> None:
        """Caller holds the exclusive lock."""
        txn.advance(DeployState.ROLLING_BACK)
        snapshot = txn.snapshot
        if snapshot is None:
            raise RuntimeError(f"deploy {txn.target}: nothing to restore, no backup was taken")
        try:
            self.env.cache.restore(snapshot)
        except RollbackError as exc:
            self.env.log.critical(
                f"restoring the package cache failed: {exc.message}; backup kept at {snapshot.path}",
                operation="rollback",
                module=txn.target,
            )
            try:
                self.env.log.to_json_lines(snapshot.path / RECOVERY_LOG)
            except OSError as log_exc:
                self.env.log.error(f"could not write {RECOVERY_LOG}: {log_exc}", operation="rollback")
            raise
        self.env.cache.discard(snapshot)
        txn.advance(DeployState.ROLLED_BACK)
        self.env.log.info("package cache restored from backup", operation="rollback", module=txn.target)
