"""Check pipeline: ordered, named validation steps with typed outcomes."""

from __future__ import annotations

from collections.abc import Callable, Collection, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum

from buildworker.errors import BuildworkerError, ValidationError
from buildworker.inject import injected
from buildworker.models import (
    CROSS_PLATFORM_COMPILE,
    HOST_COMPATIBILITY,
    HOST_STEPS,
    MODULE_STEPS,
    STATIC_ANALYSIS,
    TEST_SUITE,
    Platform,
)
from buildworker.observability import ActivityLog
from buildworker.workspace import BuildEnvironment


class StepStatus(StrEnum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class StepOutcome:
    step: str
    status: StepStatus
    reason: str = ""
    triggers_rollback: bool = False
    error: BuildworkerError | None = field(default=None, compare=False, repr=False)

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED


@dataclass(frozen=True, slots=True)
class CheckStep:
    name: str
    run: Callable[[], None]
    triggers_rollback: bool = False


@dataclass(frozen=True, slots=True)
class PipelineReport:
    module: str
    outcomes: tuple[StepOutcome, ...]

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def failures(self) -> tuple[StepOutcome, ...]:
        return tuple(outcome for outcome in self.outcomes if outcome.failed)

    @property
    def rollback_required(self) -> bool:
        return any(outcome.triggers_rollback for outcome in self.failures)

    def outcome(self, step: str) -> StepOutcome | None:
        return next((outcome for outcome in self.outcomes if outcome.step == step), None)

    def raise_for_failures(self, **extra: str) -> None:
        if self.ok:
            return
        first = self.failures[0]
        context = dict(first.error.context) if first.error is not None else {}
        context.update(
            {
                "module": self.module,
                "failed_steps": ", ".join(outcome.step for outcome in self.failures),
                **extra,
            }
        )
        raise ValidationError(
            f"{self.module}: {first.step} failed: {first.reason}",
            hint=first.error.hint if first.error is not None else None,
            context=context,
            report=self,
        )


def run_steps(
    module: str,
    steps: Sequence[CheckStep],
    *,
    log: ActivityLog,
    fail_fast: bool = True,
) -> PipelineReport:
    """Run ``steps`` in order; once one fails the rest are skipped unless ``fail_fast`` is off."""
    outcomes: list[StepOutcome] = []
    failed = False
    for step in steps:
        if failed and fail_fast:
            outcomes.append(StepOutcome(step.name, StepStatus.SKIPPED, "an earlier step failed", step.triggers_rollback))
            continue
        log.info(f"{step.name}: running", operation="check", module=module)
        try:
            step.run()
        except BuildworkerError as exc:
            failed = True
            log.error(f"{step.name}: {exc.message}", operation="check", module=module)
            outcomes.append(StepOutcome(step.name, StepStatus.FAILED, exc.message, step.triggers_rollback, exc))
            continue
        log.info(f"{step.name}: passed", operation="check", module=module)
        outcomes.append(StepOutcome(step.name, StepStatus.PASSED, triggers_rollback=step.triggers_rollback))
    return PipelineReport(module=module, outcomes=tuple(outcomes))


@dataclass(slots=True)
class CheckPipeline:
    """Validation of one module checkout inside a provisioned environment."""

    env: BuildEnvironment
    platforms: Sequence[Platform]
    rollback_triggers: Collection[str] = frozenset()
    fail_fast: bool = True
    compile_workers: int = 1
    companions: Sequence[str] = ()

    def steps_for(self, module: str) -> list[CheckStep]:
        directory = self.env.module_path(module)
        gopath = self.env.gopath
        toolchain = self.env.toolchain
        actions: dict[str, Callable[[], None]] = {
            STATIC_ANALYSIS: lambda: toolchain.vet(directory, gopath=gopath, module=module),
            TEST_SUITE: lambda: toolchain.test(directory, gopath=gopath, module=module),
            HOST_COMPATIBILITY: lambda: self.host_compatibility(module),
            CROSS_PLATFORM_COMPILE: lambda: self.compile_matrix(module),
        }
        names = HOST_STEPS if module == self.env.host_module else MODULE_STEPS
        return [CheckStep(name, actions[name], name in self.rollback_triggers) for name in names]

    def run(self, module: str) -> PipelineReport:
        return run_steps(module, self.steps_for(module), log=self.env.log, fail_fast=self.fail_fast)

    def host_compatibility(self, module: str) -> None:
        """Wire ``module`` into a throwaway host entry point and run the host's tests."""
        wired = [*self.companions, module]
        with injected(self.env.entry_file, dict.fromkeys(wired)):
            self.env.log.info(
                f"host entry point imports {', '.join(wired)}",
                operation="check",
                module=module,
            )
            self.env.toolchain.test(self.env.host_path, gopath=self.env.gopath, module=self.env.host_module)

    def compile_matrix(self, module: str) -> None:
        """Compile ``module`` for every platform; failures are reported in catalog order."""

        def compile_one(platform: Platform) -> BuildworkerError | None:
            try:
                self.env.toolchain.compile(module, gopath=self.env.gopath, platform=platform)
            except BuildworkerError as exc:
                return exc
            return None

        if self.compile_workers > 1:
            with ThreadPoolExecutor(max_workers=self.compile_workers) as pool:
                results = list(pool.map(compile_one, self.platforms))
        else:
            results = []
            for platform in self.platforms:
                results.append(compile_one(platform))
                if results[-1] is not None and self.fail_fast:
                    break

        failures = [(platform, error) for platform, error in zip(self.platforms, results) if error is not None]
        if not failures:
            return
        platform, error = failures[0]
        raise ValidationError(
            f"compile failed for {', '.join(str(p) for p, _ in failures)}",
            hint=error.hint,
            context={**error.context, "platform": str(platform)},
        )
