"""External command execution with captured output and a hard deadline."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from buildworker.errors import CommandError
from buildworker.observability import ActivityLog

OUTPUT_TAIL = 4000


@dataclass(frozen=True, slots=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


def passthrough_env(names: Sequence[str], environ: Mapping[str, str] | None = None) -> dict[str, str]:
    source = os.environ if environ is None else environ
    return {name: source[name] for name in names if name in source}


@dataclass(slots=True)
class CommandRunner:
    log: ActivityLog
    timeout: float | None = 900.0
    base_env: Mapping[str, str] = field(default_factory=dict)

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        operation: str = "exec",
        module: str | None = None,
        platform: str | None = None,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        command = tuple(str(arg) for arg in argv)
        merged_env = dict(self.base_env)
        if env:
            merged_env.update(env)
        deadline = timeout if timeout is not None else self.timeout
        self.log.info(
            f"exec [{cwd or ''}] {' '.join(command)}",
            operation=operation,
            module=module,
            platform=platform,
        )
        context = {
            "operation": operation,
            "argv": " ".join(command),
            "cwd": str(cwd or ""),
        }
        try:
            completed = subprocess.run(
                list(command),
                cwd=str(cwd) if cwd is not None else None,
                env=merged_env,
                capture_output=True,
                text=True,
                check=False,
                timeout=deadline,
            )
        except subprocess.TimeoutExpired as exc:
            self.log.error(
                f"deadline of {deadline}s exceeded: {' '.join(command)}",
                operation=operation,
                module=module,
                platform=platform,
            )
            raise CommandError(
                "Command exceeded its deadline.",
                hint="Raise BUILDWORKER_COMMAND_TIMEOUT or investigate the hung tool.",
                context={**context, "timeout": str(deadline), "stderr": _tail(exc.stderr)},
            ) from exc
        except FileNotFoundError as exc:
            raise CommandError(
                f"Executable not found: {command[0]}",
                hint="Install the tool and make sure it is on PATH.",
                context=context,
            ) from exc

        result = CommandResult(
            argv=command,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if completed.returncode != 0 and check:
            if result.output:
                self.log.error(result.output, operation=operation, module=module, platform=platform)
            raise CommandError(
                "Command failed.",
                context={
                    **context,
                    "returncode": str(completed.returncode),
                    "stdout": _tail(result.stdout),
                    "stderr": _tail(result.stderr),
                },
            )
        return result


def _tail(text: str | bytes | None) -> str:
    if text is None:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    text = text.strip()
    return text[-OUTPUT_TAIL:]
