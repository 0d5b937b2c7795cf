"""Typed error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from buildworker.checks import PipelineReport


class ErrorCode(StrEnum):
    """Stable error identifiers used across API surfaces."""

    REQUEST = "E_REQUEST"
    COMMAND = "E_COMMAND"
    PROVISIONING = "E_PROVISIONING"
    VALIDATION = "E_VALIDATION"
    INJECTION = "E_INJECTION"
    ASSEMBLY = "E_ASSEMBLY"
    ROLLBACK = "E_ROLLBACK"
    SIGNING = "E_SIGNING"
    CONFIGURATION = "E_CONFIGURATION"


class BuildworkerError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    @property
    def message(self) -> str:
        return self.args[0] if self.args else ""

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class RequestError(BuildworkerError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.REQUEST, hint=hint, context=context)


class CommandError(BuildworkerError):
    """An external process failed, timed out or could not be started."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.COMMAND, hint=hint, context=context)


class ProvisioningError(BuildworkerError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.PROVISIONING, hint=hint, context=context)


class ValidationError(BuildworkerError):
    """A check pipeline step failed.

    ``report`` holds the full pipeline outcome when the error was raised from
    a pipeline run, so callers can tell which step failed and whether that
    failure asks for a rollback.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
        report: PipelineReport | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)
        self.report = report


class InjectionError(BuildworkerError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.INJECTION, hint=hint, context=context)


class AssemblyError(BuildworkerError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.ASSEMBLY, hint=hint, context=context)


class RollbackError(BuildworkerError):
    """Restoring a cache backup failed; the cache needs manual recovery."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.ROLLBACK, hint=hint, context=context)


class SigningError(BuildworkerError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.SIGNING, hint=hint, context=context)


class ConfigurationError(BuildworkerError):
    """The worker's own environment is incomplete or invalid."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CONFIGURATION, hint=hint, context=context)


__all__ = [
    "AssemblyError",
    "BuildworkerError",
    "CommandError",
    "ConfigurationError",
    "ErrorCode",
    "InjectionError",
    "ProvisioningError",
    "RequestError",
    "RollbackError",
    "SigningError",
    "ValidationError",
]
