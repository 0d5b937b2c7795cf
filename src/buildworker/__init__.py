"""Public package entrypoint for the build worker."""

from .assemble import BuildAssembler, artifact_name
from .cache import CacheSnapshot, PackageCache
from .checks import CheckPipeline, PipelineReport, StepOutcome, StepStatus
from .deploy import DeployCoordinator, DeployResult, DeployState
from .errors import (
    AssemblyError,
    BuildworkerError,
    CommandError,
    ConfigurationError,
    InjectionError,
    ProvisioningError,
    RequestError,
    RollbackError,
    SigningError,
    ValidationError,
)
from .inject import inject_module
from .locking import LockRegistry, ReadWriteLock
from .models import PREVIOUS, ModuleRef, Platform, PlatformFilter
from .observability import ActivityLog
from .platforms import PlatformCatalog
from .service import BuildOutcome, BuildService
from .settings import Settings
from .workspace import BuildEnvironment

__all__ = [
    "PREVIOUS",
    "ActivityLog",
    "AssemblyError",
    "BuildAssembler",
    "BuildEnvironment",
    "BuildOutcome",
    "BuildService",
    "BuildworkerError",
    "CacheSnapshot",
    "CheckPipeline",
    "CommandError",
    "ConfigurationError",
    "DeployCoordinator",
    "DeployResult",
    "DeployState",
    "InjectionError",
    "LockRegistry",
    "ModuleRef",
    "PackageCache",
    "PipelineReport",
    "Platform",
    "PlatformCatalog",
    "PlatformFilter",
    "ProvisioningError",
    "ReadWriteLock",
    "RequestError",
    "RollbackError",
    "Settings",
    "SigningError",
    "StepOutcome",
    "StepStatus",
    "ValidationError",
    "artifact_name",
    "inject_module",
]
