"""Idempotent provisioning engine: steps, oracle, executor and orchestrator."""
from __future__ import annotations

from .executor import StepExecutor
from .jdk import JdkLocator
from .models import (
    AlternativeSelected,
    ComponentEnabled,
    ContainerRuntimeRegistered,
    FileContentEquals,
    FileDownloaded,
    FilesCopied,
    GroupPresent,
    JavaHomeExported,
    JdkHome,
    PackageInstalled,
    ProvisioningProfile,
    ProvisioningStep,
    RepositoryRegistered,
    RunReport,
    ServiceEnabled,
    StepOutcome,
    StepResult,
    UserInGroup,
)
from .oracle import IdempotencyOracle
from .orchestrator import NullObserver, Orchestrator, PlanEntry, RunObserver, require_root
from .profiles import PROFILE_ORDER, ProfileCatalog, UnknownProfileError
from .repository import RepositoryConfigurator, SourceChange

__all__ = [
    # steps
    "AlternativeSelected",
    "ComponentEnabled",
    "ContainerRuntimeRegistered",
    "FileContentEquals",
    "FileDownloaded",
    "FilesCopied",
    "GroupPresent",
    "JavaHomeExported",
    "JdkHome",
    "PackageInstalled",
    "ProvisioningStep",
    "RepositoryRegistered",
    "ServiceEnabled",
    "UserInGroup",
    # results
    "ProvisioningProfile",
    "RunReport",
    "StepOutcome",
    "StepResult",
    # engine
    "IdempotencyOracle",
    "JdkLocator",
    "NullObserver",
    "Orchestrator",
    "PlanEntry",
    "RepositoryConfigurator",
    "RunObserver",
    "SourceChange",
    "StepExecutor",
    "require_root",
    # catalog
    "PROFILE_ORDER",
    "ProfileCatalog",
    "UnknownProfileError",
]
