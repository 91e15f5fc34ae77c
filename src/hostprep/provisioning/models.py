"""Data model for provisioning steps, profiles and results."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..environment import Distribution
from ..errors import ProvisioningError
from ..exit_codes import ExitCode


@dataclass(frozen=True, slots=True, kw_only=True)
class ProvisioningStep:
    """Base class for a single desired end state.

    ``required`` steps abort the run when they fail; best-effort steps are
    reported as skipped instead.
    """

    description: str = ""
    required: bool = True

    @property
    def id(self) -> str:
        """Return a stable identifier for logs and JSON payloads."""
        raise NotImplementedError

    @property
    def kind(self) -> str:
        """Return the variant name used in reports."""
        return type(self).__name__

    def label(self) -> str:
        """Return the human readable label of the step."""
        return self.description or self.id


@dataclass(frozen=True, slots=True, kw_only=True)
class PackageInstalled(ProvisioningStep):
    """A package is installed, optionally at a specific upstream version.

    ``deb_url`` installs a standalone ``.deb`` through ``dpkg -i`` instead of
    APT. ``provided_by`` names an executable whose presence on ``PATH`` also
    satisfies an unversioned step.
    """

    name: str
    version: str | None = None
    deb_url: str | None = None
    provided_by: str | None = None

    @property
    def id(self) -> str:
        """Return a stable identifier for logs and JSON payloads."""
        return f"package:{self.name}"


@dataclass(frozen=True, slots=True, kw_only=True)
class FileContentEquals(ProvisioningStep):
    """A file holds exactly *content* with permission *mode*.

    ``refreshes_index`` marks files APT reads (pins), so a change forces the
    package index to be refreshed before the next install.
    """

    path: Path
    content: str
    mode: int = 0o644
    refreshes_index: bool = False

    @property
    def id(self) -> str:
        """Return a stable identifier for logs and JSON payloads."""
        return f"file:{self.path}"


@dataclass(frozen=True, slots=True, kw_only=True)
class RepositoryRegistered(ProvisioningStep):
    """An APT repository's signing key and source entry are in place."""

    name: str
    key_url: str
    keyring_path: Path
    source_path: Path
    content: str
    dearmor: bool = False

    @property
    def id(self) -> str:
        """Return a stable identifier for logs and JSON payloads."""
        return f"repository:{self.name}"

    @property
    def lines(self) -> tuple[str, ...]:
        """Return the expected non-empty source lines."""
        return tuple(line for line in self.content.splitlines() if line.strip())


@dataclass(frozen=True, slots=True, kw_only=True)
class FileDownloaded(ProvisioningStep):
    """A remote file has been downloaded to *path* and is non-empty."""

    url: str
    path: Path
    mode: int = 0o644
    refreshes_index: bool = False

    @property
    def id(self) -> str:
        """Return a stable identifier for logs and JSON payloads."""
        return f"download:{self.path}"


@dataclass(frozen=True, slots=True, kw_only=True)
class FilesCopied(ProvisioningStep):
    """Every file matching *pattern* has an identical copy in *destination*."""

    pattern: str
    destination: Path
    mode: int = 0o644

    @property
    def id(self) -> str:
        """Return a stable identifier for logs and JSON payloads."""
        return f"copy:{self.pattern}"


@dataclass(frozen=True, slots=True, kw_only=True)
class ComponentEnabled(ProvisioningStep):
    """An APT archive component (for example ``contrib``) is enabled."""

    component: str

    @property
    def id(self) -> str:
        """Return a stable identifier for logs and JSON payloads."""
        return f"component:{self.component}"


@dataclass(frozen=True, slots=True)
class JdkHome:
    """The JDK installed by *package*, located on the host when a step runs."""

    package: str
    version: str


@dataclass(frozen=True, slots=True, kw_only=True)
class JavaHomeExported(ProvisioningStep):
    """A login snippet at *path* exports ``JAVA_HOME`` for the JDK in *jdk*."""

    path: Path
    jdk: JdkHome
    mode: int = 0o644

    @property
    def id(self) -> str:
        """Return a stable identifier for logs and JSON payloads."""
        return f"file:{self.path}"


@dataclass(frozen=True, slots=True, kw_only=True)
class AlternativeSelected(ProvisioningStep):
    """An alternatives group points at *target*.

    With ``jdk`` set the target is ``<JAVA_HOME>/bin/<name>`` for that JDK,
    resolved when the step is checked or applied. When ``version_command`` is
    set its output must report ``expected_version`` (extracted with
    ``version_pattern``).
    """

    name: str
    link: Path
    priority: int
    target: Path | None = None
    jdk: JdkHome | None = None
    version_command: tuple[str, ...] | None = None
    expected_version: str | None = None
    version_pattern: str = r"(\d+(?:\.\d+)*)"

    @property
    def id(self) -> str:
        """Return a stable identifier for logs and JSON payloads."""
        return f"alternative:{self.name}"


@dataclass(frozen=True, slots=True, kw_only=True)
class ServiceEnabled(ProvisioningStep):
    """A systemd unit is enabled and running."""

    unit: str

    @property
    def id(self) -> str:
        """Return a stable identifier for logs and JSON payloads."""
        return f"service:{self.unit}"


@dataclass(frozen=True, slots=True, kw_only=True)
class GroupPresent(ProvisioningStep):
    """A system group exists."""

    group: str

    @property
    def id(self) -> str:
        """Return a stable identifier for logs and JSON payloads."""
        return f"group:{self.group}"


@dataclass(frozen=True, slots=True, kw_only=True)
class UserInGroup(ProvisioningStep):
    """A user is a member of a group."""

    user: str
    group: str

    @property
    def id(self) -> str:
        """Return a stable identifier for logs and JSON payloads."""
        return f"membership:{self.user}:{self.group}"


@dataclass(frozen=True, slots=True, kw_only=True)
class ContainerRuntimeRegistered(ProvisioningStep):
    """A container runtime is registered in the engine's daemon configuration."""

    runtime: str
    engine: str
    config_path: Path
    restart_unit: str

    @property
    def id(self) -> str:
        """Return a stable identifier for logs and JSON payloads."""
        return f"runtime:{self.engine}:{self.runtime}"


class StepOutcome(str, Enum):
    """Outcome of applying a single step."""

    ALREADY_SATISFIED = "already-satisfied"
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def label(self) -> str:
        """Return the wording used in log lines."""
        return self.value.replace("-", " ")


@dataclass(frozen=True, slots=True)
class StepResult:
    """Result of applying one step, consumed by the orchestrator."""

    step: ProvisioningStep
    outcome: StepOutcome
    profile: str = ""
    reason: str | None = None
    error: ProvisioningError | None = None
    duration_ms: int | None = None

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the result aborts the run."""
        return self.outcome is StepOutcome.FAILED

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "profile": self.profile,
            "step": self.step.id,
            "kind": self.step.kind,
            "description": self.step.label(),
            "outcome": self.outcome.value,
        }
        if self.reason:
            payload["reason"] = self.reason
        if self.error is not None:
            payload["error"] = self.error.kind
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        return payload


@dataclass(frozen=True, slots=True)
class ProvisioningProfile:
    """A named, ordered group of steps providing one capability."""

    name: str
    title: str
    steps: tuple[ProvisioningStep, ...]
    architectures: frozenset[str] | None = None
    versions: Mapping[Distribution, frozenset[str]] | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "title": self.title,
            "steps": [step.id for step in self.steps],
            "architectures": sorted(self.architectures) if self.architectures else None,
        }


@dataclass(slots=True)
class RunReport:
    """Ordered results of an orchestrated run."""

    results: list[StepResult] = field(default_factory=list)
    error: ProvisioningError | None = None
    failed_profile: str | None = None

    @property
    def failure(self) -> StepResult | None:
        """Return the failed step result, if any."""
        for result in self.results:
            if result.is_failure:
                return result
        return None

    @property
    def exit_code(self) -> int:
        """Return the process exit code for this run."""
        if self.error is not None:
            return int(self.error.exit_code)
        return int(ExitCode.OK)

    def counts(self) -> dict[str, int]:
        """Return the number of results per outcome."""
        totals = {outcome.value: 0 for outcome in StepOutcome}
        for result in self.results:
            totals[result.outcome.value] += 1
        return totals

    def extend(self, results: Sequence[StepResult]) -> None:
        """Append *results* preserving order."""
        self.results.extend(results)


__all__ = [
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
    "ProvisioningProfile",
    "ProvisioningStep",
    "RepositoryRegistered",
    "RunReport",
    "ServiceEnabled",
    "StepOutcome",
    "StepResult",
    "UserInGroup",
]
