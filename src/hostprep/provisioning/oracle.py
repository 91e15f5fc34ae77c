"""Idempotency oracle: decide whether the host already satisfies a step.

The oracle only reads. Any error raised while querying the host is treated as
"not satisfied" so the executor attempts the step and surfaces a concrete
failure from the action itself.
"""
from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..environment import SystemProfile
from ..errors import ProvisioningError
from ..providers.alternatives import AlternativesProvider
from ..providers.apt import AptProvider, version_matches
from ..providers.host import Host
from ..providers.systemd import SystemdProvider
from .jdk import JdkLocator
from .models import (
    AlternativeSelected,
    ComponentEnabled,
    ContainerRuntimeRegistered,
    FileContentEquals,
    FileDownloaded,
    FilesCopied,
    GroupPresent,
    PackageInstalled,
    ProvisioningStep,
    RepositoryRegistered,
    ServiceEnabled,
    UserInGroup,
)
from .repository import normalise_content

LOGGER = logging.getLogger(__name__)

Check = Callable[[Any, SystemProfile], bool]


def reported_version(host: Host, command: Iterable[str], pattern: str) -> str | None:
    """Run *command* and extract a version string with *pattern*.

    Both output streams are searched; ``java -version`` writes to stderr.
    """
    result = host.run(list(command))
    if result.returncode != 0:
        return None
    output = f"{result.stdout or ''}\n{result.stderr or ''}"
    match = re.search(pattern, output)
    if match is None:
        return None
    return match.group(1) if match.groups() else match.group(0)


def source_lines(content: bytes | None) -> set[str]:
    """Return the lines of a source file, or an empty set when it is missing."""
    if content is None:
        return set()
    return set(content.decode("utf-8").splitlines())


@dataclass(slots=True)
class IdempotencyOracle:
    """Answer "is this step already satisfied?" without side effects."""

    host: Host
    apt: AptProvider
    alternatives: AlternativesProvider
    systemd: SystemdProvider
    sources_list: Path = Path("/etc/apt/sources.list")
    sources_dir: Path = Path("/etc/apt/sources.list.d")
    jdk_locator: JdkLocator | None = None
    _checks: dict[type[ProvisioningStep], Check] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Register the check for every step variant."""
        self._checks = {
            PackageInstalled: self._package_installed,
            FileContentEquals: self._file_content_equals,
            RepositoryRegistered: self._repository_registered,
            FileDownloaded: self._file_downloaded,
            FilesCopied: self._files_copied,
            ComponentEnabled: self._component_enabled,
            AlternativeSelected: self._alternative_selected,
            ServiceEnabled: self._service_enabled,
            GroupPresent: self._group_present,
            UserInGroup: self._user_in_group,
            ContainerRuntimeRegistered: self._runtime_registered,
        }

    def resolve(self, step: ProvisioningStep) -> ProvisioningStep:
        """Return *step* with values that depend on the host filled in."""
        if self.jdk_locator is None:
            return step
        return self.jdk_locator.resolve(step)

    def is_satisfied(self, step: ProvisioningStep, system: SystemProfile) -> bool:
        """Return ``True`` when *step* needs no action on this host."""
        try:
            concrete = self.resolve(step)
        except (OSError, ProvisioningError) as exc:
            LOGGER.debug("Cannot resolve %s yet; treating as unsatisfied: %s", step.id, exc)
            return False
        check = self._checks.get(type(concrete))
        if check is None:
            raise TypeError(f"No idempotency check registered for {concrete.kind}")
        try:
            return check(concrete, system)
        except (OSError, ValueError, ProvisioningError) as exc:
            LOGGER.debug("Check for %s failed; treating as unsatisfied: %s", step.id, exc)
            return False

    def package_version_ok(self, step: PackageInstalled) -> bool:
        """Return ``True`` when the dpkg record satisfies *step* (ignores ``provided_by``)."""
        installed = self.apt.package_status(step.name)
        if installed is None:
            return False
        if step.version is None:
            return True
        return version_matches(installed.version, step.version)

    def alternative_version_ok(self, step: AlternativeSelected) -> bool:
        """Return ``True`` when the selected executable reports the expected version."""
        if step.version_command is None or step.expected_version is None:
            return True
        found = reported_version(self.host, step.version_command, step.version_pattern)
        return found is not None and version_matches(found, step.expected_version)

    # ------------------------------------------------------------------
    def _package_installed(self, step: PackageInstalled, system: SystemProfile) -> bool:
        if step.provided_by and step.version is None and self.host.which(step.provided_by):
            return True
        return self.package_version_ok(step)

    def _file_content_equals(self, step: FileContentEquals, system: SystemProfile) -> bool:
        return self.host.read_bytes(step.path) == normalise_content(step.content)

    def _repository_registered(self, step: RepositoryRegistered, system: SystemProfile) -> bool:
        if not self.host.read_bytes(step.keyring_path):
            return False
        present = source_lines(self.host.read_bytes(step.source_path))
        return all(line in present for line in step.lines)

    def _file_downloaded(self, step: FileDownloaded, system: SystemProfile) -> bool:
        return bool(self.host.read_bytes(step.path))

    def _files_copied(self, step: FilesCopied, system: SystemProfile) -> bool:
        sources = self.host.glob(step.pattern)
        if not sources:
            return False
        for source in sources:
            copied = self.host.read_bytes(step.destination / source.name)
            if copied is None or copied != self.host.read_bytes(source):
                return False
        return True

    def _component_enabled(self, step: ComponentEnabled, system: SystemProfile) -> bool:
        files = [self.sources_list]
        files.extend(self.host.glob(str(self.sources_dir / "*.list")))
        deb822 = self.host.glob(str(self.sources_dir / "*.sources"))
        for path in files:
            for line in source_lines(self.host.read_bytes(path)):
                if step.component in _one_line_components(line):
                    return True
        for path in deb822:
            for line in source_lines(self.host.read_bytes(path)):
                key, _, value = line.partition(":")
                if key.strip() == "Components" and step.component in value.split():
                    return True
        return False

    def _alternative_selected(self, step: AlternativeSelected, system: SystemProfile) -> bool:
        status = self.alternatives.query(step.name)
        if status is None or status.value != step.target:
            return False
        return self.alternative_version_ok(step)

    def _service_enabled(self, step: ServiceEnabled, system: SystemProfile) -> bool:
        return self.systemd.is_enabled(step.unit) and self.systemd.is_active(step.unit)

    def _group_present(self, step: GroupPresent, system: SystemProfile) -> bool:
        return self.host.group_exists(step.group)

    def _user_in_group(self, step: UserInGroup, system: SystemProfile) -> bool:
        groups = self.host.user_groups(step.user)
        return groups is not None and step.group in groups

    def _runtime_registered(
        self,
        step: ContainerRuntimeRegistered,
        system: SystemProfile,
    ) -> bool:
        content = self.host.read_bytes(step.config_path)
        if not content:
            return False
        payload = json.loads(content.decode("utf-8"))
        runtimes = payload.get("runtimes") if isinstance(payload, dict) else None
        return isinstance(runtimes, dict) and step.runtime in runtimes


def _one_line_components(line: str) -> list[str]:
    """Return the components of a one-line ``deb`` entry (empty for anything else)."""
    text = line.split("#", 1)[0].strip()
    if not text.startswith("deb "):
        return []
    text = text[4:].strip()
    if text.startswith("["):
        _, _, text = text.partition("]")
    parts = text.split()
    # uri, suite, components...
    return parts[2:]


__all__ = ["IdempotencyOracle", "reported_version", "source_lines"]
