"""Step executor: apply the minimal action for steps the host does not satisfy."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import urlparse

from ..config import CommandsConfig
from ..environment import SystemProfile
from ..errors import (
    CommandError,
    FileWriteError,
    PackageInstallError,
    PostconditionNotMet,
    ProvisioningError,
)
from ..providers.alternatives import AlternativesProvider
from ..providers.apt import AptProvider
from ..providers.download import Downloader, DownloadError
from ..providers.host import Host, describe_failure
from ..providers.systemd import SystemdProvider
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
    StepOutcome,
    StepResult,
    UserInGroup,
)
from .oracle import IdempotencyOracle
from .repository import DIRECTORY_MODE, RepositoryConfigurator, SourceChange

LOGGER = logging.getLogger(__name__)

Action = Callable[[Any, SystemProfile], None]


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _file_name(url: str) -> str:
    return PurePosixPath(urlparse(url).path).name or "download"


@dataclass(slots=True)
class StepExecutor:
    """Apply provisioning steps, consulting the oracle first.

    The package index is refreshed lazily: once before the first APT install
    and again after anything that changes what APT sees (repositories, pins,
    components or a repository package installed from a ``.deb``).
    """

    oracle: IdempotencyOracle
    host: Host
    apt: AptProvider
    alternatives: AlternativesProvider
    systemd: SystemdProvider
    repositories: RepositoryConfigurator
    downloader: Downloader
    commands: CommandsConfig = field(default_factory=CommandsConfig)
    tmp_dir: Path = Path("/tmp")  # noqa: S108
    _index_current: bool = field(default=False, init=False, repr=False)
    _actions: dict[type[ProvisioningStep], Action] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Register the action for every step variant."""
        self._actions = {
            PackageInstalled: self._install_package,
            FileContentEquals: self._write_file,
            RepositoryRegistered: self._register_repository,
            FileDownloaded: self._download_file,
            FilesCopied: self._copy_files,
            ComponentEnabled: self._enable_component,
            AlternativeSelected: self._select_alternative,
            ServiceEnabled: self._enable_service,
            GroupPresent: self._create_group,
            UserInGroup: self._add_membership,
            ContainerRuntimeRegistered: self._register_runtime,
        }

    def apply(self, step: ProvisioningStep, system: SystemProfile, *, profile: str = "") -> StepResult:
        """Bring the host into the state described by *step*.

        Host-dependent values (such as a JDK location) are resolved first.
        Typed provisioning errors are returned as ``FAILED`` results, or as
        ``SKIPPED`` when the step is best-effort.
        """
        start = time.perf_counter()
        if self.oracle.is_satisfied(step, system):
            return StepResult(
                step=step,
                outcome=StepOutcome.ALREADY_SATISFIED,
                profile=profile,
                duration_ms=_duration_ms(start),
            )
        LOGGER.debug("Applying %s", step.id)
        try:
            concrete = self.oracle.resolve(step)
            action = self._actions.get(type(concrete))
            if action is None:
                raise TypeError(f"No action registered for {concrete.kind}")
            action(concrete, system)
        except ProvisioningError as exc:
            outcome = StepOutcome.FAILED if step.required else StepOutcome.SKIPPED
            LOGGER.debug("%s %s: %s", step.id, outcome.label, exc)
            return StepResult(
                step=step,
                outcome=outcome,
                profile=profile,
                reason=str(exc),
                error=exc,
                duration_ms=_duration_ms(start),
            )
        return StepResult(
            step=step,
            outcome=StepOutcome.APPLIED,
            profile=profile,
            duration_ms=_duration_ms(start),
        )

    def invalidate_index(self) -> None:
        """Force ``apt-get update`` before the next package install."""
        self._index_current = False

    def ensure_index(self) -> None:
        """Refresh the package index unless it is already current."""
        if self._index_current:
            return
        self.apt.update()
        self._index_current = True

    # ------------------------------------------------------------------
    def _install_package(self, step: PackageInstalled, system: SystemProfile) -> None:
        if step.deb_url:
            staging = self.tmp_dir / _file_name(step.deb_url)
            try:
                self.downloader.fetch(step.deb_url, staging)
                self.apt.install_deb(staging)
            finally:
                self._discard(staging)
            self.invalidate_index()
        else:
            self.ensure_index()
            self.apt.install([step.name])

        if self.oracle.package_version_ok(step):
            return
        installed = self.apt.package_status(step.name)
        if installed is None:
            raise PackageInstallError(f"{step.name} is not installed after installation")
        raise PostconditionNotMet(
            f"{step.name} reports version {installed.version}; {step.version} was requested"
        )

    def _write_file(self, step: FileContentEquals, system: SystemProfile) -> None:
        change = self.repositories.ensure_file(step.path, step.content, mode=step.mode)
        if step.refreshes_index and change is SourceChange.CHANGED:
            self.invalidate_index()

    def _register_repository(self, step: RepositoryRegistered, system: SystemProfile) -> None:
        if self.repositories.ensure_repository(step):
            self.invalidate_index()

    def _download_file(self, step: FileDownloaded, system: SystemProfile) -> None:
        staging = self.tmp_dir / f"hostprep-{step.path.name}.download"
        try:
            self.downloader.fetch(step.url, staging)
            try:
                data = self.host.read_bytes(staging)
            except OSError as exc:
                raise DownloadError(f"Cannot read downloaded {step.url}: {exc}") from exc
            if not data:
                raise DownloadError(f"Download of {step.url} is empty")
            try:
                self.host.ensure_directory(step.path.parent, mode=DIRECTORY_MODE)
                self.host.write_bytes(step.path, data, mode=step.mode)
            except OSError as exc:
                raise FileWriteError(f"Failed to write {step.path}: {exc}") from exc
        finally:
            self._discard(staging)
        if step.refreshes_index:
            self.invalidate_index()

    def _copy_files(self, step: FilesCopied, system: SystemProfile) -> None:
        sources = self.host.glob(step.pattern)
        if not sources:
            raise PostconditionNotMet(f"No files match {step.pattern}")
        try:
            self.host.ensure_directory(step.destination, mode=DIRECTORY_MODE)
            for source in sources:
                data = self.host.read_bytes(source)
                if data is None:
                    raise FileWriteError(f"{source} disappeared while copying")
                self.host.write_bytes(step.destination / source.name, data, mode=step.mode)
        except OSError as exc:
            raise FileWriteError(f"Failed to copy {step.pattern} to {step.destination}: {exc}") from exc
        self.invalidate_index()

    def _enable_component(self, step: ComponentEnabled, system: SystemProfile) -> None:
        self._command([self.commands.add_apt_repository, "-y", step.component])
        self.invalidate_index()

    def _select_alternative(self, step: AlternativeSelected, system: SystemProfile) -> None:
        target = step.target
        if target is None:
            raise PostconditionNotMet(f"No target known for alternative {step.name}")
        status = self.alternatives.query(step.name)
        if status is None or not status.has_target(target):
            self.alternatives.install(step.link, step.name, target, step.priority)
        self.alternatives.set(step.name, target)
        if not self.oracle.alternative_version_ok(step):
            command = " ".join(step.version_command or ())
            raise PostconditionNotMet(
                f"{command} does not report version {step.expected_version} "
                f"after selecting {target}"
            )

    def _enable_service(self, step: ServiceEnabled, system: SystemProfile) -> None:
        self.systemd.enable_now(step.unit)

    def _create_group(self, step: GroupPresent, system: SystemProfile) -> None:
        self._command([self.commands.groupadd, "-f", step.group])

    def _add_membership(self, step: UserInGroup, system: SystemProfile) -> None:
        if self.host.user_groups(step.user) is None:
            raise CommandError(f"User {step.user} does not exist")
        self._command([self.commands.usermod, "-aG", step.group, step.user])
        LOGGER.info("Added %s to %s; a new login is required to pick it up", step.user, step.group)

    def _register_runtime(self, step: ContainerRuntimeRegistered, system: SystemProfile) -> None:
        missing = [
            name
            for name in (self.commands.nvidia_ctk, step.engine)
            if self.host.which(name) is None
        ]
        if missing:
            raise CommandError(f"Cannot configure {step.runtime} runtime; not found: {', '.join(missing)}")
        self._command(
            [self.commands.nvidia_ctk, "runtime", "configure", f"--runtime={step.engine}"]
        )
        if self.systemd.has_unit(step.restart_unit):
            self.systemd.restart(step.restart_unit)

    def _command(self, argv: Sequence[str]) -> None:
        result = self.host.run(argv)
        if result.returncode != 0:
            joined = " ".join(argv)
            raise CommandError(f"{joined} failed ({describe_failure(result)})")

    def _discard(self, path: Path) -> None:
        try:
            self.host.remove(path)
        except OSError as exc:
            LOGGER.debug("Could not remove staging file %s: %s", path, exc)


__all__ = ["StepExecutor"]
