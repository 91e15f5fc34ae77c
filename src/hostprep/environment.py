"""Environment prober: identify the distribution and architecture of the host."""
from __future__ import annotations

import shlex
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import UnsupportedArchitecture, UnsupportedEnvironment
from .providers.apt import AptProvider
from .providers.host import Host

if TYPE_CHECKING:
    from .provisioning.models import ProvisioningProfile


class Distribution(str, Enum):
    """Distributions hostprep knows how to provision."""

    DEBIAN = "debian"
    UBUNTU = "ubuntu"


SUPPORTED_DISTRIBUTIONS = ", ".join(member.value for member in Distribution)

# ``uname -m`` names mapped to dpkg architecture names.
MACHINE_ARCHITECTURES: dict[str, str] = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armhf",
    "i686": "i386",
    "ppc64le": "ppc64el",
    "s390x": "s390x",
}


@dataclass(frozen=True, slots=True)
class SystemProfile:
    """Immutable snapshot of the host identity, probed once per run."""

    distribution: Distribution
    version_id: str
    codename: str
    architecture: str
    kernel_release: str = ""

    @property
    def version_major(self) -> str:
        """Return the major version (``12`` for ``12``, ``22`` for ``22.04``)."""
        return self.version_id.split(".", 1)[0]

    @property
    def version_compact(self) -> str:
        """Return the version without dots (``22.04`` -> ``2204``)."""
        return self.version_id.replace(".", "")

    @property
    def dist_string(self) -> str:
        """Return the NVIDIA-style distribution tag (``ubuntu2204``, ``debian12``)."""
        if self.distribution is Distribution.DEBIAN:
            return f"debian{self.version_major}"
        return f"ubuntu{self.version_compact}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "distribution": self.distribution.value,
            "version_id": self.version_id,
            "codename": self.codename,
            "architecture": self.architecture,
            "kernel_release": self.kernel_release,
        }


def parse_os_release(text: str) -> dict[str, str]:
    """Parse ``os-release`` formatted *text* into a mapping."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw_value = line.partition("=")
        try:
            parts = shlex.split(raw_value)
        except ValueError:
            parts = [raw_value.strip("\"'")]
        values[key.strip()] = parts[0] if parts else ""
    return values


@dataclass(slots=True)
class EnvironmentProber:
    """Read the OS descriptor and platform details; never mutates the host."""

    host: Host
    apt: AptProvider
    os_release_file: Path = Path("/etc/os-release")

    def probe(self) -> SystemProfile:
        """Return the :class:`SystemProfile` for the running host."""
        try:
            content = self.host.read_bytes(self.os_release_file)
        except OSError as exc:
            raise UnsupportedEnvironment(
                f"{self.os_release_file} is not readable: {exc}"
            ) from exc
        if content is None:
            raise UnsupportedEnvironment(
                f"{self.os_release_file} not found; unsupported distribution"
            )
        try:
            fields = parse_os_release(content.decode("utf-8"))
        except UnicodeDecodeError as exc:
            raise UnsupportedEnvironment(
                f"{self.os_release_file} is not valid UTF-8: {exc}"
            ) from exc

        os_id = fields.get("ID", "").strip().lower()
        if not os_id:
            raise UnsupportedEnvironment("Cannot detect distribution ID")
        try:
            distribution = Distribution(os_id)
        except ValueError:
            raise UnsupportedEnvironment(
                f"Unsupported distribution: {os_id}. Supported: {SUPPORTED_DISTRIBUTIONS}."
            ) from None
        version_id = fields.get("VERSION_ID", "").strip()
        if not version_id:
            raise UnsupportedEnvironment("Cannot detect distribution version")
        codename = (
            fields.get("VERSION_CODENAME", "").strip()
            or fields.get("UBUNTU_CODENAME", "").strip()
        )
        if not codename:
            raise UnsupportedEnvironment("Cannot detect distribution codename")

        return SystemProfile(
            distribution=distribution,
            version_id=version_id,
            codename=codename,
            architecture=self.resolve_architecture(),
            kernel_release=self.host.kernel_release(),
        )

    def resolve_architecture(self) -> str:
        """Return the dpkg architecture, falling back to ``uname -m``."""
        architecture = self.apt.architecture()
        if architecture:
            return architecture
        machine = self.host.machine().strip().lower()
        if machine in MACHINE_ARCHITECTURES:
            return MACHINE_ARCHITECTURES[machine]
        raise UnsupportedArchitecture(f"Cannot determine a dpkg architecture for '{machine}'")


def require_architecture(system: SystemProfile, profile: ProvisioningProfile) -> None:
    """Raise :class:`UnsupportedArchitecture` if *profile* cannot run on *system*."""
    allowed = profile.architectures
    if allowed is None or system.architecture in allowed:
        return
    joined = ", ".join(sorted(allowed))
    raise UnsupportedArchitecture(
        f"Unsupported architecture for profile '{profile.name}': {system.architecture}. "
        f"Supported: {joined}."
    )


def require_supported_version(system: SystemProfile, profile: ProvisioningProfile) -> None:
    """Raise :class:`UnsupportedEnvironment` if *profile* excludes this release."""
    if profile.versions is None:
        return
    allowed = profile.versions.get(system.distribution)
    if allowed is None:
        raise UnsupportedEnvironment(
            f"Profile '{profile.name}' does not support {system.distribution.value}."
        )
    if system.version_id in allowed or system.version_major in allowed:
        return
    joined = ", ".join(sorted(allowed))
    raise UnsupportedEnvironment(
        f"Unsupported {system.distribution.value} version for profile '{profile.name}': "
        f"{system.version_id}. Supported: {joined}."
    )


__all__ = [
    "Distribution",
    "EnvironmentProber",
    "MACHINE_ARCHITECTURES",
    "SystemProfile",
    "parse_os_release",
    "require_architecture",
    "require_supported_version",
]
