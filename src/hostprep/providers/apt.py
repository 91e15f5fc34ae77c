"""APT and dpkg provider."""
from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

from ..errors import PackageInstallError
from .host import Host, describe_failure

LOGGER = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
INSTALLED_STATUS = "install ok installed"
_STATUS_FORMAT = "${Status}|${Version}\\n"
_UPSTREAM_RE = re.compile(r"^(\d+(?:\.\d+)*)")


@dataclass(frozen=True, slots=True)
class InstalledPackage:
    """A package recorded as installed in the dpkg database."""

    name: str
    version: str


def upstream_release(version: str) -> tuple[int, ...] | None:
    """Return the numeric release tuple of a Debian version string.

    The epoch (``1:``) and everything after the leading dotted number are
    ignored, so ``1:12.4.131-1`` yields ``(12, 4, 131)``.
    """
    text = version.strip()
    if ":" in text:
        text = text.split(":", 1)[1]
    match = _UPSTREAM_RE.match(text)
    if match is None:
        return None
    try:
        return Version(match.group(1)).release
    except InvalidVersion:
        return None


def version_matches(installed: str, requested: str) -> bool:
    """Return ``True`` when *installed* satisfies the *requested* version.

    Matching is component-wise on the requested precision: ``17`` accepts
    ``17.0.9+9-1`` but not ``11.0.21`` or ``170.1``.
    """
    wanted = upstream_release(requested)
    found = upstream_release(installed)
    if wanted is None or found is None:
        return installed.strip() == requested.strip()
    return found[: len(wanted)] == wanted


@dataclass(slots=True)
class AptProvider:
    """Query the dpkg database and drive ``apt-get``/``dpkg`` installs."""

    host: Host
    apt_get_bin: str = "apt-get"
    dpkg_bin: str = "dpkg"
    dpkg_query_bin: str = "dpkg-query"
    retries: int = 3

    def package_status(self, name: str) -> InstalledPackage | None:
        """Return the installed package record for *name*, if installed."""
        result = self.host.run([self.dpkg_query_bin, "-W", f"-f={_STATUS_FORMAT}", name])
        if result.returncode != 0:
            return None
        for line in (result.stdout or "").splitlines():
            status, _, version = line.partition("|")
            if status.strip() == INSTALLED_STATUS:
                return InstalledPackage(name=name, version=version.strip())
        return None

    def package_files(self, name: str) -> list[Path]:
        """Return the paths ``dpkg -L`` lists for *name* (empty when not installed)."""
        result = self.host.run([self.dpkg_bin, "-L", name])
        if result.returncode != 0:
            return []
        return [
            Path(line.strip())
            for line in (result.stdout or "").splitlines()
            if line.startswith("/")
        ]

    def architecture(self) -> str | None:
        """Return the dpkg architecture (``amd64``), or ``None`` if unavailable."""
        result = self.host.run([self.dpkg_bin, "--print-architecture"])
        if result.returncode != 0:
            return None
        value = (result.stdout or "").strip()
        return value or None

    def update(self) -> None:
        """Refresh the package index."""
        LOGGER.debug("Refreshing APT package index")
        self._run(
            [self.apt_get_bin, *self._retry_options(), "update", "-y"],
            error_prefix="apt-get update",
        )

    def install(self, names: Sequence[str]) -> None:
        """Install *names* non-interactively."""
        LOGGER.debug("Installing packages: %s", ", ".join(names))
        self._run(
            [self.apt_get_bin, *self._retry_options(), "install", "-y", *names],
            error_prefix=f"apt-get install {' '.join(names)}",
        )

    def install_deb(self, path: Path) -> None:
        """Install a local ``.deb`` archive."""
        self._run([self.dpkg_bin, "-i", str(path)], error_prefix=f"dpkg -i {path}")

    def _retry_options(self) -> list[str]:
        return ["-o", f"Acquire::Retries={self.retries}"]

    def _run(self, args: Sequence[str], *, error_prefix: str) -> subprocess.CompletedProcess[str]:
        result = self.host.run(args, env=APT_ENV)
        if result.returncode != 0:
            raise PackageInstallError(f"{error_prefix} failed ({describe_failure(result)})")
        return result


__all__ = [
    "APT_ENV",
    "AptProvider",
    "InstalledPackage",
    "upstream_release",
    "version_matches",
]
