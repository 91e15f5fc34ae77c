"""Wrappers around the commands hostprep drives on the host."""
from __future__ import annotations

from .alternatives import AlternativesError, AlternativesProvider, AlternativeStatus
from .apt import AptProvider, InstalledPackage, upstream_release, version_matches
from .download import DearmorError, Downloader, DownloadError
from .host import Host, LocalHost, describe_failure
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "AlternativeStatus",
    "AlternativesError",
    "AlternativesProvider",
    "AptProvider",
    "DearmorError",
    "DownloadError",
    "Downloader",
    "Host",
    "InstalledPackage",
    "LocalHost",
    "SystemdError",
    "SystemdProvider",
    "describe_failure",
    "upstream_release",
    "version_matches",
]
