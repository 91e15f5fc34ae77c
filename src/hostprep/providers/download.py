"""Download helpers built on ``curl`` and ``gpg``."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..errors import CommandError
from .host import Host, describe_failure

LOGGER = logging.getLogger(__name__)


class DownloadError(CommandError):
    """Raised when a remote resource cannot be fetched."""


class DearmorError(CommandError):
    """Raised when an ASCII-armoured key cannot be converted."""


@dataclass(slots=True)
class Downloader:
    """Fetch remote files with a bounded, fixed-delay retry policy."""

    host: Host
    curl_bin: str = "curl"
    gpg_bin: str = "gpg"
    retries: int = 3
    retry_delay: int = 2
    connect_timeout: int = 30

    def fetch(self, url: str, destination: Path) -> None:
        """Download *url* into *destination*; non-2xx responses are failures."""
        argv = [
            self.curl_bin,
            "-fsSL",
            "--retry",
            str(self.retries),
            "--retry-delay",
            str(self.retry_delay),
            "--connect-timeout",
            str(self.connect_timeout),
            "-o",
            str(destination),
            url,
        ]
        LOGGER.debug("Downloading %s -> %s", url, destination)
        result = self.host.run(argv)
        if result.returncode != 0:
            raise DownloadError(f"Download of {url} failed ({describe_failure(result)})")

    def dearmor(self, source: Path, destination: Path) -> None:
        """Convert an ASCII-armoured key at *source* into a binary keyring."""
        argv = [self.gpg_bin, "--batch", "--yes", "--dearmor", "-o", str(destination), str(source)]
        result = self.host.run(argv)
        if result.returncode != 0:
            raise DearmorError(f"gpg --dearmor of {source} failed ({describe_failure(result)})")


__all__ = ["DearmorError", "DownloadError", "Downloader"]
