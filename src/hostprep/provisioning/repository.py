"""Repository configurator: APT signing keys and source entries."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..errors import (
    FileWriteError,
    KeyFetchError,
    KeyWriteError,
    RepositoryConfigError,
)
from ..providers.download import DearmorError, Downloader, DownloadError
from ..providers.host import Host
from .models import RepositoryRegistered

LOGGER = logging.getLogger(__name__)

DIRECTORY_MODE = 0o755
FILE_MODE = 0o644


class SourceChange(str, Enum):
    """Whether :meth:`RepositoryConfigurator.ensure_source_entry` wrote the file."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"


def normalise_content(content: str) -> bytes:
    """Return *content* newline-terminated and UTF-8 encoded."""
    if not content.endswith("\n"):
        content += "\n"
    return content.encode("utf-8")


@dataclass(slots=True)
class RepositoryConfigurator:
    """Manage keyrings and source-list files, writing only what differs."""

    host: Host
    downloader: Downloader
    tmp_dir: Path = Path("/tmp")  # noqa: S108

    def ensure_keyring(self, url: str, destination: Path, *, dearmor: bool = False) -> bool:
        """Store the key at *url* in *destination* unless a non-empty key is there.

        Returns ``True`` when a key was written.
        """
        try:
            existing = self.host.read_bytes(destination)
        except OSError as exc:
            raise KeyWriteError(f"Cannot read keyring {destination}: {exc}") from exc
        if existing:
            LOGGER.debug("Keyring already present at %s", destination)
            return False

        staging = self.tmp_dir / f"hostprep-{destination.name}.download"
        dearmored = self.tmp_dir / f"hostprep-{destination.name}.gpg"
        try:
            try:
                self.downloader.fetch(url, staging)
                data = self.host.read_bytes(staging)
            except (DownloadError, OSError) as exc:
                raise KeyFetchError(f"Failed to fetch signing key {url}: {exc}") from exc
            if not data:
                raise KeyFetchError(f"Signing key downloaded from {url} is empty")

            if dearmor:
                try:
                    self.downloader.dearmor(staging, dearmored)
                    data = self.host.read_bytes(dearmored)
                except (DearmorError, OSError) as exc:
                    raise KeyWriteError(f"Failed to dearmor key from {url}: {exc}") from exc
                if not data:
                    raise KeyWriteError(f"gpg produced an empty keyring for {url}")

            try:
                self.host.ensure_directory(destination.parent, mode=DIRECTORY_MODE)
                self.host.write_bytes(destination, data, mode=FILE_MODE)
            except OSError as exc:
                raise KeyWriteError(f"Failed to write keyring {destination}: {exc}") from exc
        finally:
            self._discard(staging)
            self._discard(dearmored)
        LOGGER.debug("Stored signing key from %s at %s", url, destination)
        return True

    def ensure_source_entry(self, path: Path, expected: str) -> SourceChange:
        """Write *expected* to *path* only when the current content differs."""
        try:
            return self._ensure_content(path, expected, mode=FILE_MODE)
        except FileWriteError as exc:
            raise RepositoryConfigError(str(exc)) from exc

    def ensure_file(self, path: Path, content: str, *, mode: int = FILE_MODE) -> SourceChange:
        """Write an arbitrary managed file, idempotent by content comparison."""
        return self._ensure_content(path, content, mode=mode)

    def ensure_repository(self, step: RepositoryRegistered) -> bool:
        """Ensure the keyring and source entry for *step*; return ``True`` if anything changed."""
        key_written = self.ensure_keyring(step.key_url, step.keyring_path, dearmor=step.dearmor)
        change = self.ensure_source_entry(step.source_path, step.content)
        return key_written or change is SourceChange.CHANGED

    def _ensure_content(self, path: Path, content: str, *, mode: int) -> SourceChange:
        data = normalise_content(content)
        try:
            if self.host.read_bytes(path) == data:
                return SourceChange.UNCHANGED
            self.host.ensure_directory(path.parent, mode=DIRECTORY_MODE)
            self.host.write_bytes(path, data, mode=mode)
        except OSError as exc:
            raise FileWriteError(f"Failed to write {path}: {exc}") from exc
        LOGGER.debug("Updated %s", path)
        return SourceChange.CHANGED

    def _discard(self, path: Path) -> None:
        try:
            self.host.remove(path)
        except OSError as exc:
            LOGGER.debug("Could not remove staging file %s: %s", path, exc)


__all__ = ["RepositoryConfigurator", "SourceChange", "normalise_content"]
