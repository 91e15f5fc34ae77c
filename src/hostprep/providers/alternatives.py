"""Provider for the Debian ``update-alternatives`` system."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import CommandError
from .host import Host, describe_failure


class AlternativesError(CommandError):
    """Raised when ``update-alternatives`` fails."""


@dataclass(frozen=True, slots=True)
class AlternativeStatus:
    """Parsed ``update-alternatives --query`` output."""

    name: str
    value: Path | None
    alternatives: tuple[Path, ...] = field(default_factory=tuple)

    def has_target(self, target: Path) -> bool:
        """Return ``True`` when *target* is registered for this group."""
        return target in self.alternatives


@dataclass(slots=True)
class AlternativesProvider:
    """Register and select alternatives non-interactively."""

    host: Host
    update_alternatives_bin: str = "update-alternatives"

    def query(self, name: str) -> AlternativeStatus | None:
        """Return the status of the *name* group, or ``None`` if it does not exist."""
        result = self.host.run([self.update_alternatives_bin, "--query", name])
        if result.returncode != 0:
            return None
        value: Path | None = None
        alternatives: list[Path] = []
        for line in (result.stdout or "").splitlines():
            key, _, raw = line.partition(":")
            raw = raw.strip()
            if key == "Value" and raw and raw != "none":
                value = Path(raw)
            elif key == "Alternative" and raw:
                alternatives.append(Path(raw))
        return AlternativeStatus(name=name, value=value, alternatives=tuple(alternatives))

    def install(self, link: Path, name: str, target: Path, priority: int) -> None:
        """Register *target* in the *name* group."""
        self._run(["--install", str(link), name, str(target), str(priority)])

    def set(self, name: str, target: Path) -> None:
        """Select *target* for the *name* group."""
        self._run(["--set", name, str(target)])

    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        argv = [self.update_alternatives_bin, *args]
        result = self.host.run(argv)
        if result.returncode != 0:
            joined = " ".join(argv)
            raise AlternativesError(f"{joined} failed ({describe_failure(result)})")
        return result


__all__ = ["AlternativeStatus", "AlternativesError", "AlternativesProvider"]
