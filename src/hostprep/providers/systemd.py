"""Systemd provider for enabling and restarting services."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass

from ..errors import CommandError
from .host import Host, describe_failure


class SystemdError(CommandError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Thin wrapper around ``systemctl``."""

    host: Host
    systemctl_bin: str = "systemctl"

    def is_enabled(self, unit: str) -> bool:
        """Return ``True`` when *unit* is enabled."""
        return self._systemctl("is-enabled", unit, check=False).returncode == 0

    def is_active(self, unit: str) -> bool:
        """Return ``True`` when *unit* is running."""
        return self._systemctl("is-active", unit, check=False).returncode == 0

    def has_unit(self, unit: str) -> bool:
        """Return ``True`` when systemd knows a unit file for *unit*."""
        result = self._systemctl("list-unit-files", unit, check=False)
        if result.returncode != 0:
            return False
        return any(
            line.split()[0] == unit
            for line in (result.stdout or "").splitlines()
            if line.strip()
        )

    def enable_now(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Enable and start *unit*."""
        return self._systemctl("enable", "--now", unit)

    def restart(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        return self._systemctl("restart", unit)

    def _systemctl(
        self,
        command: str,
        *args: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        argv = [self.systemctl_bin, command, *args]
        result = self.host.run(argv)
        if check and result.returncode != 0:
            joined = " ".join(argv)
            raise SystemdError(f"{joined} failed ({describe_failure(result)})")
        return result


__all__ = ["SystemdError", "SystemdProvider"]
