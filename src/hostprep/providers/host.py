"""Host capability: the single seam between hostprep and the operating system.

Everything the provisioning engine reads from or changes on the machine goes
through a :class:`Host`. :class:`LocalHost` talks to the real system; tests
substitute an in-memory implementation.
"""
from __future__ import annotations

import glob
import grp
import os
import platform
import pwd
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol

COMMAND_NOT_FOUND = 127


class Host(Protocol):
    """Query and mutate interface over the target machine."""

    def read_bytes(self, path: Path) -> bytes | None:
        """Return the file content, or ``None`` when the file does not exist."""
        ...

    def write_bytes(self, path: Path, data: bytes, *, mode: int) -> None:
        """Atomically replace *path* with *data* and apply *mode*."""
        ...

    def ensure_directory(self, path: Path, *, mode: int) -> None:
        """Create *path* (and parents) if missing and apply *mode*."""
        ...

    def remove(self, path: Path) -> None:
        """Delete *path* if it exists."""
        ...

    def glob(self, pattern: str) -> list[Path]:
        """Return sorted paths matching *pattern*."""
        ...

    def is_executable(self, path: Path) -> bool:
        """Return ``True`` when *path* is a regular file the process may execute."""
        ...

    def run(
        self,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a command to completion and capture its output."""
        ...

    def which(self, name: str) -> str | None:
        """Return the resolved executable path for *name*, if any."""
        ...

    def group_exists(self, group: str) -> bool:
        """Return ``True`` when *group* exists in the group database."""
        ...

    def user_groups(self, user: str) -> frozenset[str] | None:
        """Return every group *user* belongs to, or ``None`` for unknown users."""
        ...

    def effective_uid(self) -> int:
        """Return the effective uid of the running process."""
        ...

    def machine(self) -> str:
        """Return the kernel machine name (``uname -m``)."""
        ...

    def kernel_release(self) -> str:
        """Return the running kernel release (``uname -r``)."""
        ...


class LocalHost:
    """:class:`Host` implementation backed by the running system."""

    def read_bytes(self, path: Path) -> bytes | None:
        """Return the file content, or ``None`` when the file does not exist."""
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def write_bytes(self, path: Path, data: bytes, *, mode: int) -> None:
        """Atomically replace *path* with *data* and apply *mode*."""
        path.parent.mkdir(parents=True, exist_ok=True)
        temp = path.with_name(f".{path.name}.hostprep-tmp")
        try:
            temp.write_bytes(data)
            temp.chmod(mode)
            temp.replace(path)
        finally:
            if temp.exists():
                temp.unlink()

    def ensure_directory(self, path: Path, *, mode: int) -> None:
        """Create *path* (and parents) if missing and apply *mode*."""
        path.mkdir(parents=True, exist_ok=True)
        path.chmod(mode)

    def remove(self, path: Path) -> None:
        """Delete *path* if it exists."""
        path.unlink(missing_ok=True)

    def glob(self, pattern: str) -> list[Path]:
        """Return sorted paths matching *pattern*."""
        return [Path(match) for match in sorted(glob.glob(pattern))]

    def is_executable(self, path: Path) -> bool:
        """Return ``True`` when *path* is a regular file the process may execute."""
        return path.is_file() and os.access(path, os.X_OK)

    def run(
        self,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a command to completion and capture its output.

        A missing executable is reported as exit status 127, mirroring the
        shell, so callers handle it like any other failed command.
        """
        env_vars = os.environ.copy()
        if env:
            env_vars.update(env)
        try:
            return subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                env=env_vars,
            )
        except FileNotFoundError as exc:
            return subprocess.CompletedProcess(
                list(args),
                returncode=COMMAND_NOT_FOUND,
                stdout="",
                stderr=f"{args[0]}: not found ({exc})",
            )

    def which(self, name: str) -> str | None:
        """Return the resolved executable path for *name*, if any."""
        return shutil.which(name)

    def group_exists(self, group: str) -> bool:
        """Return ``True`` when *group* exists in the group database."""
        try:
            grp.getgrnam(group)
        except KeyError:
            return False
        return True

    def user_groups(self, user: str) -> frozenset[str] | None:
        """Return every group *user* belongs to, or ``None`` for unknown users."""
        try:
            pw_entry = pwd.getpwnam(user)
        except KeyError:
            return None
        names = {entry.gr_name for entry in grp.getgrall() if user in entry.gr_mem}
        try:
            names.add(grp.getgrgid(pw_entry.pw_gid).gr_name)
        except KeyError:
            pass
        return frozenset(names)

    def effective_uid(self) -> int:
        """Return the effective uid of the running process."""
        return os.geteuid()

    def machine(self) -> str:
        """Return the kernel machine name (``uname -m``)."""
        return platform.machine()

    def kernel_release(self) -> str:
        """Return the running kernel release (``uname -r``)."""
        return platform.release()


def describe_failure(result: subprocess.CompletedProcess[str]) -> str:
    """Summarise a failed command for error messages."""
    stdout = (getattr(result, "stdout", "") or "").strip()
    stderr = (getattr(result, "stderr", "") or "").strip()
    message = stderr or stdout or "no output"
    return f"exit {result.returncode}: {message}"


__all__ = ["COMMAND_NOT_FOUND", "Host", "LocalHost", "describe_failure"]
