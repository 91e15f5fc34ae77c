"""Pytest configuration helpers for the test suite.

Provides :class:`FakeHost`, an in-memory implementation of the host capability
that simulates the commands hostprep drives (dpkg, apt-get, curl, gpg,
update-alternatives, systemctl, groupadd, usermod, add-apt-repository and
nvidia-ctk).
"""

from __future__ import annotations

import fnmatch
import json
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest

from hostprep.cli import RuntimeContext, build_runtime
from hostprep.config import AppConfig, load_config
from hostprep.environment import Distribution, SystemProfile

DEBIAN_12 = (
    'PRETTY_NAME="Debian GNU/Linux 12 (bookworm)"\n'
    'NAME="Debian GNU/Linux"\n'
    'VERSION_ID="12"\n'
    'VERSION="12 (bookworm)"\n'
    "VERSION_CODENAME=bookworm\n"
    "ID=debian\n"
)

UBUNTU_2204 = (
    'PRETTY_NAME="Ubuntu 22.04.4 LTS"\n'
    'NAME="Ubuntu"\n'
    'VERSION_ID="22.04"\n'
    'VERSION="22.04.4 LTS (Jammy Jellyfish)"\n'
    "VERSION_CODENAME=jammy\n"
    "ID=ubuntu\n"
    "ID_LIKE=debian\n"
    "UBUNTU_CODENAME=jammy\n"
)

FEDORA_40 = 'NAME="Fedora Linux"\nVERSION_ID=40\nID=fedora\nVERSION_CODENAME=""\n'

OS_RELEASE = Path("/etc/os-release")
SOURCES_LIST = Path("/etc/apt/sources.list")
DAEMON_JSON = Path("/etc/docker/daemon.json")


def _result(
    argv: Sequence[str],
    returncode: int = 0,
    stdout: str = "",
    stderr: str = "",
) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(list(argv), returncode, stdout=stdout, stderr=stderr)


class FakeHost:
    """In-memory :class:`hostprep.providers.host.Host` used across the tests."""

    def __init__(self, os_release: str = DEBIAN_12) -> None:
        """Create a root-owned amd64 host with an empty package database."""
        self.files: dict[Path, bytes] = {OS_RELEASE: os_release.encode("utf-8")}
        self.modes: dict[Path, int] = {}
        self.directories: dict[Path, int] = {}
        self.writes: list[Path] = []
        self.readonly: set[Path] = set()
        self.commands: list[list[str]] = []
        self.uid = 0
        self.machine_name = "x86_64"
        self.kernel = "6.1.0-18-amd64"
        self.dpkg_architecture: str | None = "amd64"
        # name -> installed version
        self.packages: dict[str, str] = {}
        # name -> version apt-get would install
        self.available: dict[str, str] = {}
        # package -> executable that appears on PATH once installed
        self.package_executables: dict[str, str] = {}
        # .deb file name -> (package, version, files unpacked by the package)
        self.debs: dict[str, tuple[str, str, dict[Path, bytes]]] = {}
        # package -> files unpacked by apt-get install and listed by dpkg -L
        self.package_contents: dict[str, dict[Path, bytes]] = {}
        self.executables: set[str] = set()
        self.remote: dict[str, bytes] = {}
        self.users: set[str] = {"root"}
        self.groups: dict[str, set[str]] = {"root": set()}
        # alternatives name -> (selected target, registered targets)
        self.alternatives: dict[str, tuple[Path | None, list[Path]]] = {}
        # alternative target -> text printed by "<name> -version"
        self.version_output: dict[Path, str] = {}
        self.enabled_units: set[str] = set()
        self.active_units: set[str] = set()
        self.unit_files: set[str] = set()
        self.restarted: list[str] = []
        self.apt_updates = 0
        self.failing: set[str] = set()

    # -- filesystem ---------------------------------------------------
    def read_bytes(self, path: Path) -> bytes | None:
        """Return the stored content of *path*."""
        return self.files.get(path)

    def write_bytes(self, path: Path, data: bytes, *, mode: int) -> None:
        """Store *data* at *path*."""
        if path in self.readonly or path.parent in self.readonly:
            raise PermissionError(13, "Permission denied", str(path))
        self.files[path] = data
        self.modes[path] = mode
        self.writes.append(path)

    def ensure_directory(self, path: Path, *, mode: int) -> None:
        """Record the directory and its mode."""
        if path in self.readonly:
            raise PermissionError(13, "Permission denied", str(path))
        self.directories[path] = mode

    def remove(self, path: Path) -> None:
        """Forget *path*."""
        self.files.pop(path, None)

    def glob(self, pattern: str) -> list[Path]:
        """Match stored files against *pattern*."""
        return sorted(path for path in self.files if fnmatch.fnmatch(str(path), pattern))

    def is_executable(self, path: Path) -> bool:
        """Treat every stored file as executable."""
        return path in self.files

    # -- identity -----------------------------------------------------
    def which(self, name: str) -> str | None:
        """Return a fake path for known executables."""
        return f"/usr/bin/{name}" if name in self.executables else None

    def group_exists(self, group: str) -> bool:
        """Return ``True`` for known groups."""
        return group in self.groups

    def user_groups(self, user: str) -> frozenset[str] | None:
        """Return the groups of *user*, including the personal group."""
        if user not in self.users:
            return None
        names = {name for name, members in self.groups.items() if user in members}
        names.add(user)
        return frozenset(names)

    def effective_uid(self) -> int:
        """Return the configured uid."""
        return self.uid

    def machine(self) -> str:
        """Return the configured machine name."""
        return self.machine_name

    def kernel_release(self) -> str:
        """Return the configured kernel release."""
        return self.kernel

    # -- commands -----------------------------------------------------
    def run(
        self,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Dispatch *args* to the matching simulated command."""
        argv = list(args)
        self.commands.append(argv)
        name = Path(argv[0]).name
        if name in self.failing:
            return _result(argv, 1, stderr=f"{name}: simulated failure")
        handler = getattr(self, "_cmd_" + name.replace("-", "_"), None)
        if handler is None:
            return _result(argv, 127, stderr=f"{name}: not found")
        return handler(argv)

    def ran(self, prefix: str) -> list[list[str]]:
        """Return the recorded commands whose joined text starts with *prefix*."""
        return [argv for argv in self.commands if " ".join(argv).startswith(prefix)]

    def _install(self, package: str, version: str) -> None:
        self.packages[package] = version
        self.files.update(self.package_contents.get(package, {}))
        executable = self.package_executables.get(package)
        if executable:
            self.executables.add(executable)

    def _cmd_dpkg_query(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        package = argv[-1]
        if package not in self.packages:
            return _result(argv, 1, stderr=f"dpkg-query: no packages found matching {package}")
        return _result(argv, stdout=f"install ok installed|{self.packages[package]}\n")

    def _cmd_dpkg(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        if argv[1] == "--print-architecture":
            if self.dpkg_architecture is None:
                return _result(argv, 127, stderr="dpkg: not found")
            return _result(argv, stdout=f"{self.dpkg_architecture}\n")
        if argv[1] == "-i":
            path = Path(argv[2])
            if path not in self.files or path.name not in self.debs:
                return _result(argv, 2, stderr=f"dpkg: error: cannot access archive '{path}'")
            package, version, unpacked = self.debs[path.name]
            self._install(package, version)
            self.files.update(unpacked)
            return _result(argv)
        if argv[1] == "-L":
            package = argv[2]
            if package not in self.packages:
                return _result(argv, 1, stderr=f"dpkg-query: package '{package}' is not installed")
            listed = ["/.", *(str(path) for path in sorted(self.package_contents.get(package, {})))]
            return _result(argv, stdout="\n".join(listed) + "\n")
        return _result(argv, 2, stderr="dpkg: unsupported")

    def _cmd_apt_get(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        if "update" in argv:
            self.apt_updates += 1
            return _result(argv)
        index = argv.index("install")
        names = [item for item in argv[index + 1 :] if not item.startswith("-")]
        missing = [item for item in names if item not in self.available]
        if missing:
            return _result(argv, 100, stderr=f"E: Unable to locate package {missing[0]}")
        for package in names:
            self._install(package, self.available[package])
        return _result(argv)

    def _cmd_curl(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        url = argv[-1]
        destination = Path(argv[argv.index("-o") + 1])
        if url not in self.remote:
            return _result(argv, 22, stderr="curl: (22) The requested URL returned error: 404")
        self.files[destination] = self.remote[url]
        return _result(argv)

    def _cmd_gpg(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        destination = Path(argv[argv.index("-o") + 1])
        source = self.files.get(Path(argv[-1]))
        if not source:
            return _result(argv, 2, stderr="gpg: no valid OpenPGP data found.")
        self.files[destination] = b"binary:" + source
        return _result(argv)

    def _cmd_update_alternatives(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        action = argv[1]
        if action == "--query":
            entry = self.alternatives.get(argv[2])
            if entry is None:
                return _result(argv, 2, stderr=f"update-alternatives: error: no alternatives for {argv[2]}")
            value, targets = entry
            lines = [f"Name: {argv[2]}", "Status: manual", f"Value: {value or 'none'}", ""]
            for target in targets:
                lines.extend([f"Alternative: {target}", "Priority: 100", ""])
            return _result(argv, stdout="\n".join(lines))
        if action == "--install":
            _, name, target = argv[2], argv[3], Path(argv[4])
            value, targets = self.alternatives.get(name, (None, []))
            if target not in targets:
                targets = [*targets, target]
            self.alternatives[name] = (value or target, targets)
            return _result(argv)
        if action == "--set":
            name, target = argv[2], Path(argv[3])
            value, targets = self.alternatives.get(name, (None, []))
            if target not in targets:
                return _result(argv, 2, stderr=f"update-alternatives: error: alternative {target} for {name} not registered")
            self.alternatives[name] = (target, targets)
            return _result(argv)
        return _result(argv, 2, stderr="update-alternatives: unsupported")

    def _version(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        selected = self.alternatives.get(argv[0], (None, []))[0]
        output = self.version_output.get(selected) if selected else None
        if output is None:
            return _result(argv, 127, stderr=f"{argv[0]}: not found")
        return _result(argv, stderr=output)

    _cmd_java = _version
    _cmd_javac = _version

    def _cmd_systemctl(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        action, unit = argv[1], argv[-1]
        if action == "is-enabled":
            return _result(argv, 0 if unit in self.enabled_units else 1)
        if action == "is-active":
            return _result(argv, 0 if unit in self.active_units else 3)
        if action == "enable":
            self.enabled_units.add(unit)
            self.active_units.add(unit)
            return _result(argv)
        if action == "list-unit-files":
            if unit not in self.unit_files:
                return _result(argv, 1, stdout="0 unit files listed.\n")
            return _result(argv, stdout=f"{unit} enabled enabled\n\n1 unit files listed.\n")
        if action == "restart":
            self.restarted.append(unit)
            return _result(argv)
        return _result(argv, 1, stderr="systemctl: unsupported")

    def _cmd_groupadd(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        self.groups.setdefault(argv[-1], set())
        return _result(argv)

    def _cmd_usermod(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        group, user = argv[-2], argv[-1]
        if user not in self.users or group not in self.groups:
            return _result(argv, 6, stderr=f"usermod: user '{user}' does not exist")
        self.groups[group].add(user)
        return _result(argv)

    def _cmd_add_apt_repository(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        component = argv[-1]
        current = self.files.get(SOURCES_LIST, b"").decode("utf-8")
        line = f"deb http://deb.debian.org/debian bookworm main {component}\n"
        self.files[SOURCES_LIST] = (current + line).encode("utf-8")
        return _result(argv)

    def _cmd_nvidia_ctk(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        current = self.files.get(DAEMON_JSON)
        payload = json.loads(current) if current else {}
        payload.setdefault("runtimes", {})["nvidia"] = {
            "args": [],
            "path": "nvidia-container-runtime",
        }
        self.files[DAEMON_JSON] = json.dumps(payload, indent=4).encode("utf-8")
        return _result(argv)


@pytest.fixture
def host() -> FakeHost:
    """Return a fresh Debian 12 amd64 host."""
    return FakeHost()


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    """Return the default configuration with logs redirected to *tmp_path*."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "logs_dir": str(tmp_path / "logs"),
            "templates_dir": str(tmp_path / "templates"),
        },
    )


@pytest.fixture
def runtime(config: AppConfig, host: FakeHost) -> RuntimeContext:
    """Return a runtime wired against the fake host."""
    return build_runtime(config, host)


@pytest.fixture
def debian() -> SystemProfile:
    """Return the profile of a Debian 12 amd64 host."""
    return SystemProfile(
        distribution=Distribution.DEBIAN,
        version_id="12",
        codename="bookworm",
        architecture="amd64",
        kernel_release="6.1.0-18-amd64",
    )


@pytest.fixture
def ubuntu() -> SystemProfile:
    """Return the profile of an Ubuntu 22.04 amd64 host."""
    return SystemProfile(
        distribution=Distribution.UBUNTU,
        version_id="22.04",
        codename="jammy",
        architecture="amd64",
        kernel_release="5.15.0-105-generic",
    )
