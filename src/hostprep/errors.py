"""Error taxonomy shared by the provisioning engine.

Every failure the engine can surface derives from :class:`ProvisioningError`
and carries the exit code the CLI reports for it. None of these errors are
recovered locally: the executor turns them into failed step results and the
orchestrator stops at the first one.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class ProvisioningError(RuntimeError):
    """Base class for provisioning failures."""

    exit_code: ExitCode = ExitCode.STEP_FAILED

    @property
    def kind(self) -> str:
        """Return the error class name used in logs and JSON payloads."""
        return type(self).__name__


class UnsupportedEnvironment(ProvisioningError):
    """Raised when the OS descriptor is missing, malformed or unsupported."""

    exit_code = ExitCode.ENVIRONMENT


class UnsupportedArchitecture(ProvisioningError):
    """Raised when a profile cannot run on the host architecture."""

    exit_code = ExitCode.ENVIRONMENT


class PrivilegeError(ProvisioningError):
    """Raised when provisioning is attempted without root privileges."""

    exit_code = ExitCode.ENVIRONMENT


class KeyFetchError(ProvisioningError):
    """Raised when a repository signing key cannot be downloaded."""


class KeyWriteError(ProvisioningError):
    """Raised when a repository signing key cannot be stored."""


class RepositoryConfigError(ProvisioningError):
    """Raised when an APT source or preferences file cannot be written."""


class FileWriteError(ProvisioningError):
    """Raised when a managed file cannot be written."""


class PackageInstallError(ProvisioningError):
    """Raised when the package manager fails to install a package."""


class PostconditionNotMet(ProvisioningError):
    """Raised when an applied step does not leave the expected state behind."""


class CommandError(ProvisioningError):
    """Raised when any other external command exits unsuccessfully."""


class UnexpectedStepError(ProvisioningError):
    """Raised in place of an error outside this taxonomy escaping from a step."""


__all__ = [
    "CommandError",
    "FileWriteError",
    "KeyFetchError",
    "KeyWriteError",
    "PackageInstallError",
    "PostconditionNotMet",
    "PrivilegeError",
    "ProvisioningError",
    "RepositoryConfigError",
    "UnexpectedStepError",
    "UnsupportedArchitecture",
    "UnsupportedEnvironment",
]
