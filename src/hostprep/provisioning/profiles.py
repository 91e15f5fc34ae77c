"""Built-in provisioning profiles.

Each profile is a fixed, ordered list of steps derived from the host's
:class:`~hostprep.environment.SystemProfile` and the loaded configuration.
Profiles always run in :data:`PROFILE_ORDER`, which encodes their
dependencies (the NVIDIA Container Toolkit configures Docker, CUDA needs the
base build tooling).
"""
from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from ..config import AppConfig
from ..environment import Distribution, SystemProfile
from ..templates import TemplateEngine
from .models import (
    AlternativeSelected,
    ComponentEnabled,
    ContainerRuntimeRegistered,
    FileContentEquals,
    FileDownloaded,
    FilesCopied,
    GroupPresent,
    JavaHomeExported,
    JdkHome,
    PackageInstalled,
    ProvisioningProfile,
    ProvisioningStep,
    RepositoryRegistered,
    ServiceEnabled,
    UserInGroup,
)

PROFILE_ORDER: tuple[str, ...] = (
    "system-packages",
    "java",
    "docker",
    "cuda",
    "nvidia-container-toolkit",
)

SYSTEM_PACKAGES: tuple[str, ...] = (
    "build-essential",
    "software-properties-common",
    "gcc",
    "libc6-dev",
    "curl",
    "ca-certificates",
    "gnupg",
    "git",
)

DOCKER_PACKAGES: tuple[str, ...] = (
    "docker-ce",
    "docker-ce-cli",
    "docker-buildx-plugin",
    "docker-compose-plugin",
)

NVIDIA_CONTAINER_PACKAGES: tuple[str, ...] = (
    "nvidia-container-toolkit",
    "nvidia-container-toolkit-base",
    "libnvidia-container-tools",
    "libnvidia-container1",
)

# Open kernel module variants that must never replace the proprietary driver.
NVIDIA_OPEN_PACKAGES: tuple[str, ...] = ("nvidia-driver-*-open", "nvidia-kernel-open-dkms")

DOCKER_DOWNLOAD_URL = "https://download.docker.com/linux"
NVIDIA_CUDA_URL = "https://developer.download.nvidia.com/compute/cuda"
NVIDIA_CONTAINER_URL = "https://nvidia.github.io/libnvidia-container"
DOCKER_UNIT = "docker.service"


class UnknownProfileError(ValueError):
    """Raised when a profile name is not part of the catalog."""


@dataclass(frozen=True, slots=True)
class ProfileInfo:
    """Static description of a built-in profile."""

    name: str
    title: str
    architectures: frozenset[str] | None = None
    versions: Mapping[Distribution, frozenset[str]] | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "title": self.title,
            "architectures": sorted(self.architectures) if self.architectures else None,
            "versions": (
                {dist.value: sorted(values) for dist, values in self.versions.items()}
                if self.versions
                else None
            ),
        }


PROFILES: dict[str, ProfileInfo] = {
    "system-packages": ProfileInfo("system-packages", "Base build tooling"),
    "java": ProfileInfo("java", "OpenJDK runtime"),
    "docker": ProfileInfo("docker", "Docker Engine"),
    "cuda": ProfileInfo(
        "cuda",
        "CUDA toolkit and NVIDIA driver",
        architectures=frozenset({"amd64"}),
        versions={
            Distribution.DEBIAN: frozenset({"10", "11", "12"}),
            Distribution.UBUNTU: frozenset({"20.04", "22.04"}),
        },
    ),
    "nvidia-container-toolkit": ProfileInfo(
        "nvidia-container-toolkit",
        "NVIDIA Container Toolkit",
    ),
}


@dataclass(slots=True)
class ProfileCatalog:
    """Build the built-in profiles for a probed host."""

    config: AppConfig
    templates: TemplateEngine

    def names(self) -> tuple[str, ...]:
        """Return every profile name in execution order."""
        return PROFILE_ORDER

    def describe(self) -> list[ProfileInfo]:
        """Return the static description of every profile in execution order."""
        return [PROFILES[name] for name in PROFILE_ORDER]

    def select(self, names: Iterable[str] | None = None) -> list[str]:
        """Validate *names* and return them deduplicated in execution order."""
        if names is None:
            return list(PROFILE_ORDER)
        wanted = set(names)
        unknown = wanted - set(PROFILE_ORDER)
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise UnknownProfileError(
                f"Unknown profile(s): {joined}. Available: {', '.join(PROFILE_ORDER)}."
            )
        return [name for name in PROFILE_ORDER if name in wanted]

    def build(
        self,
        system: SystemProfile,
        names: Iterable[str] | None = None,
    ) -> list[ProvisioningProfile]:
        """Return the selected profiles, always in :data:`PROFILE_ORDER`."""
        builders: dict[str, Callable[[SystemProfile], tuple[ProvisioningStep, ...]]] = {
            "system-packages": self._system_packages,
            "java": self._java,
            "docker": self._docker,
            "cuda": self._cuda,
            "nvidia-container-toolkit": self._nvidia_container_toolkit,
        }
        profiles: list[ProvisioningProfile] = []
        for name in self.select(names):
            info = PROFILES[name]
            profiles.append(
                ProvisioningProfile(
                    name=info.name,
                    title=info.title,
                    steps=builders[name](system),
                    architectures=info.architectures,
                    versions=info.versions,
                )
            )
        return profiles

    # ------------------------------------------------------------------
    def _system_packages(self, system: SystemProfile) -> tuple[ProvisioningStep, ...]:
        return tuple(PackageInstalled(name=name) for name in SYSTEM_PACKAGES)

    def _java(self, system: SystemProfile) -> tuple[ProvisioningStep, ...]:
        java = self.config.java
        jdk = JdkHome(package=java.package, version=java.version)
        return (
            PackageInstalled(name=java.package, version=java.version),
            AlternativeSelected(
                name="java",
                link=Path("/usr/bin/java"),
                jdk=jdk,
                priority=java.priority,
                version_command=("java", "-version"),
                expected_version=java.version,
                version_pattern=r'version "([^"]+)"',
            ),
            AlternativeSelected(
                name="javac",
                link=Path("/usr/bin/javac"),
                jdk=jdk,
                priority=java.priority,
                version_command=("javac", "-version"),
                expected_version=java.version,
                version_pattern=r"javac (\S+)",
            ),
            JavaHomeExported(
                path=self.config.profile_d_dir / f"java{java.version}.sh",
                jdk=jdk,
                description=f"JAVA_HOME login snippet for Java {java.version}",
            ),
        )

    def _docker(self, system: SystemProfile) -> tuple[ProvisioningStep, ...]:
        apt = self.config.apt
        repo_url = f"{DOCKER_DOWNLOAD_URL}/{system.distribution.value}"
        keyring = apt.keyrings_dir / "docker.asc"
        source = self.templates.render_to_string(
            "apt/source.list.j2",
            {
                "options": [f"arch={system.architecture}", f"signed-by={keyring}"],
                "uri": repo_url,
                "suite": system.codename,
                "components": ["stable"],
            },
        )
        steps: list[ProvisioningStep] = [
            RepositoryRegistered(
                name="docker",
                key_url=f"{repo_url}/gpg",
                keyring_path=keyring,
                source_path=apt.sources_dir / "docker.list",
                content=source,
            ),
        ]
        for package in DOCKER_PACKAGES:
            provided_by = "docker" if package in ("docker-ce", "docker-ce-cli") else None
            steps.append(PackageInstalled(name=package, provided_by=provided_by))
        steps.append(ServiceEnabled(unit=DOCKER_UNIT))
        steps.append(GroupPresent(group="docker"))

        docker = self.config.docker
        if docker.add_user_to_group and docker.user and docker.user != "root":
            steps.append(UserInGroup(user=docker.user, group="docker"))
        return tuple(steps)

    def _cuda(self, system: SystemProfile) -> tuple[ProvisioningStep, ...]:
        apt = self.config.apt
        cuda = self.config.cuda
        dist = system.dist_string
        local_repo = f"cuda-repo-{dist}-{cuda.package_suffix}-local"
        release_dir = cuda.repo_release.split("-", 1)[0]
        deb_url = (
            f"{NVIDIA_CUDA_URL}/{release_dir}/local_installers/"
            f"{local_repo}_{cuda.repo_release}_amd64.deb"
        )

        steps: list[ProvisioningStep] = []
        if system.distribution is Distribution.UBUNTU:
            steps.append(
                FileDownloaded(
                    url=f"{NVIDIA_CUDA_URL}/repos/{dist}/x86_64/cuda-{dist}.pin",
                    path=apt.preferences_dir / "cuda-repository-pin-600",
                    refreshes_index=True,
                    description="CUDA APT pin",
                )
            )
        steps.append(
            PackageInstalled(
                name=local_repo,
                deb_url=deb_url,
                description=f"CUDA {cuda.version} local repository",
            )
        )
        steps.append(
            FilesCopied(
                pattern=f"/var/{local_repo}/cuda-*-keyring.gpg",
                destination=apt.share_keyrings_dir,
                description="CUDA local repository keyring",
            )
        )
        if system.distribution is Distribution.DEBIAN:
            steps.append(
                PackageInstalled(
                    name="software-properties-common",
                    provided_by="add-apt-repository",
                    required=False,
                )
            )
            steps.append(ComponentEnabled(component="contrib", required=False))
        steps.append(PackageInstalled(name=f"cuda-toolkit-{cuda.package_suffix}", version=cuda.version))

        pins = self.templates.render_to_string(
            "apt/preferences.j2",
            {
                "pins": [
                    {"package": package, "pin": "release *", "priority": -1}
                    for package in NVIDIA_OPEN_PACKAGES
                ]
            },
        )
        steps.append(
            FileContentEquals(
                path=apt.preferences_dir / "nvidia-proprietary-only.pref",
                content=pins,
                refreshes_index=True,
                description="Pin out NVIDIA open kernel module packages",
            )
        )
        if system.kernel_release:
            steps.append(
                PackageInstalled(name=f"linux-headers-{system.kernel_release}", required=False)
            )
        steps.append(PackageInstalled(name=cuda.driver_package, provided_by="nvidia-smi"))
        return tuple(steps)

    def _nvidia_container_toolkit(self, system: SystemProfile) -> tuple[ProvisioningStep, ...]:
        apt = self.config.apt
        keyring = apt.share_keyrings_dir / "nvidia-container-toolkit-keyring.gpg"
        source = self.templates.render_to_string(
            "apt/source.list.j2",
            {
                "options": [f"signed-by={keyring}"],
                "uri": f"{NVIDIA_CONTAINER_URL}/stable/deb/$(ARCH)",
                "suite": "/",
                "components": [],
            },
        )
        steps: list[ProvisioningStep] = [
            RepositoryRegistered(
                name="nvidia-container-toolkit",
                key_url=f"{NVIDIA_CONTAINER_URL}/gpgkey",
                keyring_path=keyring,
                source_path=apt.sources_dir / "nvidia-container-toolkit.list",
                content=source,
                dearmor=True,
            ),
        ]
        steps.extend(PackageInstalled(name=package) for package in NVIDIA_CONTAINER_PACKAGES)
        steps.append(
            ContainerRuntimeRegistered(
                runtime="nvidia",
                engine="docker",
                config_path=self.config.docker.daemon_config,
                restart_unit=DOCKER_UNIT,
                required=False,
            )
        )
        return tuple(steps)


__all__ = [
    "PROFILES",
    "PROFILE_ORDER",
    "ProfileCatalog",
    "ProfileInfo",
    "UnknownProfileError",
]
