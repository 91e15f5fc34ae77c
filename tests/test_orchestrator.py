"""End-to-end orchestration tests against the in-memory host."""
from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from conftest import DAEMON_JSON, SOURCES_LIST, FakeHost

from hostprep.cli import RuntimeContext
from hostprep.environment import Distribution, SystemProfile
from hostprep.errors import (
    KeyFetchError,
    PrivilegeError,
    UnexpectedStepError,
    UnsupportedArchitecture,
    UnsupportedEnvironment,
)
from hostprep.exit_codes import ExitCode
from hostprep.provisioning.models import PackageInstalled, ProvisioningProfile, StepOutcome, StepResult
from hostprep.provisioning.orchestrator import Orchestrator
from hostprep.provisioning.profiles import (
    DOCKER_PACKAGES,
    NVIDIA_CONTAINER_PACKAGES,
    PROFILE_ORDER,
    SYSTEM_PACKAGES,
)

DOCKER_KEY_URL = "https://download.docker.com/linux/debian/gpg"
NVIDIA_KEY_URL = "https://nvidia.github.io/libnvidia-container/gpgkey"
CUDA_REPO = "cuda-repo-debian12-12-4-local"
CUDA_DEB = f"{CUDA_REPO}_12.4.0-550.54.14-1_amd64.deb"
CUDA_URL = f"https://developer.download.nvidia.com/compute/cuda/12.4.0/local_installers/{CUDA_DEB}"
JVM = Path("/usr/lib/jvm/java-17-openjdk-amd64/bin")
ARMORED = b"-----BEGIN PGP PUBLIC KEY BLOCK-----\n"


class RecordingObserver:
    """Collect the notifications sent by the orchestrator."""

    def __init__(self) -> None:
        self.profiles: list[str] = []
        self.results: list[StepResult] = []

    def on_profile(self, profile: ProvisioningProfile) -> None:
        self.profiles.append(profile.name)

    def on_step(self, result: StepResult) -> None:
        self.results.append(result)


def _seed(host: FakeHost) -> FakeHost:
    """Make every package, key and archive the profiles need available."""
    for name in SYSTEM_PACKAGES:
        host.available[name] = "1.0-1"
    host.available["openjdk-17-jdk-headless"] = "17.0.9+9-1~deb12u1"
    host.package_contents["openjdk-17-jdk-headless"] = {JVM / "java": b"", JVM / "javac": b""}
    for name in DOCKER_PACKAGES:
        host.available[name] = "5:26.1.3-1~debian.12~bookworm"
    host.available["cuda-toolkit-12-4"] = "12.4.1-1"
    host.available["cuda-drivers"] = "550.54.14-1"
    host.available["linux-headers-6.1.0-18-amd64"] = "6.1.76-1"
    for name in NVIDIA_CONTAINER_PACKAGES:
        host.available[name] = "1.15.0-1"
    host.package_executables.update(
        {
            "software-properties-common": "add-apt-repository",
            "docker-ce": "docker",
            "cuda-drivers": "nvidia-smi",
            "nvidia-container-toolkit": "nvidia-ctk",
        }
    )
    host.remote[DOCKER_KEY_URL] = ARMORED
    host.remote[NVIDIA_KEY_URL] = ARMORED
    host.remote[CUDA_URL] = b"deb archive"
    host.debs[CUDA_DEB] = (
        CUDA_REPO,
        "12.4.0-1",
        {Path(f"/var/{CUDA_REPO}/cuda-ABCD1234-keyring.gpg"): b"cuda key"},
    )
    host.version_output[JVM / "java"] = 'openjdk version "17.0.9" 2023-10-17\n'
    host.version_output[JVM / "javac"] = "javac 17.0.9\n"
    host.unit_files.add("docker.service")
    return host


@pytest.fixture
def ready(host: FakeHost) -> FakeHost:
    """Return a Debian 12 host whose mirrors can satisfy every profile."""
    return _seed(host)


def _orchestrator(runtime: RuntimeContext, observer: RecordingObserver | None = None) -> Orchestrator:
    if observer is None:
        return Orchestrator(runtime.host, runtime.prober, runtime.executor, runtime.logger)
    return Orchestrator(runtime.host, runtime.prober, runtime.executor, runtime.logger, observer=observer)


def _profiles(runtime: RuntimeContext, names: list[str] | None = None) -> list[ProvisioningProfile]:
    return runtime.catalog.build(runtime.prober.probe(), names)


def _log_records(runtime: RuntimeContext) -> list[dict[str, object]]:
    path = runtime.logger.operations_log_path
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_full_run_converges_and_is_idempotent(runtime: RuntimeContext, ready: FakeHost) -> None:
    """A second run changes nothing and reports every step as satisfied."""
    observer = RecordingObserver()
    first = _orchestrator(runtime, observer).run(_profiles(runtime))

    assert first.error is None
    assert first.exit_code == ExitCode.OK
    assert observer.profiles == list(PROFILE_ORDER)
    assert first.counts()["failed"] == 0
    assert first.counts()["skipped"] == 0
    assert ready.alternatives["java"][0] == JVM / "java"
    assert "contrib" in ready.files[SOURCES_LIST].decode()
    assert json.loads(ready.files[DAEMON_JSON])["runtimes"]["nvidia"]
    assert ready.restarted == ["docker.service"]
    assert "docker.service" in ready.active_units

    writes = len(ready.writes)
    commands = len(ready.commands)
    second = _orchestrator(runtime).run(_profiles(runtime))

    assert second.error is None
    assert {result.outcome for result in second.results} == {StepOutcome.ALREADY_SATISFIED}
    assert len(second.results) == len(first.results)
    assert len(ready.writes) == writes
    mutating = {"apt-get", "dpkg", "curl", "gpg", "groupadd", "usermod", "add-apt-repository", "nvidia-ctk"}
    queries = ("--print-architecture", "-L")
    assert not [argv for argv in ready.commands[commands:] if argv[0] in mutating and argv[1] not in queries]


def test_run_logs_step_events(runtime: RuntimeContext, ready: FakeHost) -> None:
    """Each step outcome is recorded in the operations log."""
    _orchestrator(runtime).run(_profiles(runtime, ["system-packages"]))

    record = _log_records(runtime)[-1]
    assert record["command"] == "provision"
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert result["changed"] == len(SYSTEM_PACKAGES)
    events = record["events"]
    assert isinstance(events, list)
    assert [event["context"]["step"] for event in events] == [f"package:{name}" for name in SYSTEM_PACKAGES]


def test_first_failure_stops_the_run(runtime: RuntimeContext, ready: FakeHost) -> None:
    """A failed step aborts its profile and every later profile."""
    del ready.remote[DOCKER_KEY_URL]
    observer = RecordingObserver()

    report = _orchestrator(runtime, observer).run(_profiles(runtime))

    assert report.exit_code == ExitCode.STEP_FAILED
    assert isinstance(report.error, KeyFetchError)
    assert report.failed_profile == "docker"
    failure = report.failure
    assert failure is not None
    assert failure.step.id == "repository:docker"
    assert report.results[-1] is failure
    assert observer.profiles == ["system-packages", "java", "docker"]
    assert not any(result.profile in ("cuda", "nvidia-container-toolkit") for result in report.results)
    assert "docker-ce" not in ready.packages

    record = _log_records(runtime)[-1]
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["rc"] == 1


def test_rerun_after_fixing_the_cause_converges(runtime: RuntimeContext, ready: FakeHost) -> None:
    """Completed work is skipped and the run resumes where it failed."""
    del ready.remote[DOCKER_KEY_URL]
    _orchestrator(runtime).run(_profiles(runtime))

    ready.remote[DOCKER_KEY_URL] = ARMORED
    report = _orchestrator(runtime).run(_profiles(runtime))

    assert report.error is None
    resumed = [result.outcome for result in report.results if result.profile == "system-packages"]
    assert set(resumed) == {StepOutcome.ALREADY_SATISFIED}
    assert "nvidia-container-toolkit" in ready.packages


def test_best_effort_failures_produce_warnings(runtime: RuntimeContext, ready: FakeHost) -> None:
    """Skipped steps let the run succeed with a warning record."""
    del ready.available["software-properties-common"]
    ready.failing.add("add-apt-repository")

    report = _orchestrator(runtime).run(_profiles(runtime, ["cuda"]))

    assert report.error is None
    skipped = [result.step.id for result in report.results if result.outcome is StepOutcome.SKIPPED]
    assert skipped == ["package:software-properties-common", "component:contrib"]
    assert "cuda-toolkit-12-4" in ready.packages
    result = _log_records(runtime)[-1]["result"]
    assert isinstance(result, dict)
    assert result["status"] == "warning"
    assert len(result["warnings"]) == 2


def test_non_root_is_rejected_before_any_change(runtime: RuntimeContext, ready: FakeHost) -> None:
    """Privileges are checked before probing or applying anything."""
    profiles = _profiles(runtime, ["system-packages"])
    ready.uid = 1000

    report = _orchestrator(runtime).run(profiles)

    assert isinstance(report.error, PrivilegeError)
    assert report.exit_code == ExitCode.ENVIRONMENT
    assert report.results == []
    assert ready.writes == []
    assert ready.ran("apt-get") == []


def test_cuda_requires_amd64(runtime: RuntimeContext, ready: FakeHost) -> None:
    """Architecture gates fail the run before any earlier profile changes the host."""
    ready.dpkg_architecture = "arm64"
    ready.machine_name = "aarch64"
    system = runtime.prober.probe()
    profiles = runtime.catalog.build(system, None)
    observer = RecordingObserver()

    report = _orchestrator(runtime, observer).run(profiles, system=system)

    assert isinstance(report.error, UnsupportedArchitecture)
    assert report.exit_code == ExitCode.ENVIRONMENT
    assert report.failed_profile == "cuda"
    assert report.results == []
    assert observer.profiles == []
    assert ready.writes == []
    assert ready.ran("apt-get") == []
    assert ready.packages == {}
    result = _log_records(runtime)[-1]["result"]
    assert isinstance(result, dict)
    assert result["rc"] == int(ExitCode.ENVIRONMENT)


def test_cuda_rejects_unsupported_release(runtime: RuntimeContext, ready: FakeHost) -> None:
    """Releases outside the supported list never reach the first step."""
    trixie = SystemProfile(Distribution.DEBIAN, "13", "trixie", "amd64", "6.12.0-1-amd64")
    profiles = runtime.catalog.build(trixie, ["cuda"])

    report = _orchestrator(runtime).run(profiles, system=trixie)

    assert isinstance(report.error, UnsupportedEnvironment)
    assert report.results == []
    assert ready.writes == []


def test_plan_does_not_change_the_host(runtime: RuntimeContext, ready: FakeHost) -> None:
    """Planning only consults the oracle."""
    system = runtime.prober.probe()
    profiles = runtime.catalog.build(system, None)
    orchestrator = _orchestrator(runtime)

    entries = orchestrator.plan(profiles, system)

    assert entries
    assert not any(entry.satisfied for entry in entries if entry.step.id.startswith("package:"))
    assert ready.writes == []
    assert ready.apt_updates == 0

    orchestrator.run(profiles, system=system)
    assert all(entry.satisfied for entry in orchestrator.plan(profiles, system))
    assert entries[0].to_dict()["profile"] == "system-packages"


def _single_step_profile() -> ProvisioningProfile:
    return ProvisioningProfile(name="tools", title="Tools", steps=(PackageInstalled(name="git"),))


def test_single_step_run_records_one_step_event(runtime: RuntimeContext, host: FakeHost) -> None:
    """A one-step profile logs exactly one step event carrying kind and outcome."""
    host.available["git"] = "1:2.39.2-1.1"

    report = _orchestrator(runtime).run([_single_step_profile()])

    assert report.error is None
    assert [result.outcome for result in report.results] == [StepOutcome.APPLIED]
    record = _log_records(runtime)[-1]
    events = record["events"]
    assert isinstance(events, list)
    assert len(events) == 1
    (event,) = events
    assert event["kind"] == "step"
    assert event["message"] == "package:git: applied"
    context = event["context"]
    assert context["kind"] == "PackageInstalled"
    assert context["outcome"] == "applied"
    assert context["step"] == "package:git"
    assert context["profile"] == "tools"
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert result["changed"] == 1


def test_unexpected_step_error_is_logged_and_reported(
    runtime: RuntimeContext,
    host: FakeHost,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Errors outside the provisioning taxonomy become a logged step failure."""
    host.available["git"] = "1:2.39.2-1.1"

    def locked(argv: list[str]) -> object:
        raise RuntimeError("apt database is locked")

    monkeypatch.setattr(host, "_cmd_apt_get", locked)

    with caplog.at_level(logging.ERROR, logger="hostprep.provisioning.orchestrator"):
        report = _orchestrator(runtime).run([_single_step_profile()])

    assert isinstance(report.error, UnexpectedStepError)
    assert str(report.error) == "RuntimeError: apt database is locked"
    assert report.exit_code == ExitCode.STEP_FAILED
    assert report.failed_profile == "tools"
    failure = report.failure
    assert failure is not None
    assert failure.step.id == "package:git"
    assert any(entry.exc_info for entry in caplog.records)

    record = _log_records(runtime)[-1]
    (event,) = record["events"]
    assert event["context"]["outcome"] == "failed"
    assert event["context"]["error"] == "UnexpectedStepError"
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["rc"] == 1
