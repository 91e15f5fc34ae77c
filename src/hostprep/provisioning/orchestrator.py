"""Orchestrator: run profiles in order and stop at the first failure."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from ..environment import (
    EnvironmentProber,
    SystemProfile,
    require_architecture,
    require_supported_version,
)
from ..errors import PrivilegeError, ProvisioningError, UnexpectedStepError
from ..logging import OperationScope, StructuredLogger
from ..providers.host import Host
from .executor import StepExecutor
from .models import ProvisioningProfile, ProvisioningStep, RunReport, StepOutcome, StepResult
from .oracle import IdempotencyOracle

LOGGER = logging.getLogger(__name__)


class RunObserver(Protocol):
    """Receives progress notifications while a run is in flight."""

    def on_profile(self, profile: ProvisioningProfile) -> None:
        """Called before the steps of *profile* are applied."""
        ...

    def on_step(self, result: StepResult) -> None:
        """Called with every step result in order."""
        ...


class NullObserver:
    """Observer that ignores every notification."""

    def on_profile(self, profile: ProvisioningProfile) -> None:
        """Ignore the profile notification."""

    def on_step(self, result: StepResult) -> None:
        """Ignore the step notification."""


def require_root(host: Host) -> None:
    """Raise :class:`PrivilegeError` unless the process runs as root."""
    if host.effective_uid() != 0:
        raise PrivilegeError("hostprep must be run as root (try sudo)")


@dataclass(frozen=True, slots=True)
class PlanEntry:
    """Oracle verdict for one step, used by ``hostprep plan``."""

    profile: str
    step: ProvisioningStep
    satisfied: bool

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "profile": self.profile,
            "step": self.step.id,
            "kind": self.step.kind,
            "description": self.step.label(),
            "required": self.step.required,
            "satisfied": self.satisfied,
        }


@dataclass(slots=True)
class Orchestrator:
    """Run provisioning profiles sequentially against one host."""

    host: Host
    prober: EnvironmentProber
    executor: StepExecutor
    logger: StructuredLogger
    observer: RunObserver = field(default_factory=NullObserver)

    @property
    def oracle(self) -> IdempotencyOracle:
        """Return the oracle shared with the executor."""
        return self.executor.oracle

    def prepare(self) -> SystemProfile:
        """Check privileges and probe the host once."""
        require_root(self.host)
        return self.prober.probe()

    def run(
        self,
        profiles: Sequence[ProvisioningProfile],
        *,
        system: SystemProfile | None = None,
    ) -> RunReport:
        """Apply *profiles* in order and return the report.

        The first failed step aborts the run; later steps and profiles are
        never attempted. Precondition errors (privileges, unsupported host or
        architecture) are reported the same way; the gates of every profile are
        checked before the first step is applied.
        """
        report = RunReport()
        names = [profile.name for profile in profiles]
        with self.logger.operation("provision", args={"profiles": names}) as op:
            current: str | None = None
            try:
                if system is None:
                    system = self.prepare()
                op.target.update(system.to_dict())
                for profile in profiles:
                    current = profile.name
                    require_architecture(system, profile)
                    require_supported_version(system, profile)
                for profile in profiles:
                    current = profile.name
                    if not self._run_profile(profile, system, report, op):
                        return report
            except ProvisioningError as exc:
                report.error = exc
                report.failed_profile = current
                LOGGER.debug("Run aborted before completion: %s", exc)
                op.error(str(exc), rc=int(exc.exit_code), context={"profile": current})
                return report

            counts = report.counts()
            warnings = [
                f"{result.step.id}: {result.reason}"
                for result in report.results
                if result.outcome is StepOutcome.SKIPPED
            ]
            message = f"Provisioned {', '.join(names) or 'nothing'}"
            if warnings:
                op.warning(
                    message,
                    warnings=warnings,
                    changed=counts[StepOutcome.APPLIED.value],
                    context={"counts": counts},
                )
            else:
                op.success(
                    message,
                    changed=counts[StepOutcome.APPLIED.value],
                    context={"counts": counts},
                )
        return report

    def plan(
        self,
        profiles: Sequence[ProvisioningProfile],
        system: SystemProfile,
    ) -> list[PlanEntry]:
        """Return the oracle verdict for every step without changing the host."""
        entries: list[PlanEntry] = []
        for profile in profiles:
            require_architecture(system, profile)
            require_supported_version(system, profile)
            for step in profile.steps:
                entries.append(
                    PlanEntry(
                        profile=profile.name,
                        step=step,
                        satisfied=self.oracle.is_satisfied(step, system),
                    )
                )
        return entries

    def _run_profile(
        self,
        profile: ProvisioningProfile,
        system: SystemProfile,
        report: RunReport,
        op: OperationScope,
    ) -> bool:
        self.observer.on_profile(profile)
        for step in profile.steps:
            result = self._apply(step, system, profile.name)
            report.results.append(result)
            self.observer.on_step(result)
            op.event("step", f"{step.label()}: {result.outcome.label}", **result.to_dict())
            if result.is_failure:
                report.error = result.error
                report.failed_profile = profile.name
                op.error(
                    f"{profile.name}: {step.label()} failed: {result.reason}",
                    rc=int(report.exit_code),
                    context={"profile": profile.name, "step": step.id},
                )
                return False
        return True

    def _apply(self, step: ProvisioningStep, system: SystemProfile, profile: str) -> StepResult:
        try:
            return self.executor.apply(step, system, profile=profile)
        except Exception as exc:
            LOGGER.exception("Unexpected error while applying %s", step.id)
            error = UnexpectedStepError(f"{type(exc).__name__}: {exc}")
            return StepResult(
                step=step,
                outcome=StepOutcome.FAILED,
                profile=profile,
                reason=str(error),
                error=error,
            )


__all__ = ["NullObserver", "Orchestrator", "PlanEntry", "RunObserver", "require_root"]
