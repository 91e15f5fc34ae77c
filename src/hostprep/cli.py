"""Typer-powered command line interface for ``hostprep``.

Each provisioning command runs one profile (``all`` runs every profile) in the
fixed dependency order. Progress is printed as timestamped lines; failures
print a single timestamped error line on stderr and exit non-zero.
"""
from __future__ import annotations

import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .environment import EnvironmentProber, SystemProfile
from .errors import ProvisioningError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .providers import (
    AlternativesProvider,
    AptProvider,
    Downloader,
    Host,
    LocalHost,
    SystemdProvider,
)
from .provisioning import (
    IdempotencyOracle,
    JdkLocator,
    Orchestrator,
    ProfileCatalog,
    ProvisioningProfile,
    RepositoryConfigurator,
    RunReport,
    StepExecutor,
    StepOutcome,
    StepResult,
    UnknownProfileError,
)
from .templates import TemplateEngine, TemplateRenderError

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to hostprep's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit a machine-readable JSON payload instead of progress lines.",
)

_OUTCOME_STYLES = {
    StepOutcome.ALREADY_SATISFIED: "dim",
    StepOutcome.APPLIED: "green",
    StepOutcome.SKIPPED: "yellow",
    StepOutcome.FAILED: "red",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Idempotent provisioning for Debian and Ubuntu hosts.

        Each command checks what the host already has and only changes what is
        missing, so commands can be re-run safely until the host converges.
        """
    ).strip(),
)


def _timestamp() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    host: Host
    logger: StructuredLogger
    templates: TemplateEngine
    catalog: ProfileCatalog
    prober: EnvironmentProber
    executor: StepExecutor


def build_runtime(config: AppConfig, host: Host | None = None) -> RuntimeContext:
    """Wire providers and the provisioning engine for *config*."""
    host = host or LocalHost()
    commands = config.commands
    apt = AptProvider(
        host,
        apt_get_bin=commands.apt_get,
        dpkg_bin=commands.dpkg,
        dpkg_query_bin=commands.dpkg_query,
        retries=config.apt.retries,
    )
    alternatives = AlternativesProvider(host, update_alternatives_bin=commands.update_alternatives)
    systemd = SystemdProvider(host, systemctl_bin=commands.systemctl)
    downloader = Downloader(
        host,
        curl_bin=commands.curl,
        gpg_bin=commands.gpg,
        retries=config.download.retries,
        retry_delay=config.download.retry_delay,
        connect_timeout=config.download.connect_timeout,
    )
    templates = TemplateEngine.with_overrides(config.templates_dir)
    oracle = IdempotencyOracle(
        host,
        apt,
        alternatives,
        systemd,
        sources_list=config.apt.sources_list,
        sources_dir=config.apt.sources_dir,
        jdk_locator=JdkLocator(host, apt, templates),
    )
    executor = StepExecutor(
        oracle=oracle,
        host=host,
        apt=apt,
        alternatives=alternatives,
        systemd=systemd,
        repositories=RepositoryConfigurator(host, downloader, tmp_dir=config.tmp_dir),
        downloader=downloader,
        commands=commands,
        tmp_dir=config.tmp_dir,
    )
    return RuntimeContext(
        config=config,
        host=host,
        logger=StructuredLogger(config.logs_dir),
        templates=templates,
        catalog=ProfileCatalog(config, templates),
        prober=EnvironmentProber(host, apt, os_release_file=config.os_release_file),
        executor=executor,
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    config = load_config(config_file=config_file)
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


class ConsoleReporter:
    """Print one timestamped line per profile and step."""

    def __init__(self, output: Console, *, quiet: bool = False) -> None:
        """Create a reporter writing to *output*; *quiet* suppresses all lines."""
        self._console = output
        self._quiet = quiet

    def on_profile(self, profile: ProvisioningProfile) -> None:
        """Announce the profile about to run."""
        if self._quiet:
            return
        self._console.print(
            escape(f"[{_timestamp()}] [{profile.name}] {profile.title}"),
            soft_wrap=True,
            highlight=False,
        )

    def on_step(self, result: StepResult) -> None:
        """Report the outcome of a step."""
        if self._quiet:
            return
        line = escape(f"[{_timestamp()}] [{result.profile}] {result.step.label()}: ")
        style = _OUTCOME_STYLES[result.outcome]
        detail = ""
        if result.outcome is StepOutcome.SKIPPED and result.reason:
            detail = escape(f" ({result.reason})")
        self._console.print(
            f"{line}[{style}]{result.outcome.label}[/{style}]{detail}",
            soft_wrap=True,
            highlight=False,
        )


def _error_line(message: str) -> None:
    err_console.print(
        escape(f"[{_timestamp()}] ERROR: {message}"),
        soft_wrap=True,
        highlight=False,
    )


def _command_error(op: OperationScope, message: str, *, rc: int) -> NoReturn:
    """Emit a structured error and terminate the command."""
    _error_line(message)
    op.error(message, rc=rc)
    raise typer.Exit(code=rc)


def _prepare(
    runtime: RuntimeContext,
    names: Sequence[str] | None,
    *,
    privileged: bool,
) -> tuple[SystemProfile, list[ProvisioningProfile]]:
    """Probe the host and build the selected profiles, exiting on failure."""
    orchestrator = Orchestrator(runtime.host, runtime.prober, runtime.executor, runtime.logger)
    with runtime.logger.operation(
        "prepare",
        args={"profiles": list(names) if names is not None else "all", "privileged": privileged},
        target={"kind": "host"},
    ) as op:
        try:
            system = orchestrator.prepare() if privileged else runtime.prober.probe()
            profiles = runtime.catalog.build(system, names)
        except ProvisioningError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        except (UnknownProfileError, TemplateRenderError) as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
        op.success("Probed host and built profiles.", context=system.to_dict())
    return system, profiles


def _report_payload(system: SystemProfile, report: RunReport) -> dict[str, object]:
    payload: dict[str, object] = {
        "system": system.to_dict(),
        "results": [result.to_dict() for result in report.results],
        "counts": report.counts(),
        "exit_code": report.exit_code,
    }
    if report.error is not None:
        payload["error"] = {
            "kind": report.error.kind,
            "message": str(report.error),
            "profile": report.failed_profile,
        }
    return payload


def _provision(ctx: typer.Context, names: Sequence[str] | None, *, json_output: bool) -> None:
    runtime = _get_runtime(ctx)
    system, profiles = _prepare(runtime, names, privileged=True)
    orchestrator = Orchestrator(
        runtime.host,
        runtime.prober,
        runtime.executor,
        runtime.logger,
        observer=ConsoleReporter(console, quiet=json_output),
    )
    report = orchestrator.run(profiles, system=system)

    if json_output:
        console.print_json(data=_report_payload(system, report))
    elif report.error is None:
        counts = report.counts()
        console.print(
            escape(
                f"[{_timestamp()}] Completed: "
                f"{counts[StepOutcome.APPLIED.value]} applied, "
                f"{counts[StepOutcome.ALREADY_SATISFIED.value]} already satisfied, "
                f"{counts[StepOutcome.SKIPPED.value]} skipped"
            ),
            soft_wrap=True,
            highlight=False,
        )

    if report.error is not None:
        failure = report.failure
        where = f"profile '{report.failed_profile}'" if report.failed_profile else "run"
        if failure is not None:
            where += f", step '{failure.step.label()}'"
        _error_line(f"{where}: {report.error}")
        raise typer.Exit(code=report.exit_code)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the hostprep version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"hostprep {__version__}")
        raise typer.Exit(code=0)

    try:
        _ensure_runtime(ctx, config_file)
    except ConfigError as exc:
        _error_line(str(exc))
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


@app.command("system-packages")
def system_packages(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Install the base build tooling (compilers, curl, gnupg, git)."""
    _provision(ctx, ["system-packages"], json_output=json_output)


@app.command()
def java(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Install OpenJDK and select it as the default java/javac."""
    _provision(ctx, ["java"], json_output=json_output)


@app.command()
def docker(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Install Docker Engine from Docker's APT repository."""
    _provision(ctx, ["docker"], json_output=json_output)


@app.command()
def cuda(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Install the pinned CUDA toolkit and the proprietary NVIDIA driver (amd64)."""
    _provision(ctx, ["cuda"], json_output=json_output)


@app.command("nvidia-container-toolkit")
def nvidia_container_toolkit(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Install the NVIDIA Container Toolkit and register it with Docker."""
    _provision(ctx, ["nvidia-container-toolkit"], json_output=json_output)


@app.command("all")
def all_profiles(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Run every profile in dependency order, stopping at the first failure."""
    _provision(ctx, None, json_output=json_output)


@app.command()
def plan(
    ctx: typer.Context,
    profiles: list[str] | None = typer.Argument(
        None,
        help="Profiles to inspect (defaults to every profile).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show which steps are already satisfied without changing the host."""
    runtime = _get_runtime(ctx)
    system, selected = _prepare(runtime, profiles or None, privileged=False)
    orchestrator = Orchestrator(runtime.host, runtime.prober, runtime.executor, runtime.logger)
    with runtime.logger.operation(
        "plan",
        args={"profiles": [profile.name for profile in selected], "json": json_output},
        target={"kind": "host", **system.to_dict()},
    ) as op:
        try:
            entries = orchestrator.plan(selected, system)
        except ProvisioningError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        pending = sum(1 for entry in entries if not entry.satisfied)

        if json_output:
            console.print_json(
                data={
                    "system": system.to_dict(),
                    "steps": [entry.to_dict() for entry in entries],
                    "pending": pending,
                }
            )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Profile", style="bold")
            table.add_column("Step")
            table.add_column("Required")
            table.add_column("State")
            for entry in entries:
                table.add_row(
                    entry.profile,
                    escape(entry.step.label()),
                    "yes" if entry.step.required else "no",
                    "[green]satisfied[/green]" if entry.satisfied else "[yellow]pending[/yellow]",
                )
            console.print(table)
            console.print(f"{pending} step(s) pending.")
        op.success("Reported provisioning plan.", context={"pending": pending})


@app.command()
def probe(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the detected distribution, release and architecture."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "probe",
        args={"json": json_output},
        target={"kind": "host"},
    ) as op:
        try:
            system = runtime.prober.probe()
        except ProvisioningError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))

        if json_output:
            console.print_json(data=system.to_dict())
        else:
            table = Table(show_header=False)
            table.add_column("Field", style="bold")
            table.add_column("Value")
            for key, value in system.to_dict().items():
                table.add_row(key, str(value))
            table.add_row("dist_string", system.dist_string)
            console.print(table)
        op.success("Reported host identity.", context=system.to_dict())


@app.command("profiles")
def list_profiles(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List the built-in profiles in execution order."""
    runtime = _get_runtime(ctx)
    infos = runtime.catalog.describe()
    if json_output:
        console.print_json(data={"profiles": [info.to_dict() for info in infos]})
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Profile", style="bold")
    table.add_column("Description")
    table.add_column("Architectures")
    for info in infos:
        archs = ", ".join(sorted(info.architectures)) if info.architectures else "any"
        table.add_row(info.name, info.title, archs)
    console.print(table)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["ConsoleReporter", "RuntimeContext", "app", "build_runtime", "main"]
