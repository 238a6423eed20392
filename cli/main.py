"""Main CLI entry point for store-monitor.

This module defines the Typer application and its commands.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import structlog
import typer
import yaml
from rich.console import Console
from rich.table import Table

from monitor.classifier import classify
from monitor.config import ConfigManager, LogLevel
from monitor.errors import ConfigError
from monitor.executor import command_preview
from monitor.models import OperationMode, PackageSource, PackageTarget, SourceType
from monitor.simulation import Scenario

from . import __version__
from .display import RECOVERY_LABELS, SessionDisplay
from .runner import EXIT_ERROR, run_operation

if TYPE_CHECKING:
    from monitor.config import MonitorConfig
    from monitor.session import SessionController

app = typer.Typer(
    name="store-monitor",
    help="Install and remove packages with live progress and guided error recovery.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def configure_logging(log_level: LogLevel | str, log_file: Path | None = None) -> None:
    """Configure structlog and standard logging with the specified level.

    Diagnostics go to stderr so they never mix with the live display, or
    to ``log_file`` when one is configured.

    Args:
        log_level: Log level (debug, info, warning, error).
        log_file: Optional file receiving the diagnostic log.
    """
    level = _LEVELS.get(LogLevel(log_level), logging.INFO)

    logging.basicConfig(format="%(message)s", level=level, force=True)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger_factory: structlog.typing.WrappedLogger = structlog.WriteLoggerFactory(
            file=log_file.open("a", encoding="utf-8")
        )
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        logger_factory = structlog.PrintLoggerFactory(file=sys.stderr)
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=logger_factory,
        cache_logger_on_first_use=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]store-monitor[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Store Monitor: supervised package installs with guided recovery."""


def _get_config_manager() -> ConfigManager:
    return ConfigManager()


def _load_config(reduce_prompts: bool, log_level: LogLevel | None) -> MonitorConfig:
    try:
        config = _get_config_manager().load()
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(EXIT_ERROR) from e

    updates: dict[str, object] = {}
    if reduce_prompts:
        updates["credentials"] = config.credentials.model_copy(
            update={"reduce_password_prompts": True}
        )
    if log_level is not None:
        updates["log_level"] = log_level
    return config.model_copy(update=updates) if updates else config


def _build_controller(
    config: MonitorConfig,
    display: SessionDisplay,
    simulate: Scenario | None,
    simulate_delay: float,
) -> SessionController:
    """Wire the session controller with real or simulated collaborators."""
    from monitor.credentials import PromptCredentialBroker, sudo_password_is_valid
    from monitor.executor import CommandExecutor
    from monitor.interfaces import MaintenanceBackend, OperationExecutor
    from monitor.maintenance import CommandMaintenance
    from monitor.notifications import NotificationManager
    from monitor.recovery import RecoveryCoordinator
    from monitor.session import SessionController
    from monitor.simulation import ScriptedExecutor, ScriptedMaintenance, SimulationState
    from monitor.telemetry import TelemetryEmitter

    executor: OperationExecutor
    maintenance: MaintenanceBackend
    if simulate is not None:
        state = SimulationState()
        executor = ScriptedExecutor(simulate, delay=simulate_delay, state=state)
        maintenance = ScriptedMaintenance(state, delay=simulate_delay)
    else:
        executor = CommandExecutor()
        maintenance = CommandMaintenance()

    async def prompt_password() -> str | None:
        with display.suspended():
            answer: str = await asyncio.to_thread(
                typer.prompt, "Password", hide_input=True, default="", show_default=False
            )
        return answer or None

    broker = PromptCredentialBroker(
        prompt_password,
        config.credentials,
        verify=None if simulate is not None else sudo_password_is_valid,
    )

    return SessionController(
        executor,
        config=config,
        broker=broker,
        recovery=RecoveryCoordinator(maintenance, broker, config.credentials),
        telemetry=TelemetryEmitter(config.telemetry),
        notifier=NotificationManager(config.notifications),
    )


def _run_operation(
    mode: OperationMode,
    name: str,
    source: SourceType,
    repo: str | None,
    simulate: Scenario | None,
    simulate_delay: float,
    reduce_prompts: bool,
    yes: bool,
    verbose: bool,
    log_level: LogLevel | None,
) -> int:
    config = _load_config(reduce_prompts, log_level)
    configure_logging(config.log_level, config.log_file)

    target = PackageTarget(
        name=name,
        source=PackageSource(id=repo or source.value, source_type=source),
        repo_hint=repo,
    )
    display = SessionDisplay(console, verbose=verbose)
    controller = _build_controller(config, display, simulate, simulate_delay)

    if simulate is not None:
        console.print(f"[yellow]Simulation: {simulate.value} - no changes will be made[/yellow]")
    console.print(f"[dim]{command_preview(target, mode)}[/dim]")

    async def run() -> int:
        async with controller:
            return await run_operation(
                controller,
                target,
                mode,
                display,
                assume_yes=yes,
                confirm=lambda question: typer.confirm(question, default=True),
            )

    code = asyncio.run(run())
    _print_outcome(mode, name, code)
    return code


def _print_outcome(mode: OperationMode, name: str, code: int) -> None:
    done = "installed" if mode == OperationMode.INSTALL else "removed"
    if code == 0:
        console.print(f"[green]✓ {name} {done}[/green]")
    elif code == 130:
        console.print("[yellow]Cancelled[/yellow]")
    elif code == 2:
        console.print("[yellow]A full system upgrade is required first[/yellow]")
    else:
        console.print(f"[red]✗ {name} was not {done}[/red]")


SourceOption = Annotated[
    SourceType,
    typer.Option("--source", "-s", help="Where the package comes from.", case_sensitive=False),
]
RepoOption = Annotated[
    str | None,
    typer.Option("--repo", "-r", help="Repository (or Flatpak remote) to use."),
]
SimulateOption = Annotated[
    Scenario | None,
    typer.Option("--simulate", help="Replay a canned scenario instead of touching the system."),
]
SimulateDelayOption = Annotated[
    float,
    typer.Option("--simulate-delay", hidden=True, help="Seconds between simulated lines."),
]
ReducePromptsOption = Annotated[
    bool,
    typer.Option(
        "--reduce-prompts",
        help="Ask for the password once and reuse it for this session.",
    ),
]
YesOption = Annotated[
    bool,
    typer.Option("--yes", "-y", help="Accept suggested fixes without asking."),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Stream the package manager output."),
]
LogLevelOption = Annotated[
    LogLevel | None,
    typer.Option("--log-level", help="Diagnostic log level.", case_sensitive=False),
]


@app.command()
def install(
    name: Annotated[str, typer.Argument(help="Package to install.")],
    source: SourceOption = SourceType.REPO,
    repo: RepoOption = None,
    simulate: SimulateOption = None,
    simulate_delay: SimulateDelayOption = 0.3,
    reduce_prompts: ReducePromptsOption = False,
    yes: YesOption = False,
    verbose: VerboseOption = False,
    log_level: LogLevelOption = None,
) -> None:
    """Install a package with live progress and guided recovery."""
    code = _run_operation(
        OperationMode.INSTALL,
        name,
        source,
        repo,
        simulate,
        simulate_delay,
        reduce_prompts,
        yes,
        verbose,
        log_level,
    )
    raise typer.Exit(code)


@app.command()
def uninstall(
    name: Annotated[str, typer.Argument(help="Package to remove.")],
    source: SourceOption = SourceType.REPO,
    repo: RepoOption = None,
    simulate: SimulateOption = None,
    simulate_delay: SimulateDelayOption = 0.3,
    reduce_prompts: ReducePromptsOption = False,
    yes: YesOption = False,
    verbose: VerboseOption = False,
    log_level: LogLevelOption = None,
) -> None:
    """Remove a package with live progress."""
    code = _run_operation(
        OperationMode.UNINSTALL,
        name,
        source,
        repo,
        simulate,
        simulate_delay,
        reduce_prompts,
        yes,
        verbose,
        log_level,
    )
    raise typer.Exit(code)


@app.command("classify")
def classify_lines(
    lines: Annotated[list[str], typer.Argument(help="Diagnostic lines to classify.")],
) -> None:
    """Show how diagnostic lines are classified."""
    table = Table(title="Classification")
    table.add_column("Line", style="dim", overflow="fold")
    table.add_column("Kind", style="cyan")
    table.add_column("Title")
    table.add_column("Recovery")
    table.add_column("Technical")

    for text in lines:
        result = classify(text)
        if result is None:
            table.add_row(text, "-", "-", "-", "-")
            continue
        table.add_row(
            text,
            result.kind.value,
            result.title,
            RECOVERY_LABELS[result.recovery] if result.recovery else "-",
            "yes" if result.technical else "no",
        )

    console.print(table)


config_app = typer.Typer(
    name="config",
    help="Manage configuration.",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")


@config_app.command("show")
def config_show() -> None:
    """Show current configuration."""
    config_manager = _get_config_manager()
    try:
        config = config_manager.load()
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(EXIT_ERROR) from e

    console.print(f"[bold]Configuration File:[/bold] {config_manager.config_path}")
    console.print()
    console.print(
        yaml.dump(config.model_dump(mode="json"), default_flow_style=False, sort_keys=False)
    )


@config_app.command("init")
def config_init(
    force: Annotated[
        bool,
        typer.Option(
            "--force",
            "-f",
            help="Overwrite existing configuration.",
        ),
    ] = False,
) -> None:
    """Initialize configuration file."""
    config_manager = _get_config_manager()

    if config_manager.init_config(force=force):
        console.print(f"[green]Configuration initialized: {config_manager.config_path}[/green]")
    else:
        console.print(
            f"[yellow]Configuration already exists: {config_manager.config_path}[/yellow]"
        )
        console.print("Use --force to overwrite.")


@config_app.command("path")
def config_path() -> None:
    """Show configuration file path."""
    console.print(str(_get_config_manager().config_path))


if __name__ == "__main__":
    app()
