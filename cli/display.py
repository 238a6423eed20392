"""Live terminal display of a monitored session using Rich."""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn, TimeElapsedColumn
from rich.text import Text

from monitor.models import PHASE_ORDER, RecoveryActionKind, SessionStatus

if TYPE_CHECKING:
    from collections.abc import Iterator

    from monitor.models import SessionSnapshot

RECOVERY_LABELS: dict[RecoveryActionKind, str] = {
    RecoveryActionKind.UNLOCK_RESOURCE: "Remove the stale database lock",
    RecoveryActionKind.REPAIR_TRUST_STORE: "Repair the signing keyring",
    RecoveryActionKind.REFRESH_AND_RETRY: "Refresh package databases and retry",
    RecoveryActionKind.CLEAN_CACHE: "Clean the package cache",
    RecoveryActionKind.ESCALATE_SYSTEM_UPGRADE: "Run a full system upgrade",
    RecoveryActionKind.RETRY: "Try again",
    RecoveryActionKind.MANUAL: "Manual intervention required",
}


def render_stepper(snapshot: SessionSnapshot) -> Text:
    """Render the phase stepper: done phases ticked, the current one highlighted."""
    current = PHASE_ORDER.index(snapshot.phase)
    finished = snapshot.status == SessionStatus.SUCCESS
    text = Text()
    for index, phase in enumerate(PHASE_ORDER):
        if index:
            text.append(" ─ ", style="dim")
        if finished or index < current:
            text.append(f"✓ {phase.value}", style="green")
        elif index == current:
            text.append(f"● {phase.value}", style="bold cyan")
        else:
            text.append(f"○ {phase.value}", style="dim")
    return text


def render_error(snapshot: SessionSnapshot) -> Panel:
    """Render the classified error of a failed session."""
    error = snapshot.classified_error
    body = Text()

    if error is None:
        body.append("The operation failed.")
        title = "Operation Failed"
    else:
        title = error.title
        body.append(error.description)
        if error.technical and error.raw_excerpt:
            body.append("\n\n")
            body.append(error.raw_excerpt, style="dim")

    if snapshot.offered_recovery is not None:
        body.append("\n\nSuggested fix: ", style="bold")
        body.append(RECOVERY_LABELS[snapshot.offered_recovery])
    elif error is not None and error.recovery == RecoveryActionKind.MANUAL:
        body.append("\n\n")
        body.append(RECOVERY_LABELS[RecoveryActionKind.MANUAL], style="bold")

    return Panel(body, title=f"[bold red]{title}[/bold red]", border_style="red")


def render_update_required(snapshot: SessionSnapshot) -> Panel:
    name = snapshot.target.name if snapshot.target else "The package"
    return Panel(
        Text(
            f"{name} is not in the current package database. This usually means "
            "your system is out of date; a full system upgrade is needed first."
        ),
        title="[bold yellow]System Update Required[/bold yellow]",
        border_style="yellow",
    )


class SessionDisplay:
    """Live progress view: phase stepper, progress bar and status text.

    With ``verbose`` the session log is streamed above the live view.
    """

    def __init__(self, console: Console | None = None, *, verbose: bool = False) -> None:
        """Initialize the display.

        Args:
            console: Optional Rich console to use. Creates one if not provided.
            verbose: Print every log line as it arrives.
        """
        self.console = console or Console()
        self.verbose = verbose
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.fields[package]}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("•"),
            TextColumn("{task.fields[status]}"),
            TimeElapsedColumn(),
            console=self.console,
        )
        self._task: TaskID | None = None
        self._stepper = Text()
        self._live: Live | None = None
        self._printed_run = -1
        self._printed_lines = 0

    def _renderable(self) -> Group:
        return Group(self._stepper, self._progress)

    def start(self) -> None:
        if self._live is not None:
            return
        self._live = Live(self._renderable(), console=self.console, refresh_per_second=10)
        self._live.start()

    def stop(self) -> None:
        if self._live is not None:
            self._live.stop()
            self._live = None

    @contextmanager
    def suspended(self) -> Iterator[None]:
        """Pause the live view, e.g. while prompting the user."""
        was_live = self._live is not None
        self.stop()
        try:
            yield
        finally:
            if was_live:
                self.start()

    def update(self, snapshot: SessionSnapshot) -> None:
        """Refresh the view from a session snapshot."""
        package = snapshot.target.name if snapshot.target else ""
        status = snapshot.status_text
        if snapshot.awaiting_credential:
            status = "Waiting for authentication..."
        elif snapshot.recovering:
            status = f"[yellow]Repairing: {status or 'working'}...[/yellow]"

        if self._task is None:
            self._task = self._progress.add_task(package, total=100, package=package, status=status)
        self._progress.update(
            self._task,
            completed=snapshot.visual_progress,
            package=package,
            status=status,
        )
        self._stepper = render_stepper(snapshot)

        if self.verbose:
            self._print_new_lines(snapshot)

        if self._live is not None:
            self._live.update(self._renderable())

    def _print_new_lines(self, snapshot: SessionSnapshot) -> None:
        lines = snapshot.log_lines
        if snapshot.run_id != self._printed_run or len(lines) < self._printed_lines:
            self._printed_run = snapshot.run_id
            self._printed_lines = 0
        for text in lines[self._printed_lines :]:
            self.console.print(Text(text, style="dim"))
        self._printed_lines = len(lines)

    def show_error(self, snapshot: SessionSnapshot) -> None:
        with self.suspended():
            self.console.print(render_error(snapshot))

    def show_update_required(self, snapshot: SessionSnapshot) -> None:
        with self.suspended():
            self.console.print(render_update_required(snapshot))
