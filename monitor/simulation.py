"""Scripted executor and maintenance backend.

These collaborators replay canned package manager output with realistic
pacing and never touch the system. They back the CLI's ``--simulate``
option and are handy for demonstrating every recovery path.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from .errors import ExecutorLaunchError, RemedyError
from .executor import command_preview
from .interfaces import ExecutionHandle, MaintenanceBackend, OperationExecutor
from .streaming import TerminalOutcome, line, terminal

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator

    from .credentials import Credential
    from .models import OperationMode, PackageTarget
    from .streaming import ExecutorEvent

logger = structlog.get_logger(__name__)


class Scenario(str, Enum):
    """Canned outcomes of a simulated operation."""

    SUCCESS = "success"
    AUR_BUILD = "aur-build"
    LOCKED_DATABASE = "locked-database"
    KEYRING_FAILURE = "keyring-failure"
    UPDATE_REQUIRED = "update-required"
    LAUNCH_FAILURE = "launch-failure"


@dataclass
class Script:
    """Lines to print and the outcome to report."""

    lines: list[str]
    outcome: TerminalOutcome
    # Whether the failure disappears once the matching remedy has run
    healed_by_remedy: bool = False
    healed_lines: list[str] = field(default_factory=list)


_REPO_SUCCESS = [
    "resolving dependencies...",
    "looking for conflicting packages...",
    "Packages (1) {name}-1.0-1",
    ":: Proceed with installation? [Y/n]",
    ":: Retrieving packages...",
    " {name}-1.0-1-x86_64 downloading...",
    "downloading {name}-1.0-1-x86_64.pkg.tar.zst 35%",
    "downloading {name}-1.0-1-x86_64.pkg.tar.zst 100%",
    "(1/1) checking keys in keyring 100%",
    "(1/1) checking package integrity 100%",
    "(1/1) installing {name} 100%",
    ":: Running post-transaction hooks...",
]

SCRIPTS: dict[Scenario, Script] = {
    Scenario.SUCCESS: Script(lines=_REPO_SUCCESS, outcome=TerminalOutcome.SUCCESS),
    Scenario.AUR_BUILD: Script(
        lines=[
            "Checking dependencies",
            "Cloning into '{name}'...",
            "==> Making package: {name} 1.0-1",
            "==> Running makepkg",
            "==> Retrieving sources...",
            "==> Starting build()...",
            "compiling src/main.c",
            "compiling src/util.c",
            "compiling src/ui.c",
            "==> Entering fakeroot environment...",
            "==> Finished making: {name} 1.0-1",
            "(1/1) installing {name} 100%",
        ],
        outcome=TerminalOutcome.SUCCESS,
    ),
    Scenario.LOCKED_DATABASE: Script(
        lines=[
            ":: Synchronizing package databases...",
            "error: failed to init transaction (unable to lock database)",
            "error: could not lock database: File exists",
            "  if you're sure a package manager is not already",
            "  running, you can remove /var/lib/pacman/db.lck",
        ],
        outcome=TerminalOutcome.FAILURE,
        healed_by_remedy=True,
        healed_lines=_REPO_SUCCESS,
    ),
    Scenario.KEYRING_FAILURE: Script(
        lines=[
            "resolving dependencies...",
            ":: Retrieving packages...",
            "downloading {name}-1.0-1-x86_64.pkg.tar.zst 100%",
            "(1/1) checking keys in keyring 100%",
            "error: {name}: signature from \"Packager <packager@archlinux.org>\" is unknown trust",
            ":: File /var/cache/pacman/pkg/{name}.pkg.tar.zst is corrupted "
            "(invalid or corrupted package (PGP signature)).",
            "error: failed to commit transaction (invalid or corrupted package)",
            "Errors occurred, no packages were upgraded.",
        ],
        outcome=TerminalOutcome.FAILURE,
        healed_by_remedy=True,
        healed_lines=_REPO_SUCCESS,
    ),
    Scenario.UPDATE_REQUIRED: Script(
        lines=[
            "resolving dependencies...",
            ":: Retrieving packages...",
            "error: failed retrieving file '{name}-1.0-1-x86_64.pkg.tar.zst' from mirror : "
            "The requested URL returned error: 404",
            "warning: failed to retrieve some files",
            "error: failed to commit transaction (failed to retrieve some files)",
        ],
        outcome=TerminalOutcome.UPDATE_REQUIRED,
        healed_by_remedy=True,
        healed_lines=_REPO_SUCCESS,
    ),
    Scenario.LAUNCH_FAILURE: Script(lines=[], outcome=TerminalOutcome.FAILURE),
}


@dataclass
class SimulationState:
    """State shared by a scripted executor and its maintenance backend."""

    healed: bool = False
    remedies_run: list[str] = field(default_factory=list)


class ScriptedHandle(ExecutionHandle):
    """A simulated operation replaying a script."""

    def __init__(self, name: str, lines: list[str], outcome: TerminalOutcome, delay: float) -> None:
        self._name = name
        self._lines = lines
        self._outcome = outcome
        self._delay = delay
        self._aborted = asyncio.Event()

    @property
    def description(self) -> str:
        return f"simulated {self._name}"

    def abort(self) -> None:
        self._aborted.set()

    async def events(self) -> AsyncGenerator[ExecutorEvent, None]:
        for text in self._lines:
            try:
                async with asyncio.timeout(self._delay):
                    await self._aborted.wait()
            except TimeoutError:
                yield line(text.format(name=self._name))
                continue
            # Aborted: stay silent, the controller ends the run on acknowledgment
            await asyncio.Event().wait()
        yield terminal(self._outcome, 0 if self._outcome == TerminalOutcome.SUCCESS else 1)


class ScriptedExecutor(OperationExecutor):
    """Operation executor replaying a canned scenario."""

    def __init__(
        self,
        scenario: Scenario = Scenario.SUCCESS,
        *,
        delay: float = 0.3,
        state: SimulationState | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            scenario: Scenario to replay.
            delay: Seconds between output lines.
            state: Shared state; once a remedy heals it, the scenario succeeds.
        """
        self.scenario = scenario
        self.delay = delay
        self.state = state or SimulationState()
        self.launches = 0

    def command_preview(self, target: PackageTarget, mode: OperationMode) -> str:
        return command_preview(target, mode)

    async def launch(
        self,
        target: PackageTarget,
        mode: OperationMode,
        credential: Credential | None,
    ) -> ExecutionHandle:
        self.launches += 1
        script = SCRIPTS[self.scenario]

        if self.scenario == Scenario.LAUNCH_FAILURE:
            raise ExecutorLaunchError("pkexec: helper not found", command=["pkexec"])

        if script.healed_by_remedy and self.state.healed:
            lines, outcome = script.healed_lines, TerminalOutcome.SUCCESS
        else:
            lines, outcome = script.lines, script.outcome

        logger.debug("simulated_launch", package=target.name, scenario=self.scenario.value)
        return ScriptedHandle(target.name, lines, outcome, self.delay)

    async def abort(self, handle: ExecutionHandle) -> None:
        if isinstance(handle, ScriptedHandle):
            handle.abort()
        await asyncio.sleep(self.delay)


class ScriptedMaintenance(MaintenanceBackend):
    """Maintenance backend that pretends to repair the system."""

    def __init__(
        self,
        state: SimulationState | None = None,
        *,
        delay: float = 0.3,
        fail: bool = False,
    ) -> None:
        self.state = state or SimulationState()
        self.delay = delay
        self.fail = fail

    async def _script(self, name: str, lines: list[str]) -> AsyncIterator[str]:
        self.state.remedies_run.append(name)
        for text in lines:
            await asyncio.sleep(self.delay)
            yield text
        if self.fail:
            raise RemedyError(f"{name} failed", output=lines[-1] if lines else "")
        self.state.healed = True

    def unlock_resource(self, credential: Credential | None) -> AsyncIterator[str]:
        return self._script("unlock", ["Removing stale lock file /var/lib/pacman/db.lck"])

    def repair_trust_store(self, credential: Credential | None) -> AsyncIterator[str]:
        return self._script(
            "repair-keyring",
            [
                "Initializing keyring...",
                "gpg: /etc/pacman.d/gnupg/trustdb.gpg: trustdb created",
                "Populating keyring...",
                "==> Updating trust database...",
            ],
        )

    def refresh_catalog(self, credential: Credential | None) -> AsyncIterator[str]:
        return self._script(
            "refresh",
            [
                ":: Synchronizing package databases...",
                " core downloading...",
                " extra downloading...",
            ],
        )

    def clean_cache(self, credential: Credential | None) -> AsyncIterator[str]:
        return self._script(
            "clean-cache", ["Cache directory: /var/cache/pacman/pkg/", "removing old packages..."]
        )

    def system_upgrade(self, credential: Credential | None) -> AsyncIterator[str]:
        return self._script(
            "system-upgrade",
            [
                ":: Synchronizing package databases...",
                ":: Starting full system upgrade...",
                "(1/3) upgrading glibc",
                "(2/3) upgrading linux",
                "(3/3) upgrading mesa",
            ],
        )
