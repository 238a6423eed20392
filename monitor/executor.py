"""Subprocess-backed operation executor.

CommandExecutor runs the system package manager for one install or
uninstall and exposes its output as an executor event stream. Privileged
steps are wrapped in ``sudo -S`` when a credential is supplied and in
``pkexec`` otherwise, so the system prompt is used when no password was
collected up front. makepkg escalates on its own and reads the collected
credential through a ``SUDO_ASKPASS`` helper.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shlex
import shutil
import signal
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from .errors import ExecutorLaunchError
from .interfaces import ExecutionHandle, OperationExecutor
from .models import OperationMode, SourceType
from .streaming import LineEvent, StreamEventQueue, TerminalOutcome, line, terminal

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator

    from .credentials import Credential
    from .models import PackageTarget
    from .streaming import ExecutorEvent

logger = structlog.get_logger(__name__)

AUR_BASE_URL = "https://aur.archlinux.org"
DEFAULT_FLATPAK_REMOTE = "flathub"
DEFAULT_ABORT_GRACE_SECONDS = 5.0
ASKPASS_HELPER_NAME = ".askpass"

# Output of a failed repository install that means the local catalog is stale
UPDATE_REQUIRED_MARKERS = (
    "404 not found",
    "failed retrieving file",
    "target not found",
    "unsatisfiable dependency",
    "cannot resolve",
)


@dataclass(frozen=True)
class CommandStep:
    """One command of an operation.

    Attributes:
        cmd: Command and arguments.
        privileged: Whether the command needs elevation.
        subdir: Working directory relative to the build directory, if any.
        askpass: Whether the command calls sudo itself and reads the
            collected credential through SUDO_ASKPASS.
    """

    cmd: tuple[str, ...]
    privileged: bool = True
    subdir: str | None = None
    askpass: bool = False


def build_steps(target: PackageTarget, mode: OperationMode) -> list[CommandStep]:
    """Return the commands that perform an operation.

    Args:
        target: Package to operate on.
        mode: Install or uninstall.

    Returns:
        Commands to run in order.
    """
    source_type = target.source.source_type

    if mode == OperationMode.UNINSTALL:
        if source_type == SourceType.FLATPAK:
            return [CommandStep(("flatpak", "uninstall", "-y", target.name), privileged=False)]
        return [CommandStep(("pacman", "-Rns", "--noconfirm", target.name))]

    if source_type == SourceType.AUR:
        return [
            CommandStep(
                ("git", "clone", f"{AUR_BASE_URL}/{target.name}.git"),
                privileged=False,
                subdir=".",
            ),
            # makepkg refuses to run as root and escalates for the install itself
            CommandStep(
                ("makepkg", "-si", "--noconfirm"),
                privileged=False,
                subdir=target.name,
                askpass=True,
            ),
        ]

    if source_type == SourceType.FLATPAK:
        remote = target.repo_hint or DEFAULT_FLATPAK_REMOTE
        return [
            CommandStep(("flatpak", "install", "-y", remote, target.name), privileged=False)
        ]

    name = f"{target.repo_hint}/{target.name}" if target.repo_hint else target.name
    return [CommandStep(("pacman", "-S", "--noconfirm", name))]


def command_preview(target: PackageTarget, mode: OperationMode) -> str:
    """Return the shell-style command shown to the user."""
    return "$ " + " && ".join(" ".join(step.cmd) for step in build_steps(target, mode))


def needs_system_update(lines: list[str]) -> bool:
    """Whether failed repository output indicates a stale package catalog."""
    return any(marker in text.lower() for text in lines for marker in UPDATE_REQUIRED_MARKERS)


class CommandExecutionHandle(ExecutionHandle):
    """A running CommandExecutor operation."""

    def __init__(
        self,
        executor: CommandExecutor,
        target: PackageTarget,
        mode: OperationMode,
        steps: list[CommandStep],
        credential: Credential | None,
        workdir: Path | None,
    ) -> None:
        self._executor = executor
        self.target = target
        self.mode = mode
        self._steps = steps
        self._credential = credential
        self._workdir = workdir
        self._process: asyncio.subprocess.Process | None = None
        self._aborted = False
        self._abort_done = asyncio.Event()
        # Held while a later step starts so an abort sees the new process
        self._spawn_lock = asyncio.Lock()
        self._log = logger.bind(component="command_execution", package=target.name)

    @property
    def description(self) -> str:
        return f"{self.mode.value} {self.target.name}"

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    async def spawn_first(self) -> None:
        self._process = await self._spawn(self._steps[0])

    async def _spawn(self, step: CommandStep) -> asyncio.subprocess.Process:
        cmd = self._executor.wrap(step, self._credential)
        cwd: Path | None = None
        if step.subdir is not None and self._workdir is not None:
            cwd = self._workdir / step.subdir

        if shutil.which(cmd[0]) is None:
            raise ExecutorLaunchError(f"Command not found: {cmd[0]}", command=cmd)

        feed_password = cmd[:2] == ["sudo", "-S"] and self._credential is not None
        env = self._askpass_env() if step.askpass else None
        self._log.debug("spawning_command", command=" ".join(step.cmd), cwd=str(cwd))

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if feed_password else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                # sudo only consults SUDO_ASKPASS without a controlling terminal
                start_new_session=env is not None,
            )
        except OSError as e:
            raise ExecutorLaunchError(f"Failed to start {cmd[0]}: {e}", command=cmd) from e

        if feed_password and process.stdin is not None and self._credential is not None:
            process.stdin.write((self._credential.reveal() + "\n").encode("utf-8"))
            with contextlib.suppress(ConnectionResetError, BrokenPipeError):
                await process.stdin.drain()
            process.stdin.close()

        return process

    def _askpass_env(self) -> dict[str, str] | None:
        """Environment pointing sudo at a helper that prints the credential.

        The helper lives in the build directory and is removed with it. Without
        a credential the command keeps the terminal prompt.
        """
        if self._credential is None or self._workdir is None:
            return None
        helper = self._workdir / ASKPASS_HELPER_NAME
        helper.write_text(f"#!/bin/sh\nprintf '%s\\n' {shlex.quote(self._credential.reveal())}\n")
        helper.chmod(0o700)
        return {**os.environ, "SUDO_ASKPASS": str(helper)}

    async def events(self) -> AsyncGenerator[ExecutorEvent, None]:
        output: list[str] = []
        exit_code: int | None = None

        try:
            for index, step in enumerate(self._steps):
                if index > 0:
                    try:
                        async with self._spawn_lock:
                            if self._aborted:
                                break
                            self._process = await self._spawn(step)
                    except ExecutorLaunchError as e:
                        yield line(f"Error launching: {e}")
                        exit_code = None
                        break

                process = self._process
                if process is None:
                    break

                async for text in self._stream(process):
                    output.append(text)
                    yield line(text)

                exit_code = await process.wait()
                if exit_code != 0:
                    break
        finally:
            if self._workdir is not None:
                shutil.rmtree(self._workdir, ignore_errors=True)

        if self._aborted:
            # Abort acknowledgment is delivered before the closing event
            await self._abort_done.wait()

        yield terminal(self._outcome(exit_code, output), exit_code)

    def _outcome(self, exit_code: int | None, output: list[str]) -> TerminalOutcome:
        if exit_code == 0 and not self._aborted:
            return TerminalOutcome.SUCCESS
        if (
            not self._aborted
            and self.mode == OperationMode.INSTALL
            and self.target.source.source_type == SourceType.REPO
            and needs_system_update(output)
        ):
            self._log.info("catalog_out_of_date")
            return TerminalOutcome.UPDATE_REQUIRED
        return TerminalOutcome.FAILURE

    async def _stream(self, process: asyncio.subprocess.Process) -> AsyncIterator[str]:
        queue = StreamEventQueue()

        async def read_stream(stream: asyncio.StreamReader | None, stream_name: str) -> None:
            if stream is None:
                return
            while True:
                try:
                    raw = await stream.readline()
                except (ValueError, OSError) as e:
                    self._log.warning("stream_read_error", stream=stream_name, error=str(e))
                    break
                if not raw:
                    break
                await queue.put(line(raw.decode("utf-8", errors="replace").rstrip()))

        async with asyncio.TaskGroup() as tg:
            stdout_task = tg.create_task(read_stream(process.stdout, "stdout"))
            stderr_task = tg.create_task(read_stream(process.stderr, "stderr"))

            async def close_when_done() -> None:
                await stdout_task
                await stderr_task
                await queue.close()

            tg.create_task(close_when_done())

            async for event in queue:
                if isinstance(event, LineEvent):
                    yield event.text

        if queue.dropped_count > 0:
            self._log.warning("events_dropped", dropped_count=queue.dropped_count)

    async def terminate(self, grace_seconds: float) -> None:
        """Stop the running command: SIGTERM, then SIGKILL after a grace period."""
        self._aborted = True
        try:
            async with self._spawn_lock:
                process = self._process
            if process is None or process.returncode is not None:
                return
            self._log.info("terminating_command", pid=process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.send_signal(signal.SIGTERM)
            try:
                async with asyncio.timeout(grace_seconds):
                    await process.wait()
            except TimeoutError:
                self._log.warning("terminate_timeout_killing", pid=process.pid)
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        finally:
            self._abort_done.set()


class CommandExecutor(OperationExecutor):
    """Operation executor that runs pacman, makepkg and flatpak."""

    def __init__(
        self,
        *,
        elevate: bool = True,
        abort_grace_seconds: float = DEFAULT_ABORT_GRACE_SECONDS,
        build_root: Path | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            elevate: Wrap privileged steps in sudo or pkexec. Disable when
                already running with the required privileges.
            abort_grace_seconds: Time between SIGTERM and SIGKILL on abort.
            build_root: Parent directory for AUR build directories.
        """
        self.elevate = elevate and os.geteuid() != 0
        self.abort_grace_seconds = abort_grace_seconds
        self.build_root = build_root
        self._log = logger.bind(component="command_executor")

    def wrap(self, step: CommandStep, credential: Credential | None) -> list[str]:
        """Return the command line for a step, with the privilege wrapper applied."""
        if not (step.privileged and self.elevate):
            return list(step.cmd)
        if credential is not None:
            return ["sudo", "-S", "-p", "", *step.cmd]
        return ["pkexec", *step.cmd]

    def command_preview(self, target: PackageTarget, mode: OperationMode) -> str:
        return command_preview(target, mode)

    async def launch(
        self,
        target: PackageTarget,
        mode: OperationMode,
        credential: Credential | None,
    ) -> ExecutionHandle:
        steps = build_steps(target, mode)
        workdir: Path | None = None
        if any(step.subdir is not None for step in steps):
            workdir = Path(tempfile.mkdtemp(prefix="store-monitor-", dir=self.build_root))

        handle = CommandExecutionHandle(self, target, mode, steps, credential, workdir)
        try:
            await handle.spawn_first()
        except ExecutorLaunchError:
            if workdir is not None:
                shutil.rmtree(workdir, ignore_errors=True)
            raise

        self._log.info("operation_launched", package=target.name, mode=mode.value)
        return handle

    async def abort(self, handle: ExecutionHandle) -> None:
        if not isinstance(handle, CommandExecutionHandle):
            raise TypeError(f"Not a CommandExecutor handle: {handle!r}")
        await handle.terminate(self.abort_grace_seconds)
        self._log.info("operation_aborted", package=handle.target.name)
