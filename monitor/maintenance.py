"""Privileged repair commands for the recovery coordinator.

CommandMaintenance implements each remedy with the package manager's own
tools. All remedies are idempotent: running one twice leaves the system in
the same state as running it once.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections import deque
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from .errors import RemedyError
from .interfaces import MaintenanceBackend

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .credentials import Credential

logger = structlog.get_logger(__name__)

DEFAULT_LOCK_PATH = Path("/var/lib/pacman/db.lck")
LOCK_OWNER_NAME = "pacman"
# Lines of output attached to a RemedyError
ERROR_TAIL_LINES = 20


def lock_holder_pid(lock_path: Path) -> int | None:
    """Return the live process holding a lock file, if any.

    Some tools write their PID into the lock file. A missing, empty or
    unreadable PID, or one whose process has exited, names no holder.
    """
    try:
        content = lock_path.read_text().strip()
    except OSError:
        return None

    if not content.isdigit():
        return None

    pid = int(content)
    if Path(f"/proc/{pid}").exists():
        return pid
    return None


def running_process_pid(name: str, proc_root: Path = Path("/proc")) -> int | None:
    """Return the PID of a running process with the given command name, if any.

    libalpm creates its lock file empty, so a live package manager is found
    by name rather than through the lock.
    """
    try:
        entries = list(proc_root.iterdir())
    except OSError:
        return None

    for entry in entries:
        if not entry.name.isdigit():
            continue
        try:
            comm = (entry / "comm").read_text().strip()
        except OSError:
            continue
        if comm == name:
            return int(entry.name)
    return None


class CommandMaintenance(MaintenanceBackend):
    """Maintenance backend running pacman and pacman-key."""

    def __init__(self, *, elevate: bool = True, lock_path: Path = DEFAULT_LOCK_PATH) -> None:
        """Initialize the backend.

        Args:
            elevate: Wrap commands in sudo or pkexec.
            lock_path: Package database lock file.
        """
        self.elevate = elevate and os.geteuid() != 0
        self.lock_path = lock_path
        self._log = logger.bind(component="maintenance")

    def _wrap(self, cmd: list[str], credential: Credential | None) -> list[str]:
        if not self.elevate:
            return cmd
        if credential is not None:
            return ["sudo", "-S", "-p", "", *cmd]
        return ["pkexec", *cmd]

    async def _run(self, cmd: list[str], credential: Credential | None) -> AsyncIterator[str]:
        """Run one command, yielding its merged output line by line.

        Raises:
            RemedyError: If the command cannot start or exits non-zero.
        """
        full_cmd = self._wrap(cmd, credential)
        feed_password = full_cmd[0] == "sudo" and credential is not None
        self._log.info("running_remedy_command", command=" ".join(cmd))

        try:
            process = await asyncio.create_subprocess_exec(
                *full_cmd,
                stdin=asyncio.subprocess.PIPE if feed_password else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise RemedyError(f"Failed to start {full_cmd[0]}: {e}") from e

        if feed_password and process.stdin is not None and credential is not None:
            process.stdin.write((credential.reveal() + "\n").encode("utf-8"))
            with contextlib.suppress(ConnectionResetError, BrokenPipeError):
                await process.stdin.drain()
            process.stdin.close()

        tail: deque[str] = deque(maxlen=ERROR_TAIL_LINES)
        stdout = process.stdout
        try:
            while stdout is not None:
                raw = await stdout.readline()
                if not raw:
                    break
                text = raw.decode("utf-8", errors="replace").rstrip()
                tail.append(text)
                yield text
        finally:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
            exit_code = await process.wait()

        if exit_code != 0:
            self._log.warning("remedy_command_failed", command=" ".join(cmd), exit_code=exit_code)
            raise RemedyError(
                f"{' '.join(cmd)} exited with code {exit_code}", output="\n".join(tail)
            )

    async def unlock_resource(self, credential: Credential | None) -> AsyncIterator[str]:
        if not self.lock_path.exists():
            yield f"No lock file at {self.lock_path}; nothing to remove."
            return

        pid = lock_holder_pid(self.lock_path) or running_process_pid(LOCK_OWNER_NAME)
        if pid is not None:
            raise RemedyError(
                f"The package database is in use by process {pid}. "
                "Wait for it to finish instead of removing the lock."
            )

        yield f"Removing stale lock file {self.lock_path}"
        async for text in self._run(["rm", "-f", str(self.lock_path)], credential):
            yield text
        yield "Lock removed."

    async def repair_trust_store(self, credential: Credential | None) -> AsyncIterator[str]:
        yield "Initializing keyring..."
        async for text in self._run(["pacman-key", "--init"], credential):
            yield text
        yield "Populating keyring..."
        async for text in self._run(["pacman-key", "--populate"], credential):
            yield text
        yield "Keyring repaired."

    async def refresh_catalog(self, credential: Credential | None) -> AsyncIterator[str]:
        yield "Refreshing package databases..."
        async for text in self._run(["pacman", "-Syy", "--noconfirm"], credential):
            yield text

    async def clean_cache(self, credential: Credential | None) -> AsyncIterator[str]:
        yield "Cleaning package cache..."
        async for text in self._run(["pacman", "-Sc", "--noconfirm"], credential):
            yield text

    async def system_upgrade(self, credential: Credential | None) -> AsyncIterator[str]:
        yield "Synchronizing databases and upgrading system..."
        async for text in self._run(["pacman", "-Syu", "--noconfirm"], credential):
            yield text
