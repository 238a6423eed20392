"""Tests for the command-backed maintenance remedies."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from monitor.credentials import Credential
from monitor.errors import RemedyError
from monitor.maintenance import CommandMaintenance, lock_holder_pid, running_process_pid

# Larger than any pid_max the kernel allows
DEAD_PID = 99999999


async def drain(lines) -> list[str]:
    return [text async for text in lines]


class RecordingMaintenance(CommandMaintenance):
    """Maintenance backend that records commands instead of running them."""

    def __init__(self, lock_path: Path) -> None:
        super().__init__(elevate=False, lock_path=lock_path)
        self.commands: list[list[str]] = []

    async def _run(self, cmd, credential):
        self.commands.append(cmd)
        yield f"ran {cmd[0]}"


class TestLockHolderPid:
    """Tests for lock_holder_pid()."""

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that no file means no holder."""
        assert lock_holder_pid(tmp_path / "db.lck") is None

    def test_empty_file(self, tmp_path: Path) -> None:
        """Test that an empty lock file names no holder."""
        lock = tmp_path / "db.lck"
        lock.write_text("")
        assert lock_holder_pid(lock) is None

    def test_live_process(self, tmp_path: Path) -> None:
        """Test that a running process is reported."""
        lock = tmp_path / "db.lck"
        lock.write_text(f"{os.getpid()}\n")
        assert lock_holder_pid(lock) == os.getpid()

    def test_dead_process(self, tmp_path: Path) -> None:
        """Test that an exited process means a stale lock."""
        lock = tmp_path / "db.lck"
        lock.write_text(str(DEAD_PID))
        assert lock_holder_pid(lock) is None


class TestRunningProcessPid:
    """Tests for running_process_pid()."""

    def fake_proc(self, root: Path, processes: dict[str, str]) -> Path:
        for pid, comm in processes.items():
            (root / pid).mkdir()
            (root / pid / "comm").write_text(f"{comm}\n")
        (root / "self").mkdir()
        return root

    def test_finds_process_by_name(self, tmp_path: Path) -> None:
        """Test that a process is matched on its command name."""
        proc = self.fake_proc(tmp_path, {"12": "bash", "345": "pacman"})
        assert running_process_pid("pacman", proc) == 345

    def test_no_match(self, tmp_path: Path) -> None:
        """Test that similar names do not match."""
        proc = self.fake_proc(tmp_path, {"12": "pacman-key", "13": "bash"})
        assert running_process_pid("pacman", proc) is None

    def test_missing_proc(self, tmp_path: Path) -> None:
        """Test that an unreadable process table finds nothing."""
        assert running_process_pid("pacman", tmp_path / "absent") is None


class TestUnlockResource:
    """Tests for CommandMaintenance.unlock_resource()."""

    @pytest.mark.asyncio
    async def test_no_lock_is_a_noop(self, tmp_path: Path) -> None:
        """Test that unlocking twice is harmless."""
        backend = RecordingMaintenance(tmp_path / "db.lck")
        lines = await drain(backend.unlock_resource(None))
        assert "nothing to remove" in lines[0]
        assert backend.commands == []

    @pytest.mark.asyncio
    async def test_refuses_live_lock(self, tmp_path: Path) -> None:
        """Test that a lock held by a running process is not removed."""
        lock = tmp_path / "db.lck"
        lock.write_text(str(os.getpid()))
        backend = RecordingMaintenance(lock)

        with pytest.raises(RemedyError, match="in use by process"):
            await drain(backend.unlock_resource(None))
        assert lock.exists()

    @pytest.mark.asyncio
    async def test_refuses_empty_lock_with_running_package_manager(self, tmp_path: Path) -> None:
        """Test that an empty lock is kept while the package manager runs."""
        lock = tmp_path / "db.lck"
        lock.write_text("")
        backend = RecordingMaintenance(lock)

        with (
            patch("monitor.maintenance.running_process_pid", return_value=4242) as finder,
            pytest.raises(RemedyError, match="in use by process 4242"),
        ):
            await drain(backend.unlock_resource(None))

        finder.assert_called_once_with("pacman")
        assert lock.exists()
        assert backend.commands == []

    @pytest.mark.asyncio
    async def test_removes_stale_lock(self, tmp_path: Path) -> None:
        """Test that a stale lock file is deleted."""
        lock = tmp_path / "db.lck"
        lock.write_text("")
        backend = CommandMaintenance(elevate=False, lock_path=lock)

        with patch("monitor.maintenance.running_process_pid", return_value=None):
            lines = await drain(backend.unlock_resource(None))

        assert not lock.exists()
        assert lines[-1] == "Lock removed."


class TestRemedies:
    """Tests for the remaining remedies' command sequences."""

    @pytest.mark.asyncio
    async def test_repair_trust_store(self, tmp_path: Path) -> None:
        """Test that the keyring is initialized then populated."""
        backend = RecordingMaintenance(tmp_path / "db.lck")
        lines = await drain(backend.repair_trust_store(None))

        assert backend.commands == [["pacman-key", "--init"], ["pacman-key", "--populate"]]
        assert lines[-1] == "Keyring repaired."

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("remedy", "cmd"),
        [
            ("refresh_catalog", ["pacman", "-Syy", "--noconfirm"]),
            ("clean_cache", ["pacman", "-Sc", "--noconfirm"]),
            ("system_upgrade", ["pacman", "-Syu", "--noconfirm"]),
        ],
    )
    async def test_single_command_remedies(
        self, tmp_path: Path, remedy: str, cmd: list[str]
    ) -> None:
        """Test the pacman command behind each remedy."""
        backend = RecordingMaintenance(tmp_path / "db.lck")
        await drain(getattr(backend, remedy)(None))
        assert backend.commands == [cmd]


class TestRun:
    """Tests for running remedy commands."""

    def test_wrap_with_credential(self) -> None:
        """Test sudo wrapping when a password was collected."""
        backend = CommandMaintenance()
        backend.elevate = True
        wrapped = backend._wrap(["pacman", "-Sc"], Credential.from_password("pw"))
        assert wrapped == ["sudo", "-S", "-p", "", "pacman", "-Sc"]
        assert backend._wrap(["pacman", "-Sc"], None) == ["pkexec", "pacman", "-Sc"]

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_output_streamed(self) -> None:
        """Test that merged output is yielded line by line."""
        backend = CommandMaintenance(elevate=False)
        lines = await drain(backend._run(["sh", "-c", "echo out; echo err >&2"], None))
        assert sorted(lines) == ["err", "out"]

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_failure_raises_with_output(self) -> None:
        """Test that a failing command raises with its output tail."""
        backend = CommandMaintenance(elevate=False)
        with pytest.raises(RemedyError, match="exited with code 2") as exc_info:
            await drain(backend._run(["sh", "-c", "echo bad thing; exit 2"], None))
        assert exc_info.value.output == "bad thing"

    @pytest.mark.asyncio
    async def test_missing_command_raises(self) -> None:
        """Test that a command that cannot start is a remedy failure."""
        backend = CommandMaintenance(elevate=False)
        with pytest.raises(RemedyError, match="Failed to start"):
            await drain(backend._run(["store-monitor-no-such-binary"], None))
