"""Tests for the command line interface."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest
import structlog
from rich.console import Console
from typer.testing import CliRunner

from cli.display import render_error, render_stepper
from cli.main import app, configure_logging
from monitor.classifier import classify
from monitor.config import LogLevel
from monitor.models import (
    Phase,
    RecoveryActionKind,
    SessionSnapshot,
    SessionStatus,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the configuration at a temporary directory."""
    config_home = tmp_path / "xdg_config"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    return config_home / "store-monitor" / "config.yaml"


@pytest.fixture(autouse=True)
def wide_console() -> Iterator[None]:
    """Render CLI output without wrapping."""
    with patch("cli.main.console", Console(width=200)):
        yield


@pytest.fixture
def quiet() -> Iterator[None]:
    """Keep logging configuration and desktop notifications out of CLI runs."""
    with (
        patch("cli.main.configure_logging"),
        patch("monitor.notifications.shutil.which", return_value=None),
    ):
        yield


def simulate(*args: str, input: str | None = None):
    return runner.invoke(app, [*args, "--simulate-delay", "0"], input=input)


class TestMainApp:
    """Tests for the main CLI application."""

    def test_version(self) -> None:
        """Test --version flag."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "store-monitor" in result.stdout
        assert "version" in result.stdout

    def test_help(self) -> None:
        """Test --help flag."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "install" in result.stdout
        assert "uninstall" in result.stdout


class TestInstallCommand:
    """Tests for install and uninstall against simulated backends."""

    @pytest.mark.usefixtures("quiet")
    def test_install_success(self) -> None:
        """Test a clean simulated install."""
        result = simulate("install", "firefox", "--simulate", "success")
        assert result.exit_code == 0
        assert "pacman -S --noconfirm firefox" in result.stdout
        assert "firefox installed" in result.stdout

    @pytest.mark.usefixtures("quiet")
    def test_uninstall_success(self) -> None:
        """Test a simulated removal."""
        result = simulate("uninstall", "vlc", "--simulate", "success")
        assert result.exit_code == 0
        assert "pacman -Rns --noconfirm vlc" in result.stdout
        assert "vlc removed" in result.stdout

    @pytest.mark.usefixtures("quiet")
    def test_remedy_accepted_with_yes(self) -> None:
        """Test that --yes applies the suggested fix and retries."""
        result = simulate("install", "firefox", "--simulate", "locked-database", "--yes")
        assert result.exit_code == 0
        assert "firefox installed" in result.stdout

    @pytest.mark.usefixtures("quiet")
    def test_remedy_declined(self) -> None:
        """Test that declining the fix leaves the operation failed."""
        result = simulate("install", "firefox", "--simulate", "keyring-failure", input="n\n")
        assert result.exit_code == 1
        assert "Repair the signing keyring?" in result.stdout
        assert "firefox was not installed" in result.stdout

    @pytest.mark.usefixtures("quiet")
    def test_update_required_declined(self) -> None:
        """Test the dedicated exit code for a needed system upgrade."""
        result = simulate("install", "firefox", "--simulate", "update-required", input="n\n")
        assert result.exit_code == 2
        assert "full system upgrade is required" in result.stdout

    @pytest.mark.usefixtures("quiet")
    def test_update_required_escalated(self) -> None:
        """Test that accepting the upgrade completes the install."""
        result = simulate("install", "firefox", "--simulate", "update-required", "--yes")
        assert result.exit_code == 0

    @pytest.mark.usefixtures("quiet")
    def test_launch_failure(self) -> None:
        """Test that a failed launch is an error without a remedy prompt."""
        result = simulate("install", "firefox", "--simulate", "launch-failure", "--yes")
        assert result.exit_code == 1
        assert "Could Not Start Operation" in result.stdout

    @pytest.mark.usefixtures("quiet")
    def test_invalid_config(self, isolated_config: Path) -> None:
        """Test that a broken configuration aborts before running."""
        isolated_config.parent.mkdir(parents=True)
        isolated_config.write_text("log_capacity: -1\n")
        result = simulate("install", "firefox", "--simulate", "success")
        assert result.exit_code == 1
        assert "Invalid configuration" in result.stdout


class TestClassifyCommand:
    """Tests for the classify command."""

    def test_classify(self) -> None:
        """Test the classification table."""
        result = runner.invoke(
            app, ["classify", "error: database is locked", "downloading 10%"]
        )
        assert result.exit_code == 0
        assert "database_locked" in result.stdout
        assert "Remove the stale database lock" in result.stdout


class TestConfigCommands:
    """Tests for the config sub-commands."""

    def test_path(self, isolated_config: Path) -> None:
        """Test config path."""
        result = runner.invoke(app, ["config", "path"])
        assert result.exit_code == 0
        assert "store-monitor" in result.stdout

    def test_init_then_show(self, isolated_config: Path) -> None:
        """Test initializing and displaying the configuration."""
        result = runner.invoke(app, ["config", "init"])
        assert result.exit_code == 0
        assert "Configuration initialized" in result.stdout
        assert isolated_config.exists()

        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "log_capacity: 2000" in result.stdout

    def test_init_existing(self, isolated_config: Path) -> None:
        """Test that init does not overwrite without --force."""
        runner.invoke(app, ["config", "init"])
        result = runner.invoke(app, ["config", "init"])
        assert "already exists" in result.stdout

        result = runner.invoke(app, ["config", "init", "--force"])
        assert "Configuration initialized" in result.stdout

    def test_show_invalid(self, isolated_config: Path) -> None:
        """Test that an invalid file is reported."""
        isolated_config.parent.mkdir(parents=True)
        isolated_config.write_text("log_level: loud\n")
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 1


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_log_file(self, tmp_path: Path) -> None:
        """Test that diagnostics are appended to the configured file."""
        log_file = tmp_path / "logs" / "monitor.log"
        try:
            configure_logging(LogLevel.INFO, log_file)
            structlog.get_logger("test").info("hello_event", answer=42)
            structlog.get_logger("test").debug("hidden_event")
        finally:
            structlog.reset_defaults()

        content = log_file.read_text()
        assert "hello_event" in content
        assert "answer=42" in content
        assert "hidden_event" not in content


class TestRendering:
    """Tests for the display renderables."""

    def render(self, renderable) -> str:
        console = Console(width=120, record=True, color_system=None)
        console.print(renderable)
        return console.export_text()

    def test_stepper_marks_progress(self) -> None:
        """Test the phase stepper."""
        text = render_stepper(
            SessionSnapshot(status=SessionStatus.RUNNING, phase=Phase.INSTALLING)
        ).plain
        assert f"✓ {Phase.SAFETY.value}" in text
        assert f"● {Phase.INSTALLING.value}" in text
        assert f"○ {Phase.FINALIZING.value}" in text

    def test_error_panel(self) -> None:
        """Test the error panel with a suggested fix."""
        snapshot = SessionSnapshot(
            status=SessionStatus.ERROR,
            classified_error=classify("error: database is locked"),
            offered_recovery=RecoveryActionKind.UNLOCK_RESOURCE,
        )
        output = self.render(render_error(snapshot))
        assert "Suggested fix: Remove the stale database lock" in output

    def test_error_panel_for_technical_failure(self) -> None:
        """Test that a failure without a remedy asks for manual intervention."""
        snapshot = SessionSnapshot(
            status=SessionStatus.ERROR,
            classified_error=classify("something unexpected happened"),
        )
        output = self.render(render_error(snapshot))
        assert "Manual intervention required" in output
        assert "Suggested fix" not in output
