"""Exception hierarchy for the install monitor."""

from __future__ import annotations


class MonitorError(Exception):
    """Base class for all install monitor errors."""


class ExecutorLaunchError(MonitorError):
    """The operation executor could not be spawned.

    Launch failures are terminal immediately and are never retried
    implicitly.
    """

    def __init__(self, message: str, command: list[str] | None = None) -> None:
        """Initialize the launch error.

        Args:
            message: Error message.
            command: The command that failed to start, if known.
        """
        super().__init__(message)
        self.command = command


class CredentialError(MonitorError):
    """The credential broker failed to supply a credential."""


class RemedyError(MonitorError):
    """A privileged recovery action failed."""

    def __init__(self, message: str, output: str = "") -> None:
        """Initialize the remedy error.

        Args:
            message: Error message.
            output: Trailing output of the failing command.
        """
        super().__init__(message)
        self.output = output


class ConfigError(MonitorError):
    """The configuration file is invalid."""
