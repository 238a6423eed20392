"""Boundary interfaces of the install monitor.

This module defines abstract base classes for the collaborators the
session controller consumes: the privileged operation executor, the
credential broker and the maintenance backend that performs remedies.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator

    from .credentials import Credential
    from .models import OperationMode, PackageTarget
    from .streaming import ExecutorEvent


class ExecutionHandle(ABC):
    """A launched package operation."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Return a short description of the running operation."""
        ...

    @abstractmethod
    def events(self) -> AsyncGenerator[ExecutorEvent, None]:
        """Return the ordered event stream of this operation.

        The stream yields line events and ends after exactly one terminal
        event. Closing the iterator early tears the subscription down.
        """
        ...


class OperationExecutor(ABC):
    """Performs the privileged install or uninstall."""

    @abstractmethod
    async def launch(
        self,
        target: PackageTarget,
        mode: OperationMode,
        credential: Credential | None,
    ) -> ExecutionHandle:
        """Start a package operation.

        Args:
            target: Package name, source and optional repository hint.
            mode: Install or uninstall.
            credential: Elevated credential, or None to rely on the system prompt.

        Returns:
            Handle whose event stream reports the operation.

        Raises:
            ExecutorLaunchError: If the operation could not be spawned.
        """
        ...

    @abstractmethod
    async def abort(self, handle: ExecutionHandle) -> None:
        """Request that a running operation stops.

        Returns once the executor acknowledges the abort. Acknowledgment is
        best-effort; the operation may still emit its terminal event first.
        """
        ...

    def command_preview(self, target: PackageTarget, mode: OperationMode) -> str:
        """Return the human-readable command shown to the user."""
        return f"$ {mode.value} {target.name}"


class CredentialBroker(ABC):
    """Supplies an elevated credential on demand."""

    @abstractmethod
    async def request_credential(self) -> Credential | None:
        """Request a credential, possibly prompting the user.

        Returns:
            The credential, or None if the user cancelled.

        Raises:
            CredentialError: If the credential could not be obtained.
        """
        ...


class MaintenanceBackend(ABC):
    """Privileged, idempotent repair operations.

    Each method yields progress lines while it runs and raises RemedyError
    if the repair fails.
    """

    @abstractmethod
    def unlock_resource(self, credential: Credential | None) -> AsyncIterator[str]:
        """Remove a stale package database lock."""
        ...

    @abstractmethod
    def repair_trust_store(self, credential: Credential | None) -> AsyncIterator[str]:
        """Re-initialize and repopulate the package signing keyring."""
        ...

    @abstractmethod
    def refresh_catalog(self, credential: Credential | None) -> AsyncIterator[str]:
        """Force a refresh of the package catalog."""
        ...

    @abstractmethod
    def clean_cache(self, credential: Credential | None) -> AsyncIterator[str]:
        """Free disk space by clearing the package cache."""
        ...

    @abstractmethod
    def system_upgrade(self, credential: Credential | None) -> AsyncIterator[str]:
        """Refresh the catalog and upgrade the whole system."""
        ...
