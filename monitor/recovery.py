"""Execution of bounded automated remedies.

The RecoveryCoordinator runs exactly one remedy per request. A remedy that
succeeds marks its attempt for one automatic retry of the failed operation;
a remedy that fails is classified and logged, and nothing else is tried
automatically.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from .classifier import classify, classify_log
from .errors import CredentialError, RemedyError
from .models import AUTOMATED_REMEDIES, RecoveryActionKind, RecoveryAttempt, RecoveryStatus

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from .config import CredentialPolicy
    from .credentials import Credential
    from .interfaces import CredentialBroker, MaintenanceBackend

logger = structlog.get_logger(__name__)

RECOVERY_TITLES: dict[RecoveryActionKind, str] = {
    RecoveryActionKind.UNLOCK_RESOURCE: "UNLOCK DATABASE",
    RecoveryActionKind.REPAIR_TRUST_STORE: "REPAIR KEYRING",
    RecoveryActionKind.REFRESH_AND_RETRY: "REFRESH PACKAGE DATABASES",
    RecoveryActionKind.CLEAN_CACHE: "CLEAN PACKAGE CACHE",
    RecoveryActionKind.ESCALATE_SYSTEM_UPGRADE: "FULL SYSTEM UPGRADE",
}

REPAIRED_MESSAGE = "✓ System repaired. Retrying operation automatically..."
UPGRADED_MESSAGE = "✓ System upgraded. Resuming operation..."


def recovery_banner(action: RecoveryActionKind) -> str:
    """Return the log line that opens a remedy's output."""
    return f"--- RECOVERY: {RECOVERY_TITLES.get(action, action.value.upper())} ---"


class RecoveryCoordinator:
    """Runs remedies against a maintenance backend."""

    def __init__(
        self,
        backend: MaintenanceBackend,
        broker: CredentialBroker | None = None,
        policy: CredentialPolicy | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            backend: Performs the privileged repairs.
            broker: Supplies credentials when the policy asks for them up front.
            policy: Credential policy. Without one, remedies run with no
                credential and rely on the system prompt.
        """
        self.backend = backend
        self.broker = broker
        self.policy = policy
        self._log = logger.bind(component="recovery_coordinator")

    def _remedy(
        self, action: RecoveryActionKind
    ) -> Callable[[Credential | None], AsyncIterator[str]]:
        remedies: dict[RecoveryActionKind, Callable[[Credential | None], AsyncIterator[str]]] = {
            RecoveryActionKind.UNLOCK_RESOURCE: self.backend.unlock_resource,
            RecoveryActionKind.REPAIR_TRUST_STORE: self.backend.repair_trust_store,
            RecoveryActionKind.REFRESH_AND_RETRY: self.backend.refresh_catalog,
            RecoveryActionKind.CLEAN_CACHE: self.backend.clean_cache,
            RecoveryActionKind.ESCALATE_SYSTEM_UPGRADE: self.backend.system_upgrade,
        }
        return remedies[action]

    async def _acquire_credential(self) -> tuple[bool, Credential | None]:
        """Return (proceed, credential) for a remedy about to run."""
        if self.broker is None or self.policy is None or not self.policy.reduce_password_prompts:
            return True, None
        credential = await self.broker.request_credential()
        return credential is not None, credential

    async def execute(
        self,
        action: RecoveryActionKind,
        on_line: Callable[[str], None],
    ) -> RecoveryAttempt:
        """Run one remedy.

        Args:
            action: The remedy to run. Must be an automated remedy.
            on_line: Receives every progress line as it is produced.

        Returns:
            The finished attempt. On success its auto_retry flag is set; on
            failure it carries the classified error.

        Raises:
            ValueError: If the action has no automated implementation.
        """
        if action not in AUTOMATED_REMEDIES:
            raise ValueError(f"No automated remedy for {action.value}")

        attempt = RecoveryAttempt(action=action)
        log = self._log.bind(action=action.value)

        def emit(text: str) -> None:
            attempt.log.append(text)
            on_line(text)

        emit(recovery_banner(action))
        log.info("remedy_started")

        try:
            proceed, credential = await self._acquire_credential()
            if not proceed:
                raise CredentialError("Authentication was cancelled")

            async for text in self._remedy(action)(credential):
                emit(text)

        except (RemedyError, CredentialError) as e:
            attempt.status = RecoveryStatus.FAILED
            output = e.output.splitlines() if isinstance(e, RemedyError) else []
            attempt.error = classify_log(output) or classify(str(e))
            emit(f"Recovery failed: {e}")
            log.warning(
                "remedy_failed",
                error=str(e),
                kind=attempt.error.kind.value if attempt.error else None,
            )
            return attempt

        attempt.status = RecoveryStatus.SUCCESS
        attempt.auto_retry = True
        if action == RecoveryActionKind.ESCALATE_SYSTEM_UPGRADE:
            emit(UPGRADED_MESSAGE)
        else:
            emit(REPAIRED_MESSAGE)
        log.info("remedy_succeeded")
        return attempt
