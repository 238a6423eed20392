"""Elevated credential handling.

This module provides the credential type passed to the operation executor
and the maintenance backend, a process-wide cache used while the "reduce
password prompts" preference is active, an interactive credential broker,
and non-interactive sudo probes used to validate a password before it is
cached.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ConfigDict, SecretStr

from .errors import CredentialError
from .interfaces import CredentialBroker

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .config import CredentialPolicy

logger = structlog.get_logger(__name__)


class Credential(BaseModel):
    """An elevated credential. The secret is never rendered in logs or reprs."""

    model_config = ConfigDict(frozen=True)

    secret: SecretStr

    @classmethod
    def from_password(cls, password: str) -> Credential:
        return cls(secret=SecretStr(password))

    def reveal(self) -> str:
        """Return the plain secret for writing to a privileged helper's stdin."""
        return self.secret.get_secret_value()


class CredentialCache:
    """Process-wide credential cache with a fixed time-to-live.

    The broker writes to the cache only while the reduce-prompts policy is
    active. Invalidation belongs to whoever owns the preference.
    """

    def __init__(
        self,
        ttl_seconds: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl_seconds: Lifetime of a cached credential.
            clock: Monotonic time source, replaceable in tests.
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._credential: Credential | None = None
        self._stored_at = 0.0

    def get(self) -> Credential | None:
        """Return the cached credential if it has not expired."""
        if self._credential is None:
            return None
        if self._clock() - self._stored_at >= self.ttl_seconds:
            logger.debug("credential_cache_expired")
            self.invalidate()
            return None
        return self._credential

    def store(self, credential: Credential) -> None:
        self._credential = credential
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        """Forget the cached credential."""
        self._credential = None
        self._stored_at = 0.0


# Global cache instance
_credential_cache: CredentialCache | None = None


def get_credential_cache() -> CredentialCache:
    """Get the process-wide credential cache."""
    global _credential_cache
    if _credential_cache is None:
        _credential_cache = CredentialCache()
    return _credential_cache


def set_credential_cache(cache: CredentialCache | None) -> None:
    """Replace the process-wide credential cache (None resets it)."""
    global _credential_cache
    _credential_cache = cache


class PromptCredentialBroker(CredentialBroker):
    """Credential broker backed by an interactive password prompt."""

    def __init__(
        self,
        prompt: Callable[[], Awaitable[str | None]],
        policy: CredentialPolicy,
        cache: CredentialCache | None = None,
        verify: Callable[[Credential], Awaitable[bool]] | None = None,
    ) -> None:
        """Initialize the broker.

        Args:
            prompt: Coroutine asking the user for a password. An empty answer
                or None means the user cancelled.
            policy: Credential policy deciding whether answers are cached.
            cache: Cache to use. Defaults to the process-wide cache.
            verify: Optional check run on a fresh password before it is used.
        """
        self._prompt = prompt
        self._policy = policy
        self._cache = cache if cache is not None else get_credential_cache()
        self._verify = verify
        self._log = logger.bind(component="credential_broker")

    async def request_credential(self) -> Credential | None:
        if self._policy.reduce_password_prompts:
            cached = self._cache.get()
            if cached is not None:
                self._log.debug("credential_from_cache")
                return cached

        try:
            answer = await self._prompt()
        except (EOFError, KeyboardInterrupt):
            self._log.info("credential_prompt_cancelled")
            return None
        except Exception as e:
            raise CredentialError(f"Password prompt failed: {e}") from e

        if not answer:
            self._log.info("credential_declined")
            return None

        credential = Credential.from_password(answer)

        if self._verify is not None and not await self._verify(credential):
            self._log.warning("credential_rejected")
            raise CredentialError("Authentication failed: incorrect password")

        if self._policy.reduce_password_prompts:
            self._cache.ttl_seconds = self._policy.session_ttl_seconds
            self._cache.store(credential)
            self._log.debug("credential_cached", ttl=self._policy.session_ttl_seconds)

        return credential


class SudoStatus(str, Enum):
    """Status of sudo authentication."""

    AUTHENTICATED = "authenticated"
    NOT_AUTHENTICATED = "not_authenticated"
    NOT_AVAILABLE = "not_available"
    PASSWORD_REQUIRED = "password_required"
    NO_SUDO_REQUIRED = "no_sudo_required"


@dataclass
class SudoCheckResult:
    """Result of a sudo probe."""

    status: SudoStatus
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (SudoStatus.AUTHENTICATED, SudoStatus.NO_SUDO_REQUIRED)


async def check_sudo_status(timeout: float = 5.0) -> SudoCheckResult:
    """Check whether sudo credentials are cached, without prompting.

    Returns:
        SudoCheckResult with the current status.
    """
    log = logger.bind(component="sudo_check")

    if os.geteuid() == 0:
        log.debug("running_as_root")
        return SudoCheckResult(status=SudoStatus.NO_SUDO_REQUIRED, message="Running as root")

    if not shutil.which("sudo"):
        log.warning("sudo_not_found")
        return SudoCheckResult(status=SudoStatus.NOT_AVAILABLE, message="sudo command not found")

    try:
        process = await asyncio.create_subprocess_exec(
            "sudo",
            "-n",
            "-v",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        log.warning("sudo_check_timeout")
        return SudoCheckResult(status=SudoStatus.NOT_AUTHENTICATED, message="Sudo check timed out")
    except OSError as e:
        log.exception("sudo_check_error", error=str(e))
        return SudoCheckResult(status=SudoStatus.NOT_AUTHENTICATED, message=str(e))

    stderr_str = stderr.decode("utf-8", errors="replace").strip()

    if process.returncode == 0:
        log.debug("sudo_cached")
        return SudoCheckResult(
            status=SudoStatus.AUTHENTICATED, message="Sudo credentials are cached"
        )
    if "password is required" in stderr_str.lower():
        log.debug("sudo_password_required")
        return SudoCheckResult(
            status=SudoStatus.PASSWORD_REQUIRED, message="Sudo password required"
        )

    log.debug("sudo_not_authenticated", stderr=stderr_str)
    return SudoCheckResult(
        status=SudoStatus.NOT_AUTHENTICATED, message=stderr_str or "Sudo not authenticated"
    )


async def verify_sudo_password(credential: Credential, timeout: float = 30.0) -> SudoCheckResult:
    """Validate a password with ``sudo -S -v``.

    Args:
        credential: Password to validate.
        timeout: Timeout for the probe in seconds.

    Returns:
        SudoCheckResult; AUTHENTICATED if sudo accepted the password.
    """
    log = logger.bind(component="sudo_auth")

    try:
        process = await asyncio.create_subprocess_exec(
            "sudo",
            "-S",
            "-v",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await asyncio.wait_for(
            process.communicate(input=(credential.reveal() + "\n").encode("utf-8")),
            timeout=timeout,
        )
    except TimeoutError:
        log.warning("sudo_authentication_timeout")
        return SudoCheckResult(
            status=SudoStatus.NOT_AUTHENTICATED, message="Sudo authentication timed out"
        )
    except OSError as e:
        log.exception("sudo_authentication_error", error=str(e))
        return SudoCheckResult(status=SudoStatus.NOT_AUTHENTICATED, message=str(e))

    if process.returncode == 0:
        log.info("sudo_authenticated")
        return SudoCheckResult(status=SudoStatus.AUTHENTICATED, message="Sudo authenticated")

    stderr_str = stderr.decode("utf-8", errors="replace").strip()
    log.warning("sudo_authentication_failed", stderr=stderr_str)
    return SudoCheckResult(
        status=SudoStatus.NOT_AUTHENTICATED, message=stderr_str or "Authentication failed"
    )


async def sudo_password_is_valid(credential: Credential) -> bool:
    """Verify callback for PromptCredentialBroker backed by sudo."""
    return (await verify_sudo_password(credential)).ok
