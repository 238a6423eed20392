"""Tests for credentials, the credential cache and the prompt broker."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from monitor.config import CredentialPolicy
from monitor.credentials import (
    Credential,
    CredentialCache,
    PromptCredentialBroker,
    SudoStatus,
    check_sudo_status,
    get_credential_cache,
    set_credential_cache,
    verify_sudo_password,
)
from monitor.errors import CredentialError

REDUCE = CredentialPolicy(reduce_password_prompts=True, session_ttl_seconds=60)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestCredential:
    """Tests for the Credential model."""

    def test_secret_hidden_in_repr(self) -> None:
        """Test that the password never appears in reprs."""
        credential = Credential.from_password("hunter2")
        assert "hunter2" not in repr(credential)
        assert "hunter2" not in str(credential)
        assert credential.reveal() == "hunter2"


class TestCredentialCache:
    """Tests for CredentialCache."""

    def test_store_and_get(self) -> None:
        """Test a fresh credential is returned."""
        cache = CredentialCache(ttl_seconds=60, clock=FakeClock())
        credential = Credential.from_password("pw")
        cache.store(credential)
        assert cache.get() == credential

    def test_expiry(self) -> None:
        """Test that a credential expires after the TTL."""
        clock = FakeClock()
        cache = CredentialCache(ttl_seconds=60, clock=clock)
        cache.store(Credential.from_password("pw"))

        clock.now += 59
        assert cache.get() is not None
        clock.now += 1
        assert cache.get() is None

    def test_invalidate(self) -> None:
        """Test explicit invalidation."""
        cache = CredentialCache(clock=FakeClock())
        cache.store(Credential.from_password("pw"))
        cache.invalidate()
        assert cache.get() is None

    def test_global_cache(self) -> None:
        """Test the process-wide cache accessors."""
        cache = CredentialCache()
        set_credential_cache(cache)
        assert get_credential_cache() is cache
        set_credential_cache(None)
        assert get_credential_cache() is not cache


class TestPromptCredentialBroker:
    """Tests for PromptCredentialBroker."""

    @pytest.mark.asyncio
    async def test_returns_prompted_password(self) -> None:
        """Test the plain prompt path."""
        broker = PromptCredentialBroker(AsyncMock(return_value="pw"), CredentialPolicy())
        credential = await broker.request_credential()
        assert credential is not None
        assert credential.reveal() == "pw"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answer", [None, ""])
    async def test_empty_answer_is_cancellation(self, answer: str | None) -> None:
        """Test that an empty answer means the user cancelled."""
        broker = PromptCredentialBroker(AsyncMock(return_value=answer), CredentialPolicy())
        assert await broker.request_credential() is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [EOFError(), KeyboardInterrupt()])
    async def test_interrupted_prompt_is_cancellation(self, error: BaseException) -> None:
        """Test that an interrupted prompt means the user cancelled."""
        broker = PromptCredentialBroker(AsyncMock(side_effect=error), CredentialPolicy())
        assert await broker.request_credential() is None

    @pytest.mark.asyncio
    async def test_prompt_failure_raises(self) -> None:
        """Test that a broken prompt is a credential error."""
        broker = PromptCredentialBroker(
            AsyncMock(side_effect=RuntimeError("no tty")), CredentialPolicy()
        )
        with pytest.raises(CredentialError, match="no tty"):
            await broker.request_credential()

    @pytest.mark.asyncio
    async def test_rejected_password_raises(self) -> None:
        """Test that a password failing verification is an error."""
        broker = PromptCredentialBroker(
            AsyncMock(return_value="wrong"),
            REDUCE,
            cache=CredentialCache(clock=FakeClock()),
            verify=AsyncMock(return_value=False),
        )
        with pytest.raises(CredentialError, match="incorrect password"):
            await broker.request_credential()

    @pytest.mark.asyncio
    async def test_cached_while_reduce_prompts_active(self) -> None:
        """Test that the second request is answered from the cache."""
        prompt = AsyncMock(return_value="pw")
        cache = CredentialCache(clock=FakeClock())
        broker = PromptCredentialBroker(prompt, REDUCE, cache=cache)

        first = await broker.request_credential()
        second = await broker.request_credential()

        assert first == second
        assert prompt.await_count == 1
        assert cache.ttl_seconds == 60

    @pytest.mark.asyncio
    async def test_not_cached_without_reduce_prompts(self) -> None:
        """Test that every request prompts when the preference is off."""
        prompt = AsyncMock(return_value="pw")
        cache = CredentialCache(clock=FakeClock())
        broker = PromptCredentialBroker(prompt, CredentialPolicy(), cache=cache)

        await broker.request_credential()
        await broker.request_credential()

        assert prompt.await_count == 2
        assert cache.get() is None


class TestSudoProbes:
    """Tests for the sudo helpers."""

    @pytest.mark.asyncio
    async def test_check_as_root(self) -> None:
        """Test that root needs no sudo."""
        with patch("monitor.credentials.os.geteuid", return_value=0):
            result = await check_sudo_status()
        assert result.status == SudoStatus.NO_SUDO_REQUIRED
        assert result.ok

    @pytest.mark.asyncio
    async def test_check_without_sudo(self) -> None:
        """Test a system without sudo."""
        with (
            patch("monitor.credentials.os.geteuid", return_value=1000),
            patch("monitor.credentials.shutil.which", return_value=None),
        ):
            result = await check_sudo_status()
        assert result.status == SudoStatus.NOT_AVAILABLE
        assert not result.ok

    @pytest.mark.asyncio
    async def test_check_password_required(self) -> None:
        """Test detection of an uncached sudo session."""
        process = MagicMock(returncode=1)
        process.communicate = AsyncMock(return_value=(b"", b"sudo: a password is required"))
        with (
            patch("monitor.credentials.os.geteuid", return_value=1000),
            patch("monitor.credentials.shutil.which", return_value="/usr/bin/sudo"),
            patch(
                "monitor.credentials.asyncio.create_subprocess_exec",
                AsyncMock(return_value=process),
            ),
        ):
            result = await check_sudo_status()
        assert result.status == SudoStatus.PASSWORD_REQUIRED

    @pytest.mark.asyncio
    async def test_verify_feeds_password(self) -> None:
        """Test that the password is written to sudo's stdin."""
        process = MagicMock(returncode=0)
        process.communicate = AsyncMock(return_value=(b"", b""))
        with patch(
            "monitor.credentials.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ) as mock_exec:
            result = await verify_sudo_password(Credential.from_password("pw"))

        assert result.ok
        assert mock_exec.call_args.args[:3] == ("sudo", "-S", "-v")
        process.communicate.assert_awaited_once_with(input=b"pw\n")

    @pytest.mark.asyncio
    async def test_verify_rejected(self) -> None:
        """Test a wrong password."""
        process = MagicMock(returncode=1)
        process.communicate = AsyncMock(return_value=(b"", b"Sorry, try again."))
        with patch(
            "monitor.credentials.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            result = await verify_sudo_password(Credential.from_password("bad"))

        assert result.status == SudoStatus.NOT_AUTHENTICATED
        assert result.message == "Sorry, try again."
