"""Best-effort outcome telemetry.

Each finished operation reports ``{package, mode, outcome}``. Reporting is
consent-gated and fire-and-forget: events are sent from a background task,
and any failure to deliver one is logged and dropped.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import aiohttp
import structlog
from pydantic import BaseModel, Field

from .config import TelemetryConfig
from .models import OperationMode  # noqa: TC001 - needed at runtime by Pydantic

logger = structlog.get_logger(__name__)


class TelemetryOutcome(str, Enum):
    """Outcome reported for an operation."""

    SUCCESS = "success"
    FAILURE = "failure"
    UPDATE_REQUIRED = "update_required"
    CANCELLED = "cancelled"
    LAUNCH_FAILED = "launch_failed"


class TelemetryEvent(BaseModel):
    """One reported operation outcome."""

    package: str = Field(..., description="Package name")
    mode: OperationMode = Field(..., description="Install or uninstall")
    outcome: TelemetryOutcome = Field(..., description="How the operation ended")


TelemetryTransport = Callable[[TelemetryEvent], Awaitable[None]]


class HttpTelemetryTransport:
    """Posts telemetry events as JSON with aiohttp."""

    def __init__(self, endpoint: str, timeout_seconds: float = 5.0) -> None:
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds

    async def __call__(self, event: TelemetryEvent) -> None:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with (
            aiohttp.ClientSession(timeout=timeout) as session,
            session.post(self.endpoint, json=event.model_dump(mode="json")) as response,
        ):
            response.raise_for_status()


class TelemetryEmitter:
    """Fire-and-forget sender of telemetry events."""

    def __init__(
        self,
        config: TelemetryConfig | None = None,
        transport: TelemetryTransport | None = None,
    ) -> None:
        """Initialize the emitter.

        Args:
            config: Telemetry settings. Nothing is sent unless enabled.
            transport: Coroutine delivering one event. Defaults to HTTP.
        """
        self.config = config or TelemetryConfig()
        self._transport = transport or HttpTelemetryTransport(
            self.config.endpoint, self.config.timeout_seconds
        )
        self._pending: set[asyncio.Task[None]] = set()
        self._log = logger.bind(component="telemetry")

    @property
    def pending(self) -> int:
        """Number of events still being delivered."""
        return len(self._pending)

    def emit(self, event: TelemetryEvent) -> bool:
        """Schedule delivery of an event without waiting for it.

        Returns:
            True if the event was scheduled, False if telemetry is disabled
            or no event loop is running.
        """
        if not self.config.enabled:
            return False

        try:
            task = asyncio.get_running_loop().create_task(self._send(event))
        except RuntimeError:
            self._log.debug("telemetry_no_event_loop")
            return False

        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _send(self, event: TelemetryEvent) -> None:
        try:
            await self._transport(event)
        except (aiohttp.ClientError, TimeoutError, OSError) as e:
            self._log.debug("telemetry_send_failed", error=str(e))
        except Exception as e:
            self._log.warning("telemetry_send_error", error=str(e))
        else:
            self._log.debug("telemetry_sent", **_describe(event))

    async def flush(self, timeout: float = 2.0) -> None:
        """Wait briefly for in-flight events, then give up on them."""
        if not self._pending:
            return
        _, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in pending:
            task.cancel()


def _describe(event: TelemetryEvent) -> dict[str, Any]:
    return {"package": event.package, "mode": event.mode.value, "outcome": event.outcome.value}
