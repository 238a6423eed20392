"""Executor event types and stream utilities.

This module defines the events an operation executor emits while a package
operation runs: an ordered stream of line events terminated by exactly one
terminal event. It also provides the JSON wire form used by helper
processes and small helpers for consuming event streams.

Event Types:
    - LineEvent: One line of free-text output (primary or repair channel)
    - TerminalEvent: The run ended (success, failure, update_required)

Helper Utilities:
    - parse_event / parse_event_line: Decode the JSON wire form
    - safe_consume_stream: Consume an async generator with guaranteed cleanup
    - StreamEventQueue: Bounded queue used to merge stdout and stderr
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from .models import EventOrigin

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    """Types of executor events."""

    LINE = "line"
    TERMINAL = "terminal"


class TerminalOutcome(str, Enum):
    """How a run ended."""

    SUCCESS = "success"
    FAILURE = "failure"
    UPDATE_REQUIRED = "update_required"


# Prefix marking a JSON-encoded event on a helper's stdout
EVENT_PREFIX = "EVENT:"


@dataclass(frozen=True)
class ExecutorEvent:
    """Base class for executor events."""

    event_type: EventType
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict())


@dataclass(frozen=True)
class LineEvent(ExecutorEvent):
    """One line of executor output.

    Attributes:
        text: The line text, without trailing newline.
        origin: Channel the line came from.
    """

    event_type: EventType = EventType.LINE
    text: str = ""
    origin: EventOrigin = EventOrigin.PRIMARY

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d = ExecutorEvent.to_dict(self)
        d.update({"text": self.text, "origin": self.origin.value})
        return d


@dataclass(frozen=True)
class TerminalEvent(ExecutorEvent):
    """The run ended.

    Attributes:
        outcome: How the run ended.
        exit_code: Process exit code, if the executor has one.
    """

    event_type: EventType = EventType.TERMINAL
    outcome: TerminalOutcome = TerminalOutcome.FAILURE
    exit_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d = ExecutorEvent.to_dict(self)
        d["outcome"] = self.outcome.value
        if self.exit_code is not None:
            d["exit_code"] = self.exit_code
        return d


def line(text: str, origin: EventOrigin = EventOrigin.PRIMARY) -> LineEvent:
    """Build a line event."""
    return LineEvent(text=text, origin=origin)


def terminal(outcome: TerminalOutcome | str, exit_code: int | None = None) -> TerminalEvent:
    """Build a terminal event."""
    return TerminalEvent(outcome=TerminalOutcome(outcome), exit_code=exit_code)


def parse_event(data: dict[str, Any]) -> ExecutorEvent | None:
    """Parse a dictionary into an ExecutorEvent.

    Args:
        data: Dictionary with event data.

    Returns:
        ExecutorEvent, or None for unknown types or invalid values.
    """
    event_type = data.get("type")

    if event_type == EventType.LINE.value:
        try:
            origin = EventOrigin(data.get("origin", EventOrigin.PRIMARY.value))
        except ValueError:
            origin = EventOrigin.PRIMARY
        return LineEvent(text=str(data.get("text", "")), origin=origin)

    elif event_type == EventType.TERMINAL.value:
        try:
            outcome = TerminalOutcome(data.get("outcome"))
        except ValueError:
            return None
        exit_code = data.get("exit_code")
        return TerminalEvent(
            outcome=outcome,
            exit_code=exit_code if isinstance(exit_code, int) else None,
        )

    return None


def parse_event_line(text: str) -> ExecutorEvent | None:
    """Parse an `EVENT:` prefixed JSON line.

    Example: EVENT:{"type": "terminal", "outcome": "success"}

    Returns:
        The event, or None if the line is not a well-formed event.
    """
    if not text.startswith(EVENT_PREFIX):
        return None

    try:
        data = json.loads(text[len(EVENT_PREFIX) :].strip())
    except json.JSONDecodeError:
        return None

    if not isinstance(data, dict):
        return None
    return parse_event(data)


T = TypeVar("T")


async def safe_consume_stream(
    stream: AsyncGenerator[T, None],
) -> AsyncGenerator[T, None]:
    """Safely consume an async generator with proper cleanup.

    Ensures the generator is closed even if iteration is interrupted by
    break or exception, so no further events can be produced.

    Args:
        stream: The async generator to consume

    Yields:
        Events from the stream
    """
    try:
        async for event in stream:
            yield event
    finally:
        await stream.aclose()


DEFAULT_QUEUE_SIZE = 1000


class StreamEventQueue:
    """Bounded async queue for executor events.

    Events are dropped with a warning when the queue overflows.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        """Initialize the event queue.

        Args:
            maxsize: Maximum queue size (default: 1000)
        """
        self._queue: asyncio.Queue[ExecutorEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._maxsize = maxsize
        self._dropped_count = 0
        self._log = logger.bind(component="stream_event_queue")

    @property
    def maxsize(self) -> int:
        """Maximum queue size."""
        return self._maxsize

    @property
    def dropped_count(self) -> int:
        """Number of events dropped due to overflow."""
        return self._dropped_count

    def qsize(self) -> int:
        """Return the current queue size."""
        return self._queue.qsize()

    async def put(self, event: ExecutorEvent) -> bool:
        """Put an event into the queue.

        Returns:
            True if the event was added, False if dropped
        """
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self._dropped_count += 1
            if self._dropped_count == 1 or self._dropped_count % 100 == 0:
                self._log.warning(
                    "event_queue_overflow",
                    dropped_count=self._dropped_count,
                    queue_size=self._maxsize,
                    event_type=event.event_type.value,
                )
            return False

    async def get(self) -> ExecutorEvent | None:
        """Get an event from the queue.

        Returns:
            The next event, or None if the queue is closed
        """
        return await self._queue.get()

    async def close(self) -> None:
        """Signal that no more events will be added."""
        await self._queue.put(None)

    def __aiter__(self) -> AsyncIterator[ExecutorEvent]:
        """Iterate over events in the queue."""
        return self

    async def __anext__(self) -> ExecutorEvent:
        """Get the next event from the queue."""
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event
