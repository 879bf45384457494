"""Events emitted by an agent run.

A run pushes every event into a single bounded ``asyncio.Queue`` owned by
the host. The runtime never closes or drains that queue; it only waits for
free space, and gives up after ``emit_timeout`` seconds.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    DELTA = "delta"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_OUTPUT = "tool_output"
    TOOL_RESULT = "tool_result"
    CONFIRM_REQUEST = "confirm_request"
    INPUT_REQUEST = "input_request"
    JUDGE_CALL = "judge_call"
    ERROR = "error"
    DONE = "done"


@dataclass
class AgentEvent:
    """A typed event flowing from the runtime to the host."""

    type: EventType
    text: str = ""
    tool_name: str = ""
    tool_args: str = ""  # pretty-printed for display
    tool_id: str = ""
    result: str = ""
    error: str = ""
    done: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def terminal(self) -> bool:
        return self.done


class EventSinkStalled(RuntimeError):
    """Raised when the host stops draining the event queue."""


def is_bounded_queue(sink: object) -> bool:
    """True if sink is an asyncio.Queue with a positive maxsize."""
    return isinstance(sink, asyncio.Queue) and sink.maxsize > 0


def reject_sink(sink: object, reason: str) -> None:
    """Best effort: push one terminal error into a sink we refuse to drive."""
    logger.error("Rejecting event sink: %s", reason)
    if isinstance(sink, asyncio.Queue):
        try:
            sink.put_nowait(AgentEvent(type=EventType.ERROR, error=reason, done=True))
        except asyncio.QueueFull:
            logger.warning("Rejected sink is full, dropping error event")


async def emit(sink: asyncio.Queue[AgentEvent], event: AgentEvent, timeout: float) -> None:
    """Put an event, waiting at most ``timeout`` seconds for space."""
    try:
        await asyncio.wait_for(sink.put(event), timeout=timeout)
    except TimeoutError as e:
        raise EventSinkStalled(
            f"event sink did not accept a {event.type.value} event within {timeout}s"
        ) from e
