"""Ordered event stream delivered to one subscriber per run."""

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from opendev_agent.logging import get_logger
from opendev_agent.models import utcnow_iso

log = get_logger(__name__)


class EventKind(str, Enum):
    STATUS = "status"
    SANDBOX_LIMITS = "sandboxLimits"
    ACTION = "action"
    SANDBOX_USAGE = "sandboxUsage"
    TEXT = "text"
    REASONING = "reasoning"
    QUESTION = "question"
    EXECUTING = "executing"
    ACTION_COMPLETE = "actionComplete"
    TASK_COMPLETED = "taskCompleted"
    LIMIT_EXCEEDED = "limitExceeded"
    ERROR = "error"
    DONE = "done"


@dataclass
class AgentEvent:
    kind: EventKind
    data: dict[str, Any]
    seq: int = 0
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.kind.value, "data": self.data, "seq": self.seq}


def format_sse(event: AgentEvent) -> str:
    """Render an event as one server-sent-events frame."""
    return f"event: {event.kind.value}\ndata: {json.dumps(event.data)}\n\n"


class EventChannel:
    """Single-writer FIFO of events; ``done`` closes it.

    Events emitted after ``done`` are dropped so the subscriber always sees
    ``done`` last.
    """

    def __init__(self, execution_id: str | None = None):
        self.execution_id = execution_id
        self._queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        self._next_seq = 1
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, kind: EventKind, data: dict[str, Any] | None = None) -> AgentEvent | None:
        if self._closed:
            log.warning(
                "Dropping event after done",
                execution_id=self.execution_id,
                kind=kind.value,
            )
            return None
        event = AgentEvent(kind=kind, data=dict(data or {}), seq=self._next_seq)
        self._next_seq += 1
        self._queue.put_nowait(event)
        if kind == EventKind.DONE:
            self._closed = True
        return event

    def done(self) -> None:
        """Emit the terminal ``done`` event unless already closed."""
        if not self._closed:
            self.emit(EventKind.DONE, {"executionId": self.execution_id})

    async def get(self) -> AgentEvent:
        return await self._queue.get()

    async def __aiter__(self) -> AsyncIterator[AgentEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.kind == EventKind.DONE:
                return

    async def collect(self) -> list[AgentEvent]:
        """Drain the stream through ``done``."""
        return [event async for event in self]
