"""
Progress channel for a single run

The pipeline publishes events into an in-memory queue; whoever serves the
client (an SSE response today) drains it. A run has exactly one producer and
one consumer.
"""
import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

EVENT_INIT = "init"
EVENT_STEP = "step"
EVENT_COMPLETE = "complete"


@dataclass(frozen=True)
class ProgressEvent:
    kind: str
    data: Dict[str, Any]


class ProgressChannel:
    """Unbounded queue of ProgressEvents that ends when closed"""

    def __init__(self):
        self._queue: "asyncio.Queue[Optional[ProgressEvent]]" = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, kind: str, data: Dict[str, Any]) -> None:
        if self._closed:
            logger.debug("progress_event_dropped", kind=kind)
            return
        self._queue.put_nowait(ProgressEvent(kind=kind, data=data))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._drain()

    async def _drain(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


def format_sse(event: ProgressEvent) -> str:
    """Render an event as a Server-Sent Events block"""
    return f"event: {event.kind}\ndata: {json.dumps(event.data, default=str)}\n\n"
