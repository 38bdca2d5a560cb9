"""
Server-Sent Events (SSE) for streaming layout/analysis jobs.

Each job owns one SSEChannel. Events carry ids of the form
``<job_id>:<seq>`` so a client can tell which job and which step a message
belongs to; payloads may be plain dicts or pydantic models.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel


EVT_JOB_STARTED = "job_started"
EVT_KMEANS_ITERATION = "kmeans_iteration"
EVT_JOB_COMPLETE = "job_complete"
EVT_JOB_CANCELLED = "job_cancelled"
EVT_ERROR = "error"


def _payload(data: Any) -> str:
    if data is None:
        return "{}"
    if isinstance(data, str):
        return data
    if isinstance(data, BaseModel):
        return data.model_dump_json()
    return json.dumps(data, default=str)


class SSEEvent(BaseModel):
    """A single SSE message."""
    event: str
    data: Any = None
    id: Optional[str] = None

    def format(self) -> str:
        """Serialize to SSE wire format."""
        lines = []
        if self.id:
            lines.append(f"id: {self.id}")
        lines.append(f"event: {self.event}")
        lines.extend(f"data: {line}" for line in _payload(self.data).split("\n"))
        return "\n".join(lines) + "\n\n"


class SSEChannel:
    """
    Async queue of one job's events.

    The producer emits progress and exactly one terminal event, then closes;
    the consumer iterates formatted strings until the close sentinel. Emits
    after close are dropped.
    """

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._queue: asyncio.Queue[Optional[SSEEvent]] = asyncio.Queue()
        self._seq = 0
        self._closed = False

    async def emit(self, event: str, data: Any = None) -> Optional[SSEEvent]:
        if self._closed:
            return None
        self._seq += 1
        sse = SSEEvent(event=event, data=data, id=f"{self.job_id}:{self._seq}")
        await self._queue.put(sse)
        return sse

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(None)

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event.format()
