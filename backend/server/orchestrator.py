"""
Job orchestrator: runs layout and analysis computations off the event loop.

Each (session, dataset) pair has at most one live computation: starting a
new one sets the previous job's cancel token, so a stale k-means run or
O(n²) pass stops at its next checkpoint.

Sync mode:   await run_job(...) and return the result
Stream mode: start_streaming_job(...) returns a job id; progress goes to an
             SSE channel
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Tuple

from core.config import get_settings
from core.dataset import Dataset
from core.models import (
    ConnectionRequest,
    CorrelationRequest,
    JobRecord,
    JobStatus,
    LayoutRequest,
    OutlierRequest,
)
from core.storage import create_job, save_job
from engine.connections import nearest_neighbor_links
from engine.correlation import calculate_correlations
from engine.kmeans import ComputationCancelled
from engine.layout import build_layout
from engine.outliers import detect_outliers
from server.sse import (
    SSEChannel,
    EVT_ERROR,
    EVT_JOB_CANCELLED,
    EVT_JOB_COMPLETE,
    EVT_JOB_STARTED,
    EVT_KMEANS_ITERATION,
)

logger = logging.getLogger("uvicorn.error")

_executor = ThreadPoolExecutor(max_workers=get_settings().workers)

Progress = Optional[Callable[[int, int], None]]
Action = Callable[[Dataset, Any, threading.Event, Progress], Dict[str, Any]]


# ---------------------------------------------------------------------------
# Cancellation tokens
# ---------------------------------------------------------------------------

class JobRunner:
    """Tracks the live cancel token per (session, dataset)."""

    def __init__(self) -> None:
        self._tokens: Dict[Tuple[str, str], threading.Event] = {}
        self._lock = threading.Lock()

    def begin(self, key: Tuple[str, str]) -> threading.Event:
        token = threading.Event()
        with self._lock:
            previous = self._tokens.get(key)
            if previous is not None:
                logger.info("Superseding running job for %s", key)
                previous.set()
            self._tokens[key] = token
        return token

    def finish(self, key: Tuple[str, str], token: threading.Event) -> None:
        with self._lock:
            if self._tokens.get(key) is token:
                del self._tokens[key]

    def active(self, key: Tuple[str, str]) -> bool:
        with self._lock:
            return key in self._tokens


RUNNER = JobRunner()


# ---------------------------------------------------------------------------
# Actions (run in the executor)
# ---------------------------------------------------------------------------

def layout_action(dataset: Dataset, body: LayoutRequest, cancel: threading.Event, progress: Progress) -> Dict[str, Any]:
    result = build_layout(dataset, body.kind, body.options, cancel=cancel, on_iteration=progress)
    return {"layout": result.model_dump()}


def outliers_action(dataset: Dataset, body: OutlierRequest, cancel: threading.Event, progress: Progress) -> Dict[str, Any]:
    result = build_layout(dataset, body.layout.kind, body.layout.options, cancel=cancel, on_iteration=progress)
    outliers = detect_outliers(result.points, body.threshold, cancel=cancel)
    return {"layout": result.model_dump(), "outliers": outliers.model_dump()}


def correlations_action(dataset: Dataset, body: CorrelationRequest, cancel: threading.Event, progress: Progress) -> Dict[str, Any]:
    points = None
    if body.layout is not None:
        points = build_layout(
            dataset, body.layout.kind, body.layout.options, cancel=cancel, on_iteration=progress
        ).points
    result = calculate_correlations(dataset, body.column1, body.column2, body.threshold, points=points)
    return {"correlation": result.model_dump()}


def connections_action(dataset: Dataset, body: ConnectionRequest, cancel: threading.Event, progress: Progress) -> Dict[str, Any]:
    result = build_layout(dataset, body.layout.kind, body.layout.options, cancel=cancel, on_iteration=progress)
    links = nearest_neighbor_links(result.points, cancel=cancel)
    return {"layout": result.model_dump(), "links": [link.model_dump() for link in links]}


ACTIONS: Dict[str, Action] = {
    "layout": layout_action,
    "outliers": outliers_action,
    "correlations": correlations_action,
    "connections": connections_action,
}


# ---------------------------------------------------------------------------
# Synchronous mode
# ---------------------------------------------------------------------------

async def run_job(session_id: str, dataset: Dataset, action: str, body: Any) -> Dict[str, Any]:
    """
    Run *action* in the executor, superseding any live job on the same
    dataset. Raises ComputationCancelled if a newer request superseded it.
    """
    fn = ACTIONS[action]
    key = (session_id, dataset.name)
    token = RUNNER.begin(key)
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(_executor, fn, dataset, body, token, None)
    finally:
        RUNNER.finish(key, token)


# ---------------------------------------------------------------------------
# Streaming mode
# ---------------------------------------------------------------------------

async def run_job_streaming(
    job: JobRecord,
    dataset: Dataset,
    body: Any,
    channel: SSEChannel,
) -> None:
    """Run a job, pushing progress and the final result into *channel*."""
    fn = ACTIONS[job.action]
    key = (job.session_id, dataset.name)
    token = RUNNER.begin(key)
    loop = asyncio.get_running_loop()

    def progress(iteration: int, changed: int) -> None:
        asyncio.run_coroutine_threadsafe(
            channel.emit(EVT_KMEANS_ITERATION, {"iteration": iteration, "changed": changed}),
            loop,
        )

    await channel.emit(EVT_JOB_STARTED, {"job_id": job.job_id, "action": job.action, "dataset": dataset.name})
    try:
        result = await loop.run_in_executor(_executor, fn, dataset, body, token, progress)
        job.status = JobStatus.complete
        job.result = result
        await channel.emit(EVT_JOB_COMPLETE, {"job_id": job.job_id, **result})
    except ComputationCancelled as e:
        job.status = JobStatus.cancelled
        job.error = str(e)
        await channel.emit(EVT_JOB_CANCELLED, {"job_id": job.job_id, "message": str(e)})
    except Exception as e:
        logger.exception("Job %s failed", job.job_id)
        job.status = JobStatus.failed
        job.error = str(e)
        await channel.emit(EVT_ERROR, {"job_id": job.job_id, "message": str(e)})
    finally:
        RUNNER.finish(key, token)
        save_job(job)
        await channel.close()


def start_streaming_job(
    session_id: str,
    dataset: Dataset,
    action: str,
    body: Any,
    channels: Dict[str, SSEChannel],
) -> JobRecord:
    """Create a job record and schedule it; returns immediately."""
    job = create_job(session_id, dataset.name, action)
    channel = SSEChannel(job.job_id)
    channels[job.job_id] = channel

    async def _bg():
        try:
            await run_job_streaming(job, dataset, body, channel)
        finally:
            channels.pop(job.job_id, None)

    asyncio.create_task(_bg())
    return job
