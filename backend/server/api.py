"""
Point cloud API routes: mounted as a sub-router on the main FastAPI app.

POST /api/datasets/{name}/layout|outliers|correlations|connections run a job
synchronously, or with ?stream=1 return {job_id} and stream progress via
GET /api/jobs/{job_id}/events.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from core.dataset import Dataset
from core.models import ConnectionRequest, CorrelationRequest, JobStatus, LayoutRequest, OutlierRequest
from core.storage import get_dataset, get_job, get_session, get_session_jobs
from engine.correlation import AnalysisError
from engine.kmeans import ComputationCancelled
from engine.layout import LayoutError
from engine.summary import summarize_dataset
from server.orchestrator import run_job, start_streaming_job
from server.sse import SSEChannel, SSEEvent, EVT_ERROR, EVT_JOB_CANCELLED, EVT_JOB_COMPLETE

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api", tags=["pointcloud"])

# Track active SSE channels for streaming jobs
_active_channels: Dict[str, SSEChannel] = {}

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Terminal event replayed for a job whose channel is already gone
_FINAL_EVENTS = {
    JobStatus.complete: EVT_JOB_COMPLETE,
    JobStatus.cancelled: EVT_JOB_CANCELLED,
    JobStatus.failed: EVT_ERROR,
}


def _require_session_id(request: Request) -> str:
    sid = request.headers.get("X-Session-Id")
    if not sid:
        raise HTTPException(status_code=400, detail="Missing X-Session-Id header.")
    return sid


def _require_dataset(sid: str, name: str) -> Dataset:
    dataset = get_dataset(sid, name)
    if dataset is None:
        raise HTTPException(status_code=404, detail=f"Dataset '{name}' not found")
    return dataset


def _wants_stream(request: Request) -> bool:
    return request.query_params.get("stream", "").lower() in ("1", "true", "yes")


async def _dispatch(request: Request, name: str, action: str, body: Any) -> Dict[str, Any]:
    sid = _require_session_id(request)
    dataset = _require_dataset(sid, name)

    if _wants_stream(request):
        job = start_streaming_job(sid, dataset, action, body, _active_channels)
        return {"job_id": job.job_id, "streaming": True}

    try:
        return await run_job(sid, dataset, action, body)
    except (LayoutError, AnalysisError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ComputationCancelled as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.exception("%s job failed for %s", action, name)
        raise HTTPException(status_code=500, detail=f"{action} failed: {e}")


# ---------------------------------------------------------------------------
# Datasets
# ---------------------------------------------------------------------------

@router.get("/datasets/{name}")
async def get_dataset_summary(request: Request, name: str):
    """Schema, statistics and findings for the info panel."""
    sid = _require_session_id(request)
    return summarize_dataset(_require_dataset(sid, name)).model_dump()


@router.post("/datasets/{name}/layout")
async def create_layout(request: Request, name: str, body: LayoutRequest = LayoutRequest()):
    return await _dispatch(request, name, "layout", body)


@router.post("/datasets/{name}/outliers")
async def find_outliers(request: Request, name: str, body: OutlierRequest = OutlierRequest()):
    return await _dispatch(request, name, "outliers", body)


@router.post("/datasets/{name}/correlations")
async def find_correlations(request: Request, name: str, body: CorrelationRequest):
    return await _dispatch(request, name, "correlations", body)


@router.post("/datasets/{name}/connections")
async def find_connections(request: Request, name: str, body: ConnectionRequest = ConnectionRequest()):
    return await _dispatch(request, name, "connections", body)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@router.get("/jobs/{job_id}/events")
async def stream_job_events(
    request: Request,
    job_id: str,
    session_id: str = Query(None, alias="session_id"),
):
    """
    SSE endpoint: streams events for an active job.

    EventSource doesn't support custom headers, so session_id is passed
    as a query parameter.
    """
    sid = session_id or request.headers.get("X-Session-Id")
    if not sid:
        raise HTTPException(status_code=400, detail="Missing session_id query parameter.")

    channel = _active_channels.get(job_id)
    if channel is None:
        # Job may have already completed; return the final state as one event
        job = get_job(job_id)
        if job is None or job.session_id != sid:
            raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found.")

        final = SSEEvent(event=_FINAL_EVENTS.get(job.status, EVT_JOB_COMPLETE), data=job, id=f"{job_id}:final")

        async def _completed():
            yield final.format()

        return StreamingResponse(_completed(), media_type="text/event-stream", headers=_SSE_HEADERS)

    async def _stream():
        async for event_str in channel:
            yield event_str

    return StreamingResponse(_stream(), media_type="text/event-stream", headers=_SSE_HEADERS)


@router.get("/jobs/{job_id}")
async def get_job_result(request: Request, job_id: str):
    """Retrieve a streaming job's state and, once finished, its result."""
    sid = _require_session_id(request)
    job = get_job(job_id)
    if job is None or job.session_id != sid:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found.")
    return job.model_dump()


@router.get("/jobs")
async def list_jobs(request: Request):
    """List all jobs for this session."""
    sid = _require_session_id(request)
    jobs = []
    for jid in get_session_jobs(sid):
        job = get_job(jid)
        if job:
            jobs.append({
                "job_id": job.job_id,
                "dataset": job.dataset,
                "action": job.action,
                "status": job.status.value,
            })
    return {"jobs": jobs, "datasets": list(get_session(sid).keys())}
