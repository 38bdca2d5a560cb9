"""
In-memory session + job storage.

Datasets are immutable once stored; jobs track layout/analysis runs.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from .dataset import Dataset
from .models import JobRecord


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------

SESSIONS: Dict[str, Dict[str, Dataset]] = {}
SESS_HASHES: Dict[str, Dict[str, str]] = {}
SESS_META: Dict[str, Dict[str, dict]] = {}


def get_session(session_id: str) -> Dict[str, Dataset]:
    if session_id not in SESSIONS:
        SESSIONS[session_id] = {}
    return SESSIONS[session_id]


def get_session_hashes(session_id: str) -> Dict[str, str]:
    if session_id not in SESS_HASHES:
        SESS_HASHES[session_id] = {}
    return SESS_HASHES[session_id]


def get_session_meta(session_id: str) -> Dict[str, dict]:
    if session_id not in SESS_META:
        SESS_META[session_id] = {}
    return SESS_META[session_id]


def get_dataset(session_id: str, name: str) -> Optional[Dataset]:
    return SESSIONS.get(session_id, {}).get(name)


# ---------------------------------------------------------------------------
# Job store
# ---------------------------------------------------------------------------

# job_id -> JobRecord
JOBS: Dict[str, JobRecord] = {}

# session_id -> [job_id, ...]
SESSION_JOBS: Dict[str, List[str]] = {}


def create_job(session_id: str, dataset: str, action: str) -> JobRecord:
    """Create a new job and associate it with the session."""
    job = JobRecord(session_id=session_id, dataset=dataset, action=action)
    JOBS[job.job_id] = job
    SESSION_JOBS.setdefault(session_id, []).append(job.job_id)
    return job


def get_job(job_id: str) -> Optional[JobRecord]:
    return JOBS.get(job_id)


def save_job(job: JobRecord) -> None:
    """Persist (overwrite) the job in the store."""
    JOBS[job.job_id] = job


def get_session_jobs(session_id: str) -> List[str]:
    return SESSION_JOBS.get(session_id, [])


def clear_all() -> None:
    """Drop every session and job (used by tests)."""
    SESSIONS.clear()
    SESS_HASHES.clear()
    SESS_META.clear()
    JOBS.clear()
    SESSION_JOBS.clear()
