"""In-memory job store for async generation jobs."""

import os
import threading
import time
import uuid
from typing import Any

from shared_schema import ProgressUpdate

# job_id -> job record, oldest first.
_store: dict[str, dict[str, Any]] = {}
_lock = threading.Lock()
JOB_RETENTION_SECONDS = int(os.environ.get("JOB_RETENTION_SECONDS", "86400"))  # 24 h
MAX_JOBS = int(os.environ.get("JOB_STORE_MAX_JOBS", "1000"))

FINISHED_STATUSES = ("completed", "failed")


def create_job(inputs: dict[str, Any], user_id: str | None = None) -> str:
    """Create a new job with status queued. Returns job_id."""
    job_id = str(uuid.uuid4())
    now = time.time()
    with _lock:
        _cleanup_expired(now)
        _evict_for_capacity()
        _store[job_id] = {
            "job_id": job_id,
            "status": "queued",
            "inputs": inputs,
            "user_id": user_id,
            "progress": None,
            "result": None,
            "error": None,
            "created_at": now,
            "updated_at": now,
        }
    return job_id


def update_status(
    job_id: str,
    status: str,
    result: dict[str, Any] | None = None,
    error: dict[str, Any] | None = None,
) -> None:
    """Update job status and optionally result or error."""
    with _lock:
        rec = _store.get(job_id)
        if rec is None:
            return
        rec["status"] = status
        rec["updated_at"] = time.time()
        if result is not None:
            rec["result"] = result
        if error is not None:
            rec["error"] = error


def update_progress(job_id: str, update: ProgressUpdate) -> None:
    with _lock:
        rec = _store.get(job_id)
        if rec is None:
            return
        rec["progress"] = update.model_dump()
        rec["updated_at"] = time.time()


def get_job(job_id: str) -> dict[str, Any] | None:
    """Return job record for API response (no inputs). None if missing or expired."""
    with _lock:
        _cleanup_expired(time.time())
        rec = _store.get(job_id)
        if rec is None:
            return None
        return {
            "job_id": rec["job_id"],
            "status": rec["status"],
            "created_at": rec["created_at"],
            "updated_at": rec["updated_at"],
            "progress": rec.get("progress"),
            "result": rec.get("result"),
            "error": rec.get("error"),
        }


def get_job_internal(job_id: str) -> dict[str, Any] | None:
    """Return a copy of the full job record including inputs (for runner)."""
    with _lock:
        _cleanup_expired(time.time())
        rec = _store.get(job_id)
        return dict(rec) if rec is not None else None


def clear() -> None:
    with _lock:
        _store.clear()


def _cleanup_expired(now: float) -> None:
    """Remove jobs older than JOB_RETENTION_SECONDS."""
    to_remove = [jid for jid, rec in _store.items() if now - rec["created_at"] > JOB_RETENTION_SECONDS]
    for jid in to_remove:
        del _store[jid]


def _evict_for_capacity() -> None:
    """Make room for one more job: drop the oldest finished jobs, then the oldest of any status."""
    while len(_store) >= MAX_JOBS:
        victim = next((jid for jid, rec in _store.items() if rec["status"] in FINISHED_STATUSES), None)
        if victim is None:
            victim = next(iter(_store))
        del _store[victim]
