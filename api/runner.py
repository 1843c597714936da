"""Background runner: run the documentation flow for a job and update the job store."""

import logging
import os
from typing import Any

from api import job_store
from flow import run_documentation_flow_with_progress
from shared_schema import ProgressUpdate, default_shared_store
from utils.errors import DocumentationFlowError, RepoError
from utils.storage_adapters import StorageAdapter

logger = logging.getLogger("repo_scrapper.api.runner")


def _inputs_to_shared(inputs: dict[str, Any], storage: StorageAdapter | None) -> dict[str, Any]:
    """Build the shared store from job inputs."""
    shared = default_shared_store()
    shared["repo_url"] = (inputs.get("repo_url") or "").strip() or None
    shared["project_name"] = (inputs.get("project_name") or "").strip() or None
    shared["language"] = (inputs.get("language") or "english").strip()
    shared["github_token"] = inputs.get("github_token") or os.environ.get("GITHUB_TOKEN")
    shared["include_patterns"] = list(inputs.get("include_patterns") or [])
    shared["exclude_patterns"] = list(inputs.get("exclude_patterns") or [])
    shared["max_file_size"] = inputs.get("max_file_size") or shared["max_file_size"]
    shared["max_abstraction_num"] = inputs.get("max_abstractions") or shared["max_abstraction_num"]
    shared["llm"] = {"provider": inputs.get("provider"), "model": inputs.get("model")}
    shared["chapter_front_matter"] = bool(inputs.get("chapter_front_matter"))
    shared["storage_adapter"] = storage
    return shared


def run_job(job_id: str, storage: StorageAdapter | None = None) -> None:
    """
    Run the pipeline for the given job.
    Updates job store: running -> completed (with result) or failed (with a
    problem detail; flow failures also carry the chapters written so far).
    """
    rec = job_store.get_job_internal(job_id)
    if not rec:
        logger.warning("Job %s not found or expired", job_id)
        return
    if rec["status"] != "queued":
        return
    job_store.update_status(job_id, "running")

    def on_progress(update: ProgressUpdate) -> None:
        job_store.update_progress(job_id, update)

    try:
        shared = _inputs_to_shared(rec.get("inputs") or {}, storage)
        result = run_documentation_flow_with_progress(shared, on_progress=on_progress)
    except DocumentationFlowError as e:
        logger.error("Job %s failed at %s: %s", job_id, e.stage, e.detail)
        error = e.to_problem_detail()
        error["partial_chapters"] = [c.model_dump() for c in e.partial_result or []]
        job_store.update_status(job_id, "failed", error=error)
        return
    except RepoError as e:
        logger.error("Job %s failed: %s", job_id, e.detail)
        job_store.update_status(job_id, "failed", error=e.to_problem_detail())
        return
    except Exception as e:
        logger.exception("Job %s failed: %s", job_id, e)
        job_store.update_status(
            job_id,
            "failed",
            error={"type": "about:blank", "title": "Internal Server Error", "status": 500, "detail": str(e)},
        )
        return
    job_store.update_status(job_id, "completed", result=result.model_dump())
    logger.info("Job %s completed: %s chapters", job_id, len(result.generated_chapters))
