"""Async job routes: POST /v1/jobs, GET /v1/jobs/{id}."""

import logging
import math
import threading

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from api import job_store
from api.debounce import generation_debouncer
from api.dependencies import get_storage, get_user_id
from api.runner import run_job
from api.schemas import JobCreateRequest, JobCreateResponse, JobResponse
from utils.crawl_github_files import is_valid_github_url, normalize_repo_url
from utils.errors import ErrorKind, RepoError, validation_error
from utils.patterns import resolve_patterns
from utils.storage_adapters import StorageAdapter

logger = logging.getLogger("repo_scrapper.api")

router = APIRouter()


def _body_to_inputs(body: JobCreateRequest) -> dict:
    """Convert request body to job inputs dict (stored in job). Raises RepoError on unknown categories."""
    include_patterns, exclude_patterns = resolve_patterns(
        include_categories=body.include_categories,
        exclude_categories=body.exclude_categories,
        additional_includes=body.include_patterns,
        additional_excludes=body.exclude_patterns,
    )
    return {
        "repo_url": body.repo_url.strip(),
        "project_name": body.project_name,
        "language": body.language,
        "github_token": body.github_token,
        "include_patterns": include_patterns,
        "exclude_patterns": exclude_patterns,
        "max_file_size": body.max_file_size,
        "max_abstractions": body.max_abstractions,
        "provider": body.provider,
        "model": body.model,
        "chapter_front_matter": body.chapter_front_matter,
    }


@router.post("/jobs", response_model=JobCreateResponse, status_code=201)
def post_jobs(
    body: JobCreateRequest,
    user_id: str = Depends(get_user_id),
    storage: StorageAdapter = Depends(get_storage),
) -> JSONResponse:
    """
    Create an async generation job. Returns job_id; poll GET /v1/jobs/{id} for
    status and progress. A caller asking for the same repository again within
    GENERATION_DEBOUNCE_SECONDS gets 429 with Retry-After.
    """
    if not is_valid_github_url(body.repo_url):
        raise validation_error(f"Not a GitHub repository URL: {body.repo_url}", field="repo_url")
    inputs = _body_to_inputs(body)

    wait = generation_debouncer.check(f"{user_id}:{normalize_repo_url(body.repo_url)}")
    if wait is not None:
        retry_after = max(math.ceil(wait), 1)
        raise RepoError(
            ErrorKind.RATE_LIMIT,
            f"Generation for this repository was requested recently. Try again in {retry_after}s.",
            status=429,
            title="Too Many Requests",
            retry_after=retry_after,
        )

    job_id = job_store.create_job(inputs, user_id=user_id)
    logger.info("Job %s queued for %s (user=%s)", job_id, inputs["repo_url"], user_id)
    t = threading.Thread(target=run_job, args=(job_id, storage))
    t.daemon = True
    t.start()
    return JSONResponse(
        content={"job_id": job_id, "status": "queued"},
        status_code=201,
        headers={"Location": f"/v1/jobs/{job_id}"},
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str) -> JobResponse:
    """Get job status. 404 if unknown or expired."""
    rec = job_store.get_job(job_id)
    if not rec:
        raise HTTPException(status_code=404, detail="Job not found or expired.")
    return JobResponse(**rec)
