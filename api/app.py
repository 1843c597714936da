"""
FastAPI application for repo-scrapper.

Run with: uvicorn api.app:app --reload
"""

import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

load_dotenv()
from api.routes.v1 import router as v1_router
from utils.errors import RepoError

logger = logging.getLogger("repo_scrapper.api")

app = FastAPI(
    title="repo-scrapper API",
    description="Generate structured tutorials from GitHub repositories.",
    version="0.1.0",
)
# Set lazily from the environment by api.dependencies.get_storage.
app.state.storage = None

app.include_router(v1_router)


@app.exception_handler(RepoError)
def repo_error_handler(request: Request, exc: RepoError) -> JSONResponse:
    """Render RepoError as an RFC 7807 problem detail."""
    logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.status, exc.detail)
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))
    return JSONResponse(
        status_code=exc.status,
        content=exc.to_problem_detail(),
        media_type="application/problem+json",
        headers=headers,
    )


@app.get("/health")
def health() -> dict[str, str]:
    """Liveness check."""
    return {"status": "ok"}
