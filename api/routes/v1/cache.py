"""Cache management: GET /v1/cache, DELETE /v1/cache/{owner}/{repo}."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Response

from api.dependencies import get_storage
from utils.repo_cache import CacheStats, clear_repo_cache, get_cache_stats
from utils.storage_adapters import StorageAdapter

logger = logging.getLogger("repo_scrapper.api")

router = APIRouter()


@router.get("/cache", response_model=CacheStats)
def cache_stats(storage: StorageAdapter = Depends(get_storage)) -> CacheStats:
    return get_cache_stats(storage)


@router.delete("/cache/{owner}/{repo}", status_code=204)
def delete_cache(owner: str, repo: str, storage: StorageAdapter = Depends(get_storage)) -> Response:
    """Drop one repository's cache. 404 when nothing was cached."""
    if not clear_repo_cache(storage, f"{owner}/{repo}"):
        raise HTTPException(status_code=404, detail="No cache for this repository.")
    logger.info("Cache cleared for %s/%s", owner, repo)
    return Response(status_code=204)
