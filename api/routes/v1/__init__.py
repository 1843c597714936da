"""API v1 routes."""

from fastapi import APIRouter

from api.routes.v1 import cache, jobs, llm, repos

router = APIRouter(prefix="/v1", tags=["v1"])
router.include_router(jobs.router, tags=["jobs"])
router.include_router(repos.router, tags=["repos"])
router.include_router(cache.router, tags=["cache"])
router.include_router(llm.router, tags=["llm"])
