"""POST /v1/llm/check: one-shot provider connectivity check."""

from typing import Any

from fastapi import APIRouter

from api.schemas import LLMCheckRequest
from utils.call_llm import check_llm_connection

router = APIRouter()


@router.post("/llm/check")
def llm_check(body: LLMCheckRequest) -> dict[str, Any]:
    """Always 200; "ok" says whether the provider answered, "error" holds the problem detail."""
    return check_llm_connection(
        provider=body.provider,
        model=body.model,
        api_key=body.api_key,
        base_url=body.base_url,
    )
