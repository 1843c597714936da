"""POST /v1/validate-url."""

from fastapi import APIRouter

from api.schemas import ValidateUrlRequest, ValidateUrlResponse
from utils.crawl_github_files import parse_github_url

router = APIRouter()


@router.post("/validate-url", response_model=ValidateUrlResponse)
def validate_url(body: ValidateUrlRequest) -> ValidateUrlResponse:
    """Report whether repo_url names a GitHub repository, and which one."""
    ref = parse_github_url(body.repo_url)
    if ref is None:
        return ValidateUrlResponse(valid=False)
    return ValidateUrlResponse(
        valid=True,
        owner=ref.owner,
        repo=ref.repo,
        branch=ref.branch,
        normalized=ref.full_name.lower(),
    )
