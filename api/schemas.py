"""Pydantic request/response models for the API."""

from pydantic import BaseModel, Field


class JobCreateRequest(BaseModel):
    """Request body for POST /v1/jobs."""

    repo_url: str = Field(..., description="GitHub repository URL")
    project_name: str | None = Field(default=None, description="Project name for output")
    language: str = Field(default="english", description="Tutorial language")
    github_token: str | None = Field(default=None, description="GitHub API token (optional)")
    include_categories: list[str] = Field(default_factory=list, description="Include pattern category labels")
    exclude_categories: list[str] = Field(default_factory=list, description="Extra exclude category labels")
    include_patterns: list[str] = Field(default_factory=list, description="Extra include globs")
    exclude_patterns: list[str] = Field(default_factory=list, description="Extra exclude globs")
    max_file_size: int = Field(default=500 * 1024, gt=0, description="Max bytes per file")
    max_abstractions: int = Field(default=10, gt=0, le=50, description="Max abstractions / chapters")
    provider: str | None = Field(default=None, description="LLM provider (default: LLM_PROVIDER)")
    model: str | None = Field(default=None, description="LLM model")
    chapter_front_matter: bool = Field(default=False, description="Prefix chapters with YAML front matter")


class JobCreateResponse(BaseModel):
    """Response for POST /v1/jobs (201)."""

    job_id: str
    status: str = "queued"


class JobProgress(BaseModel):
    step: int
    total_steps: int
    stage: str
    label: str


class JobResponse(BaseModel):
    """Response for GET /v1/jobs/{job_id}."""

    job_id: str
    status: str  # queued | running | completed | failed
    created_at: float
    updated_at: float
    progress: JobProgress | None = None
    result: dict | None = None
    error: dict | None = None  # problem detail, plus partial_chapters on flow failures


class ValidateUrlRequest(BaseModel):
    repo_url: str


class ValidateUrlResponse(BaseModel):
    valid: bool
    owner: str | None = None
    repo: str | None = None
    branch: str | None = None
    normalized: str | None = None


class LLMCheckRequest(BaseModel):
    """Request body for POST /v1/llm/check."""

    provider: str | None = None
    model: str | None = None
    api_key: str | None = None
    base_url: str | None = None
