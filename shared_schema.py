"""
Shared store schema and defaults for the repo-scrapper pipeline.

Inputs (set by CLI/API before the flow runs):
- repo_url (Optional[str]): GitHub repository URL (any form parse_github_url accepts).
- github_token (Optional[str]): For GitHub API (argument or GITHUB_TOKEN).
- project_name (Optional[str]): Derived from repo_url if not provided.
- language (str): Tutorial language (default "english").
- include_patterns / exclude_patterns (list): File glob patterns.
- max_file_size (int): Max bytes per file (default 500 KiB).
- max_abstraction_num (int): Upper bound on identified abstractions (default 10).
- max_retries (int): Attempts for a stage whose LLM answer cannot be parsed (default 3).
- llm (dict): provider, model, api_key, base_url passed to call_llm.
- retry_policy (Optional[RetryPolicy]): Retry schedule for GitHub and LLM calls.
- storage_adapter (Optional[StorageAdapter]): Enables the repository cache.
- full_regeneration_threshold (Optional[float]): Changed-file fraction forcing a full run.
- chapter_front_matter (bool): Prefix chapters with a YAML front-matter block.
- files (list): Optional pre-fetched (path, content) list; FetchRepo is skipped.

Stage outputs (each key written once, by the stage that owns it):
- FetchRepo: files, project_name, crawl_stats, file_changes, regeneration_plan, repo_cache.
- RestoreCachedDocs: abstractions, relationships, chapter_order, chapters.
- IdentifyAbstractions (abstractions): list of {"name", "description", "files": [int]}.
- AnalyzeRelationships (relationships): {"summary": str, "details": [{"from", "to", "label"}]}.
- OrderChapters (chapter_order): indices into abstractions.
- WriteChapters (chapters): list of {"position", "title", "filename", "content",
  "abstraction_indices", "regenerated"}.
- CombineTutorial: generated_index (str), generated_chapters (list of chapter dicts).
- token_usage: dict stage -> {"input_tokens", "output_tokens", "calls"}; each stage
  only touches its own entry.
"""

import copy
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field

# Live objects handed through by reference rather than copied per run.
RUNTIME_KEYS = frozenset({"storage_adapter", "retry_policy"})

STAGE_OUTPUTS: dict[str, frozenset[str]] = {
    "FetchRepo": frozenset(
        {"files", "project_name", "crawl_stats", "file_changes", "regeneration_plan", "repo_cache"}
    ),
    "RestoreCachedDocs": frozenset({"abstractions", "relationships", "chapter_order", "chapters"}),
    "IdentifyAbstractions": frozenset({"abstractions"}),
    "AnalyzeRelationships": frozenset({"relationships"}),
    "OrderChapters": frozenset({"chapter_order"}),
    "WriteChapters": frozenset({"chapters"}),
    "CombineTutorial": frozenset({"generated_index", "generated_chapters"}),
}

FINALIZED_KEY = "_finalized"


class StageWriteError(RuntimeError):
    """A stage tried to write a key it does not own or one already finalized."""


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    calls: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class GeneratedChapter(BaseModel):
    position: int
    title: str
    filename: str
    content: str
    regenerated: bool = True


class ProgressUpdate(BaseModel):
    step: int
    total_steps: int
    stage: str
    label: str


class DocGenerationResult(BaseModel):
    project_name: str
    repo_url: Optional[str] = None
    generated_index: str
    generated_chapters: list[GeneratedChapter] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    regeneration_mode: str = "full"


def default_shared_store() -> dict:
    """Return a new shared store dict with default keys and values."""
    return {
        "repo_url": None,
        "github_token": None,
        "project_name": None,
        "language": "english",
        "include_patterns": [],
        "exclude_patterns": [],
        "max_file_size": 500 * 1024,
        "max_abstraction_num": 10,
        "max_retries": 3,
        "llm": {},
        "retry_policy": None,
        "storage_adapter": None,
        "full_regeneration_threshold": None,
        "chapter_front_matter": False,
        "files": [],
        "crawl_stats": None,
        "file_changes": None,
        "regeneration_plan": None,
        "repo_cache": None,
        "abstractions": [],
        "relationships": {
            "summary": "",
            "details": [],
        },
        "chapter_order": [],
        "chapters": [],
        "generated_index": None,
        "generated_chapters": [],
        "token_usage": {},
        FINALIZED_KEY: set(),
    }


def prepare_shared_store(initial_state: Mapping[str, Any]) -> dict:
    """
    Build a private store for one run: defaults overlaid with a deep copy of
    initial_state. Runtime objects (storage adapter, retry policy) are shared.
    """
    shared = default_shared_store()
    for key, value in initial_state.items():
        if key == FINALIZED_KEY:
            continue
        shared[key] = value if key in RUNTIME_KEYS else copy.deepcopy(value)
    shared["files"] = [(str(path), str(content)) for path, content in shared.get("files") or []]
    shared[FINALIZED_KEY] = set()
    shared["token_usage"] = {}
    return shared


def write_stage_output(shared: dict, stage: str, **values: Any) -> None:
    """Write a stage's outputs, refusing keys it does not own or that are already final."""
    owned = STAGE_OUTPUTS.get(stage)
    if owned is None:
        raise StageWriteError(f"Unknown stage {stage!r}")
    finalized = shared.setdefault(FINALIZED_KEY, set())
    for key in values:
        if key not in owned:
            raise StageWriteError(f"{stage} may not write {key!r}")
        if key in finalized:
            raise StageWriteError(f"{key!r} was already written by an earlier stage")
    for key, value in values.items():
        shared[key] = value
        finalized.add(key)


def record_token_usage(shared: dict, stage: str, usage: TokenUsage) -> None:
    """Add usage to the stage's own entry in shared["token_usage"]."""
    entry = shared.setdefault("token_usage", {}).setdefault(stage, TokenUsage().model_dump())
    entry["input_tokens"] += usage.input_tokens
    entry["output_tokens"] += usage.output_tokens
    entry["calls"] += usage.calls


def total_token_usage(shared: Mapping[str, Any]) -> TokenUsage:
    total = TokenUsage()
    for entry in (shared.get("token_usage") or {}).values():
        total.input_tokens += int(entry.get("input_tokens", 0))
        total.output_tokens += int(entry.get("output_tokens", 0))
        total.calls += int(entry.get("calls", 0))
    return total
