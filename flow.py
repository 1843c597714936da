"""
PocketFlow flow for the repo-scrapper pipeline.

FetchRepo -> IdentifyAbstractions -> AnalyzeRelationships -> OrderChapters -> WriteChapters -> CombineTutorial
FetchRepo - "cached" -> RestoreCachedDocs -> CombineTutorial
"""

import copy
import logging
import math
from typing import Any, Callable, Mapping, Optional

from pocketflow import BaseNode, Flow

from nodes import (
    AnalyzeRelationships,
    CombineTutorial,
    FetchRepo,
    IdentifyAbstractions,
    OrderChapters,
    RestoreCachedDocs,
    WriteChapters,
    derive_project_name,
    generation_settings,
)
from shared_schema import (
    DocGenerationResult,
    GeneratedChapter,
    ProgressUpdate,
    prepare_shared_store,
    total_token_usage,
)
from utils.errors import DocumentationFlowError, ErrorKind, RepoError
from utils.repo_cache import RegenerationMode, create_repo_cache, save_repo_cache, store_generation_results

logger = logging.getLogger("repo_scrapper")

ProgressCallback = Callable[[ProgressUpdate], None]

STAGE_LABELS = {
    "FetchRepo": "Fetched repository files",
    "RestoreCachedDocs": "Restored cached documentation",
    "IdentifyAbstractions": "Identified core abstractions",
    "AnalyzeRelationships": "Analyzed relationships",
    "OrderChapters": "Ordered chapters",
    "WriteChapters": "Wrote chapters",
    "CombineTutorial": "Combined tutorial",
}


def _path_length(node: Optional[BaseNode]) -> int:
    """Number of nodes from node to the end, following default transitions."""
    seen: set[int] = set()
    n = 0
    while node is not None and id(node) not in seen:
        seen.add(id(node))
        n += 1
        node = node.successors.get("default")
    return n


def _partial_chapters(node: BaseNode, shared: dict) -> list[GeneratedChapter]:
    chapters = shared.get("chapters") or getattr(node, "chapters_written", None) or []
    return [
        GeneratedChapter(
            position=c["position"],
            title=c["title"],
            filename=c["filename"],
            content=c["content"],
            regenerated=c.get("regenerated", True),
        )
        for c in chapters
    ]


class DocumentationFlow(Flow):
    """
    Flow that reports progress after every node and wraps a node failure in a
    DocumentationFlowError carrying the chapters written so far.

    total_steps is the length of the path still ahead, so it drops when
    FetchRepo takes the "cached" branch.
    """

    def __init__(self, start: Optional[BaseNode] = None, on_progress: Optional[ProgressCallback] = None) -> None:
        super().__init__(start=start)
        self.on_progress = on_progress

    def _orch(self, shared: dict, params: Optional[dict] = None) -> Any:
        curr, p, last_action = copy.copy(self.start_node), (params or {**self.params}), None
        step = 0
        while curr:
            curr.set_params(p)
            stage = type(curr).__name__
            try:
                last_action = curr._run(shared)
            except Exception as e:
                logger.error("Stage %s failed: %s", stage, e)
                raise DocumentationFlowError(stage, e, partial_result=_partial_chapters(curr, shared)) from e
            step += 1
            nxt = self.get_next_node(curr, last_action)
            if self.on_progress is not None:
                self.on_progress(
                    ProgressUpdate(
                        step=step,
                        total_steps=step + _path_length(nxt),
                        stage=stage,
                        label=STAGE_LABELS.get(stage, stage),
                    )
                )
            curr = copy.copy(nxt)
        return last_action


def create_documentation_flow(skip_fetch: bool = False, on_progress: Optional[ProgressCallback] = None) -> Flow:
    """Create the documentation flow; with skip_fetch it starts at IdentifyAbstractions."""
    fetch_repo = FetchRepo()
    restore = RestoreCachedDocs()
    identify = IdentifyAbstractions()
    analyze = AnalyzeRelationships()
    order = OrderChapters()
    write_chapters = WriteChapters()
    combine = CombineTutorial()
    fetch_repo >> identify >> analyze >> order >> write_chapters >> combine
    fetch_repo - "cached" >> restore >> combine
    return DocumentationFlow(start=identify if skip_fetch else fetch_repo, on_progress=on_progress)


def _save_cache(shared: dict) -> None:
    """Record this run in the repository cache when a storage adapter is configured."""
    adapter = shared.get("storage_adapter")
    repo_url = shared.get("repo_url")
    if adapter is None or not repo_url:
        return
    plan = shared.get("regeneration_plan")
    llm = shared.get("llm") or {}
    cache = shared.get("repo_cache") or create_repo_cache(repo_url)
    store_generation_results(
        cache,
        files=shared.get("files") or [],
        abstractions=shared.get("abstractions") or [],
        relationships=shared.get("relationships") or {},
        chapter_order=shared.get("chapter_order") or [],
        chapters=shared.get("chapters") or [],
        project_name=shared.get("project_name"),
        index_content=shared.get("generated_index"),
        metadata={
            "language": shared.get("language"),
            "provider": llm.get("provider"),
            "model": llm.get("model"),
            "token_usage": total_token_usage(shared).model_dump(),
            "regeneration_mode": plan.mode.value if plan is not None else RegenerationMode.FULL.value,
            "generation": generation_settings(shared),
        },
    )
    try:
        save_repo_cache(adapter, cache)
    except RepoError as e:
        if e.kind != ErrorKind.CACHE:
            raise
        # generated docs are still returned
        logger.warning("Could not save repository cache: %s", e)


def _build_result(shared: dict) -> DocGenerationResult:
    plan = shared.get("regeneration_plan")
    return DocGenerationResult(
        project_name=shared.get("project_name") or "project",
        repo_url=shared.get("repo_url"),
        generated_index=shared.get("generated_index") or "",
        generated_chapters=[GeneratedChapter(**c) for c in shared.get("generated_chapters") or []],
        token_usage=total_token_usage(shared),
        regeneration_mode=plan.mode.value if plan is not None else RegenerationMode.FULL.value,
    )


def run_documentation_flow_with_progress(
    initial_state: Mapping[str, Any],
    on_progress: Optional[ProgressCallback] = None,
) -> DocGenerationResult:
    """
    Run the full pipeline on a private copy of initial_state.

    When initial_state already carries files, FetchRepo (and the cache plan) is
    skipped. Raises DocumentationFlowError when any stage fails.
    """
    shared = prepare_shared_store(initial_state)
    skip_fetch = bool(shared["files"])
    if skip_fetch:
        shared["project_name"] = derive_project_name(shared.get("repo_url"), shared.get("project_name"))
    logger.info(
        "Starting documentation flow: repo=%s, language=%s, skip_fetch=%s",
        shared.get("repo_url"),
        shared.get("language"),
        skip_fetch,
    )
    create_documentation_flow(skip_fetch=skip_fetch, on_progress=on_progress).run(shared)
    _save_cache(shared)
    result = _build_result(shared)
    logger.info(
        "Documentation flow finished: project=%s, chapters=%s, tokens=%s",
        result.project_name,
        len(result.generated_chapters),
        result.token_usage.total_tokens,
    )
    return result


def run_documentation_flow(initial_state: Mapping[str, Any]) -> DocGenerationResult:
    return run_documentation_flow_with_progress(initial_state)


def estimate_token_usage(files: list[tuple[str, str]]) -> dict[str, int]:
    """Rough pre-run estimate: about 3.5 characters per token."""
    total_chars = sum(len(content) for _, content in files)
    return {
        "total_chars": total_chars,
        "estimated_tokens": math.ceil(total_chars / 3.5),
        "file_count": len(files),
    }
