"""
Helpers for formatting file list and content for LLM prompts.

Used by IdentifyAbstractions, AnalyzeRelationships and WriteChapters, which need
index # path listings and content snippets. File content is cut to a per-file
character budget (LLM_MAX_CHARS_PER_FILE, default 20000) so one huge file
cannot crowd the rest out of the prompt.
"""

import logging
import os
from typing import Optional

logger = logging.getLogger("repo_scrapper")

DEFAULT_MAX_CHARS_PER_FILE = 20_000
TRUNCATION_MARKER = "\n... [truncated]"


def max_chars_per_file() -> int:
    """Per-file budget from LLM_MAX_CHARS_PER_FILE; 0 disables truncation."""
    raw = os.environ.get("LLM_MAX_CHARS_PER_FILE", "")
    try:
        value = int(raw) if raw.strip() else DEFAULT_MAX_CHARS_PER_FILE
    except ValueError:
        logger.warning("Ignoring invalid LLM_MAX_CHARS_PER_FILE=%r", raw)
        value = DEFAULT_MAX_CHARS_PER_FILE
    return max(0, value)


def truncate_content(content: str, limit: Optional[int] = None) -> str:
    """Keep the first `limit` characters of content, marking the cut."""
    if limit is None:
        limit = max_chars_per_file()
    if limit <= 0 or len(content) <= limit:
        return content
    return content[:limit] + TRUNCATION_MARKER


def create_llm_context(
    files: list[tuple[str, str]],
    max_chars: Optional[int] = None,
) -> tuple[str, list[tuple[int, str]]]:
    """
    Format the file list with indices for LLM prompts.

    Args:
        files: List of (path, content) tuples (e.g. shared["files"]).
        max_chars: Per-file character budget; defaults to LLM_MAX_CHARS_PER_FILE.

    Returns:
        A tuple of (context_string, file_info) where context_string contains
        file content with indices and file_info is a list of (index, path) tuples.
    """
    parts = []
    file_info = []
    for i, (path, content) in enumerate(files):
        parts.append(f"--- File Index {i}: {path} ---\n{truncate_content(content, max_chars)}\n\n")
        file_info.append((i, path))
    return "".join(parts), file_info


def get_content_for_indices(
    files: list[tuple[str, str]],
    indices: list[int],
    max_chars: Optional[int] = None,
) -> dict[str, str]:
    """
    Return content for the given file indices, formatted for LLM prompts.

    Args:
        files: List of (path, content) tuples (e.g. shared["files"]).
        indices: List of file indices to include.
        max_chars: Per-file character budget; defaults to LLM_MAX_CHARS_PER_FILE.

    Returns:
        A dictionary mapping "index # path" strings to file content.
        Invalid indices are skipped.
    """
    content_map = {}
    for i in indices:
        if 0 <= i < len(files):
            path, content = files[i]
            content_map[f"{i} # {path}"] = truncate_content(content, max_chars)
    return content_map
