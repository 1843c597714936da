"""
Repository-level cache for generated documentation.

Stores, per repository, a content hash for every crawled file plus the
abstractions, relationships, chapter order and chapters produced by the last
successful run. On the next run the crawled files are diffed against the
stored hashes and determine_regeneration_plan decides between:

- none: nothing changed, reuse everything
- incremental: rewrite only chapters whose abstractions touch changed files
- full: no usable cache, or more than the threshold fraction of files changed

Caches go through a StorageAdapter as JSON. A missing, corrupt or
wrong-version entry loads as None and never raises. Concurrent savers for the
same repository are last-writer-wins.
"""

import hashlib
import json
import logging
import os
import time
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, Field, ValidationError

from utils.crawl_github_files import normalize_repo_url
from utils.errors import cache_error
from utils.storage_adapters import STORAGE_ERRORS, StorageAdapter

logger = logging.getLogger("repo_scrapper")

REPO_INDEX_KEY = "repo_index"
CACHE_PREFIX = "repo_cache_"
CACHE_VERSION = "1"
DEFAULT_FULL_REGENERATION_THRESHOLD = 0.3

FileSource = Union[Mapping[str, str], Iterable[tuple[str, str]]]


class CachedFile(BaseModel):
    path: str
    content_hash: str
    last_modified: float = Field(default_factory=time.time)
    content: Optional[str] = None


class CachedAbstraction(BaseModel):
    name: str
    description: str = ""
    files: list[str] = Field(default_factory=list)


class CachedRelationship(BaseModel):
    source: int
    target: int
    label: str = ""


class CachedChapter(BaseModel):
    position: int
    title: str
    filename: str
    content: str
    abstraction_indices: list[int] = Field(default_factory=list)
    generated_at: float = Field(default_factory=time.time)


class RepoCache(BaseModel):
    repo_url: str
    repo_id: str
    version: str = CACHE_VERSION
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    files: dict[str, CachedFile] = Field(default_factory=dict)
    abstractions: list[CachedAbstraction] = Field(default_factory=list)
    summary: str = ""
    relationships: list[CachedRelationship] = Field(default_factory=list)
    chapter_order: list[int] = Field(default_factory=list)
    chapters: list[CachedChapter] = Field(default_factory=list)
    project_name: Optional[str] = None
    index_content: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RepoIndexEntry(BaseModel):
    cache_key: str
    repo_url: str
    last_updated: float = Field(default_factory=time.time)
    last_accessed: float = Field(default_factory=time.time)


class RepoIndex(BaseModel):
    version: str = CACHE_VERSION
    repos: dict[str, RepoIndexEntry] = Field(default_factory=dict)


class FileChangeAnalysis(BaseModel):
    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    change_fraction: float = 0.0

    @property
    def changed_paths(self) -> set[str]:
        return set(self.added) | set(self.removed) | set(self.modified)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified)


class RegenerationMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    NONE = "none"


class RegenerationPlan(BaseModel):
    mode: RegenerationMode
    reason: str = ""
    stale_abstractions: list[int] = Field(default_factory=list)
    stale_chapters: list[int] = Field(default_factory=list)


class CacheStatsEntry(BaseModel):
    repo_id: str
    repo_url: str
    last_accessed: float
    last_updated: float
    files_count: int = 0
    chapters_count: int = 0


class CacheStats(BaseModel):
    total_repos: int = 0
    repos: list[CacheStatsEntry] = Field(default_factory=list)


# --- keys and hashing ---


def compute_content_hash(content: str) -> str:
    """SHA-256 hex digest of the UTF-8 bytes; path independent."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def repo_cache_key(repo_url: str) -> str:
    safe = "".join(c for c in normalize_repo_url(repo_url).replace("/", "_") if c.isalnum() or c in "_-.")
    return f"{CACHE_PREFIX}{safe}"


def _iter_files(files: FileSource) -> list[tuple[str, str]]:
    if isinstance(files, Mapping):
        return list(files.items())
    return [(path, content) for path, content in files]


def default_full_regeneration_threshold() -> float:
    """Threshold from REPO_CACHE_FULL_REGEN_THRESHOLD (fraction in [0, 1], default 0.3)."""
    raw = os.environ.get("REPO_CACHE_FULL_REGEN_THRESHOLD", "")
    try:
        value = float(raw) if raw.strip() else DEFAULT_FULL_REGENERATION_THRESHOLD
    except ValueError:
        logger.warning("Ignoring invalid REPO_CACHE_FULL_REGEN_THRESHOLD=%r", raw)
        value = DEFAULT_FULL_REGENERATION_THRESHOLD
    return max(0.0, min(value, 1.0))


# --- index ---


def load_repo_index(adapter: StorageAdapter) -> RepoIndex:
    try:
        raw = adapter.get(REPO_INDEX_KEY)
    except STORAGE_ERRORS as e:
        logger.warning("Repo index is unreadable, starting a new one: %s", e)
        return RepoIndex()
    if not raw:
        return RepoIndex()
    try:
        return RepoIndex.model_validate_json(raw)
    except (ValidationError, ValueError) as e:
        logger.warning("Repo index is unreadable, starting a new one: %s", e)
        return RepoIndex()


def save_repo_index(adapter: StorageAdapter, index: RepoIndex) -> None:
    adapter.set(REPO_INDEX_KEY, index.model_dump_json())


# --- cache lifecycle ---


def create_repo_cache(repo_url: str) -> RepoCache:
    """Empty cache scaffold for a repository."""
    return RepoCache(repo_url=repo_url, repo_id=normalize_repo_url(repo_url))


def _read_cache(adapter: StorageAdapter, key: str) -> Optional[RepoCache]:
    try:
        raw = adapter.get(key)
    except STORAGE_ERRORS as e:
        logger.warning("Cache entry %s is unreadable: %s", key, e)
        return None
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.warning("Cache entry %s is not valid JSON, ignoring it: %s", key, e)
        return None
    if not isinstance(data, dict) or data.get("version") != CACHE_VERSION:
        logger.warning(
            "Cache entry %s has version %r (expected %s), ignoring it",
            key,
            data.get("version") if isinstance(data, dict) else None,
            CACHE_VERSION,
        )
        return None
    try:
        return RepoCache.model_validate(data)
    except ValidationError as e:
        logger.warning("Cache entry %s does not match the cache schema, ignoring it: %s", key, e)
        return None


def load_repo_cache(adapter: StorageAdapter, repo_url: str) -> Optional[RepoCache]:
    """Load the cache for repo_url, or None when absent or unusable."""
    repo_id = normalize_repo_url(repo_url)
    cache = _read_cache(adapter, repo_cache_key(repo_url))
    if cache is None:
        logger.info("No usable cache for %s", repo_id)
        return None
    try:
        index = load_repo_index(adapter)
        if repo_id in index.repos:
            index.repos[repo_id].last_accessed = time.time()
            save_repo_index(adapter, index)
    except STORAGE_ERRORS as e:
        logger.warning("Could not update cache index for %s: %s", repo_id, e)
    logger.info("Loaded cache for %s: files=%s chapters=%s", repo_id, len(cache.files), len(cache.chapters))
    return cache


def save_repo_cache(adapter: StorageAdapter, cache: RepoCache) -> None:
    """Persist cache and register it in the index. Last writer wins."""
    repo_id = normalize_repo_url(cache.repo_url)
    key = repo_cache_key(cache.repo_url)
    now = time.time()
    cache.repo_id = repo_id
    cache.updated_at = now
    try:
        adapter.set(key, cache.model_dump_json())
        index = load_repo_index(adapter)
        entry = index.repos.get(repo_id)
        index.repos[repo_id] = RepoIndexEntry(
            cache_key=key,
            repo_url=cache.repo_url,
            last_updated=now,
            last_accessed=entry.last_accessed if entry else now,
        )
        save_repo_index(adapter, index)
    except STORAGE_ERRORS as e:
        raise cache_error(f"Failed to save cache for {repo_id}: {e}", operation="save") from e
    logger.info("Saved cache for %s: files=%s chapters=%s", repo_id, len(cache.files), len(cache.chapters))


def clear_repo_cache(adapter: StorageAdapter, repo_url: str) -> bool:
    """Remove one repository's cache and index entry. Returns False when nothing was stored."""
    repo_id = normalize_repo_url(repo_url)
    key = repo_cache_key(repo_url)
    existed = adapter.get(key) is not None
    index = load_repo_index(adapter)
    if repo_id in index.repos:
        existed = True
        del index.repos[repo_id]
        save_repo_index(adapter, index)
    adapter.remove(key)
    if existed:
        logger.info("Cleared cache for %s", repo_id)
    return existed


def clear_all_caches(adapter: StorageAdapter) -> int:
    """Remove every repository cache and the index. Returns the number of caches removed."""
    keys = adapter.list(CACHE_PREFIX)
    for key in keys:
        adapter.remove(key)
    adapter.remove(REPO_INDEX_KEY)
    logger.info("Cleared %s caches", len(keys))
    return len(keys)


def has_cache(adapter: StorageAdapter, repo_url: str) -> bool:
    return adapter.get(repo_cache_key(repo_url)) is not None


def get_cache_age(adapter: StorageAdapter, repo_url: str) -> Optional[float]:
    """Seconds since the cache was last saved, or None without a usable cache."""
    cache = _read_cache(adapter, repo_cache_key(repo_url))
    if cache is None:
        return None
    return max(time.time() - cache.updated_at, 0.0)


def is_cache_stale(adapter: StorageAdapter, repo_url: str, max_age: float) -> bool:
    """True when there is no usable cache or it is older than max_age seconds."""
    age = get_cache_age(adapter, repo_url)
    return age is None or age > max_age


def get_cache_stats(adapter: StorageAdapter) -> CacheStats:
    index = load_repo_index(adapter)
    entries = []
    for repo_id, entry in sorted(index.repos.items()):
        cache = _read_cache(adapter, entry.cache_key)
        entries.append(
            CacheStatsEntry(
                repo_id=repo_id,
                repo_url=entry.repo_url,
                last_accessed=entry.last_accessed,
                last_updated=entry.last_updated,
                files_count=len(cache.files) if cache else 0,
                chapters_count=len(cache.chapters) if cache else 0,
            )
        )
    return CacheStats(total_repos=len(entries), repos=entries)


# --- change analysis ---


def analyze_file_changes(new_files: FileSource, cached_files: Mapping[str, CachedFile]) -> FileChangeAnalysis:
    """
    Diff a fresh crawl against cached file hashes, keyed by path.

    change_fraction is changed paths over all paths seen in either set.
    """
    new_hashes = {path: compute_content_hash(content) for path, content in _iter_files(new_files)}
    added: list[str] = []
    modified: list[str] = []
    unchanged: list[str] = []
    for path, digest in new_hashes.items():
        cached = cached_files.get(path)
        if cached is None:
            added.append(path)
        elif cached.content_hash != digest:
            modified.append(path)
        else:
            unchanged.append(path)
    removed = [path for path in cached_files if path not in new_hashes]

    total = len(set(new_hashes) | set(cached_files))
    changed = len(added) + len(removed) + len(modified)
    fraction = changed / total if total else 0.0
    logger.info(
        "File changes: +%s -%s ~%s (%.1f%%)",
        len(added),
        len(removed),
        len(modified),
        fraction * 100,
    )
    return FileChangeAnalysis(
        added=sorted(added),
        removed=sorted(removed),
        modified=sorted(modified),
        unchanged=sorted(unchanged),
        change_fraction=fraction,
    )


def find_stale_abstractions(changes: FileChangeAnalysis, abstractions: Sequence[CachedAbstraction]) -> list[int]:
    changed = changes.changed_paths
    return [i for i, a in enumerate(abstractions) if any(path in changed for path in a.files)]


def find_stale_chapters(stale_abstractions: Iterable[int], chapters: Sequence[CachedChapter]) -> list[int]:
    """Positions of chapters covering any stale abstraction."""
    stale = set(stale_abstractions)
    return [c.position for c in chapters if stale.intersection(c.abstraction_indices)]


def determine_regeneration_plan(
    changes: FileChangeAnalysis,
    cached_abstractions: Sequence[CachedAbstraction],
    cached_chapters: Sequence[CachedChapter],
    full_regeneration_threshold: Optional[float] = None,
    changed_settings: Sequence[str] = (),
) -> RegenerationPlan:
    """
    Decide how much of the documentation to regenerate.

    Escalates to full when there are no cached abstractions or chapters, when
    any generation setting changed, or when change_fraction exceeds
    full_regeneration_threshold (default from REPO_CACHE_FULL_REGEN_THRESHOLD).
    """
    if full_regeneration_threshold is None:
        full_regeneration_threshold = default_full_regeneration_threshold()
    all_abstractions = list(range(len(cached_abstractions)))
    all_chapters = [c.position for c in cached_chapters]

    if not cached_abstractions or not cached_chapters:
        return RegenerationPlan(
            mode=RegenerationMode.FULL,
            reason="No cached documentation for this repository",
            stale_abstractions=all_abstractions,
            stale_chapters=all_chapters,
        )
    if changed_settings:
        return RegenerationPlan(
            mode=RegenerationMode.FULL,
            reason=f"Generation settings changed ({', '.join(changed_settings)}); regenerating everything",
            stale_abstractions=all_abstractions,
            stale_chapters=all_chapters,
        )
    if not changes.has_changes:
        return RegenerationPlan(mode=RegenerationMode.NONE, reason="No file changes since the last generation")
    if changes.change_fraction > full_regeneration_threshold:
        return RegenerationPlan(
            mode=RegenerationMode.FULL,
            reason=(
                f"{changes.change_fraction:.0%} of files changed "
                f"(threshold {full_regeneration_threshold:.0%}); regenerating everything"
            ),
            stale_abstractions=all_abstractions,
            stale_chapters=all_chapters,
        )
    stale_abstractions = find_stale_abstractions(changes, cached_abstractions)
    stale_chapters = find_stale_chapters(stale_abstractions, cached_chapters)
    return RegenerationPlan(
        mode=RegenerationMode.INCREMENTAL,
        reason=(
            f"{changes.change_fraction:.0%} of files changed; "
            f"regenerating {len(stale_chapters)} of {len(cached_chapters)} chapters"
        ),
        stale_abstractions=stale_abstractions,
        stale_chapters=stale_chapters,
    )


def is_cache_complete(cache: Optional[RepoCache]) -> bool:
    """True when the cache holds a consistent abstraction/order/chapter set."""
    if cache is None or not cache.abstractions or not cache.chapters:
        return False
    n = len(cache.abstractions)
    if sorted(cache.chapter_order) != list(range(n)):
        return False
    return sorted(c.position for c in cache.chapters) == list(range(1, n + 1))


def changed_generation_settings(cache: Optional[RepoCache], settings: Mapping[str, Any]) -> list[str]:
    """
    Names of the settings that differ from those the cached docs were made with.

    Caches saved without recorded settings report every setting as changed.
    """
    if cache is None:
        return []
    stored = cache.metadata.get("generation")
    if not isinstance(stored, dict):
        return sorted(settings)
    return sorted(name for name, value in settings.items() if stored.get(name) != value)


def update_cache_files(cache: RepoCache, files: FileSource, keep_content: bool = False) -> RepoCache:
    """
    Merge crawled files into cache.files, recomputing hashes, and drop paths
    no longer present. Abstractions and chapters are left untouched.
    """
    now = time.time()
    merged: dict[str, CachedFile] = {}
    for path, content in _iter_files(files):
        digest = compute_content_hash(content)
        previous = cache.files.get(path)
        last_modified = previous.last_modified if previous and previous.content_hash == digest else now
        merged[path] = CachedFile(
            path=path,
            content_hash=digest,
            last_modified=last_modified,
            content=content if keep_content else None,
        )
    cache.files = merged
    cache.updated_at = now
    return cache


def store_generation_results(
    cache: RepoCache,
    files: Sequence[tuple[str, str]],
    abstractions: Sequence[dict],
    relationships: dict,
    chapter_order: Sequence[int],
    chapters: Sequence[dict],
    project_name: Optional[str] = None,
    index_content: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> RepoCache:
    """Record a finished run. File indices in abstractions are stored as paths."""
    update_cache_files(cache, files)
    paths = [path for path, _ in files]
    cache.abstractions = [
        CachedAbstraction(
            name=a.get("name", ""),
            description=a.get("description", ""),
            files=[paths[i] for i in a.get("files") or [] if 0 <= i < len(paths)],
        )
        for a in abstractions
    ]
    cache.summary = str((relationships or {}).get("summary") or "")
    cache.relationships = [
        CachedRelationship(source=r["from"], target=r["to"], label=r.get("label", ""))
        for r in (relationships or {}).get("details") or []
    ]
    cache.chapter_order = list(chapter_order)
    cache.chapters = [
        CachedChapter(
            position=c["position"],
            title=c["title"],
            filename=c["filename"],
            content=c["content"],
            abstraction_indices=list(c.get("abstraction_indices") or []),
            generated_at=c.get("generated_at") or time.time(),
        )
        for c in chapters
    ]
    cache.project_name = project_name
    cache.index_content = index_content
    if metadata:
        cache.metadata.update(metadata)
    return cache


def restore_abstractions(cache: RepoCache, files: Sequence[tuple[str, str]]) -> list[dict]:
    """Cached abstractions with file paths mapped to indices in the current file list."""
    index_of = {path: i for i, (path, _) in enumerate(files)}
    return [
        {
            "name": a.name,
            "description": a.description,
            "files": sorted(index_of[p] for p in a.files if p in index_of),
        }
        for a in cache.abstractions
    ]


def restore_relationships(cache: RepoCache) -> dict:
    return {
        "summary": cache.summary,
        "details": [{"from": r.source, "to": r.target, "label": r.label} for r in cache.relationships],
    }
