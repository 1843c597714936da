"""
Crawl a GitHub repository and return file path -> content via the GitHub API.

Used by FetchRepo. The file tree comes from the Git Trees API (recursive
listing, walked subtree by subtree when GitHub truncates it) and contents from
the Blobs API. Every request goes through the shared RetryPolicy; failures are
raised as typed RepoErrors (auth, rate limit, not found, network, timeout).
"""

import base64
import logging
import os
import re
from typing import Any, Iterable, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field, field_validator

from utils.errors import (
    RepoError,
    network_error,
    parse_github_error,
    timeout_error,
    validation_error,
)
from utils.patterns import matches_any
from utils.retry import RetryPolicy

logger = logging.getLogger("repo_scrapper")

GITHUB_API = "https://api.github.com"
DEFAULT_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
    "User-Agent": "repo-scrapper",
}
DEFAULT_MAX_FILE_SIZE = 500 * 1024
RATE_LIMIT_WARNING_THRESHOLD = 10


class GitHubRepoRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    branch: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


class CrawlerOptions(BaseModel):
    """Immutable input to a crawl."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    repo_url: str
    token: Optional[str] = None
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, gt=0)
    use_relative_paths: bool = True
    api_base_url: str = GITHUB_API
    timeout: float = 30.0
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    @field_validator("include_patterns", "exclude_patterns", mode="before")
    @classmethod
    def _as_tuple(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        if isinstance(value, (set, frozenset)):
            return tuple(sorted(value))
        return tuple(value)


class CrawlStats(BaseModel):
    files_count: int = 0
    skipped_size: int = 0
    excluded_pattern: int = 0
    not_included: int = 0
    skipped_decode: int = 0
    skipped_fetch: int = 0
    total_bytes: int = 0
    api_requests: int = 0
    truncated: bool = False
    branch: Optional[str] = None
    skipped_files: list[tuple[str, int]] = Field(default_factory=list)


class CrawlerResult(BaseModel):
    files: dict[str, str] = Field(default_factory=dict)
    stats: CrawlStats = Field(default_factory=CrawlStats)


# --- URL helpers ---

_SHORTHAND_RE = re.compile(r"^([A-Za-z0-9_-]+)/([A-Za-z0-9_.-]+?)(?:[#@](.+))?$")
_RAW_RE = re.compile(r"raw\.githubusercontent\.com/([^/]+)/([^/]+)/([^/?#]+)")
_SSH_RE = re.compile(r"git@github\.com[:/]([^/]+)/([^/\s?#]+)")
_GIT_PROTOCOL_RE = re.compile(r"git://github\.com/([^/]+)/([^/\s?#]+)")
_API_RE = re.compile(r"api\.github\.com/repos/([^/]+)/([^/?#]+)")
_HTTPS_RE = re.compile(r"^(?:https?://)?(?:www\.)?github\.com/([^/]+)/([^/?#]+)", re.I)


def _clean_repo(name: str) -> str:
    name = name.strip().rstrip("/")
    return name[:-4] if name.endswith(".git") else name


def _branch_from_path(url: str) -> Optional[str]:
    m = re.search(r"/tree/([^?#]+)", url)
    if m:
        return m.group(1).rstrip("/")
    m = re.search(r"/blob/([^?#]+)", url)
    if m:
        parts = m.group(1).split("/")
        branch_parts: list[str] = []
        for i, part in enumerate(parts):
            # first segment that looks like a file name starts the path
            if i > 0 and re.search(r"\.[A-Za-z0-9]+$", part):
                break
            branch_parts.append(part)
        return "/".join(branch_parts) or parts[0]
    m = re.search(r"/commit/([a-f0-9]+)", url, re.I)
    if m:
        return m.group(1)
    m = re.search(r"/releases/tag/([^?#/]+)", url)
    if m:
        return m.group(1)
    m = re.search(r"/archive/refs/(?:heads|tags)/(.+?)\.(?:zip|tar\.gz)$", url)
    if m:
        return m.group(1)
    m = re.search(r"/archive/(.+?)\.(?:zip|tar\.gz)$", url)
    if m:
        return m.group(1)
    return None


def parse_github_url(url: str) -> Optional[GitHubRepoRef]:
    """
    Parse a GitHub repository reference into owner, repo and optional branch.

    Accepts https URLs (with /tree, /blob, /commit, /releases/tag and /archive
    suffixes), git@ and ssh:// and git:// forms, raw.githubusercontent.com and
    api.github.com URLs, and owner/repo shorthand (optionally #branch or
    @branch). Returns None when the input is not a GitHub repository.
    """
    if not url or not str(url).strip():
        return None
    url = str(url).strip()

    m = _SHORTHAND_RE.match(url)
    if m and "github" not in url and "://" not in url:
        return GitHubRepoRef(owner=m.group(1), repo=_clean_repo(m.group(2)), branch=m.group(3))

    m = _RAW_RE.search(url)
    if m:
        return GitHubRepoRef(owner=m.group(1), repo=m.group(2), branch=m.group(3))

    m = _SSH_RE.search(url)
    if m:
        return GitHubRepoRef(owner=m.group(1), repo=_clean_repo(m.group(2)))

    m = _GIT_PROTOCOL_RE.search(url)
    if m:
        return GitHubRepoRef(owner=m.group(1), repo=_clean_repo(m.group(2)))

    m = _API_RE.search(url)
    if m:
        ref = re.search(r"/(?:git/refs/heads|branches)/([^?#]+)", url)
        return GitHubRepoRef(
            owner=m.group(1),
            repo=_clean_repo(m.group(2)),
            branch=ref.group(1) if ref else None,
        )

    m = _HTTPS_RE.match(url)
    if m:
        return GitHubRepoRef(owner=m.group(1), repo=_clean_repo(m.group(2)), branch=_branch_from_path(url))
    return None


def normalize_repo_url(url: str) -> str:
    """Cache identity for a repository: lowercase "owner/repo"."""
    ref = parse_github_url(url)
    if ref is not None:
        return ref.full_name.lower()
    cleaned = re.sub(r"^[a-z]+://", "", str(url or "").strip().lower())
    cleaned = cleaned.removeprefix("www.").removeprefix("github.com/")
    return _clean_repo(cleaned)


def is_valid_github_url(url: str) -> bool:
    return parse_github_url(url) is not None


def repo_url_to_filename(url: str) -> str:
    safe = re.sub(r"[^a-z0-9_-]", "", normalize_repo_url(url).replace("/", "_"))
    return f"{safe}.json"


def calculate_total_size(files: dict[str, str]) -> int:
    return sum(len(content.encode("utf-8")) for content in files.values())


def format_file_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes / (1024 * 1024):.2f} MB"


def get_crawl_summary(stats: CrawlStats) -> str:
    lines = [
        f"Downloaded: {stats.files_count} files ({format_file_size(stats.total_bytes)})",
        f"Skipped (size): {stats.skipped_size} files",
    ]
    if stats.excluded_pattern:
        lines.append(f"Excluded: {stats.excluded_pattern} files")
    if stats.not_included:
        lines.append(f"Not included: {stats.not_included} files")
    if stats.skipped_decode:
        lines.append(f"Undecodable: {stats.skipped_decode} files")
    if stats.api_requests:
        lines.append(f"API Requests: {stats.api_requests}")
    if stats.truncated:
        lines.append("Tree listing was truncated by GitHub")
    return "\n".join(lines)


def create_crawler_options(repo_url: str, **overrides: Any) -> CrawlerOptions:
    return CrawlerOptions(repo_url=repo_url, **overrides)


# --- HTTP ---


class _GitHubSession:
    """Issues GitHub API GETs with auth, retries and request counting."""

    def __init__(self, options: CrawlerOptions, ref: GitHubRepoRef, stats: CrawlStats) -> None:
        self.options = options
        self.ref = ref
        self.stats = stats
        self.base = options.api_base_url.rstrip("/")
        self.headers = {**DEFAULT_HEADERS}
        if options.token:
            self.headers["Authorization"] = f"Bearer {options.token}"

    def get_json(self, path: str, params: Optional[dict] = None) -> Any:
        url = f"{self.base}/repos/{self.ref.owner}/{self.ref.repo}{path}"
        return self.options.retry_policy.run(
            lambda attempt: self._get_once(url, params),
            description=f"GET {path or '/'}",
        )

    def _get_once(self, url: str, params: Optional[dict]) -> Any:
        self.stats.api_requests += 1
        try:
            resp = requests.get(url, headers=self.headers, params=params, timeout=self.options.timeout)
        except requests.Timeout as e:
            raise timeout_error("GitHub API request", self.options.timeout) from e
        except requests.RequestException as e:
            raise network_error(f"Unable to reach the GitHub API: {e}") from e
        self._warn_if_rate_limit_low(resp)
        if resp.status_code >= 400:
            raise parse_github_error(
                resp.status_code,
                resp.text or "",
                resp.headers,
                repo_url=self.options.repo_url,
            )
        return resp.json()

    @staticmethod
    def _warn_if_rate_limit_low(resp: requests.Response) -> None:
        headers = getattr(resp, "headers", None)
        if not isinstance(headers, (dict, requests.structures.CaseInsensitiveDict)):
            return
        remaining = headers.get("X-RateLimit-Remaining")
        if remaining is not None and str(remaining).isdigit() and int(remaining) < RATE_LIMIT_WARNING_THRESHOLD:
            logger.warning("GitHub rate limit low: %s requests remaining", remaining)


def _list_tree(session: _GitHubSession, branch: str) -> list[dict]:
    data = session.get_json(f"/git/trees/{branch}", params={"recursive": "1"})
    if not data.get("truncated"):
        return [item for item in data.get("tree") or [] if item.get("type") == "blob"]

    # Truncated recursive listing: walk the tree one level at a time.
    session.stats.truncated = True
    logger.warning("Tree for %s was truncated; listing subtrees individually", session.ref.full_name)
    blobs: list[dict] = []
    pending: list[tuple[str, str]] = [("", branch)]
    while pending:
        prefix, sha = pending.pop(0)
        level = session.get_json(f"/git/trees/{sha}")
        for item in level.get("tree") or []:
            path = f"{prefix}{item.get('path', '')}"
            if item.get("type") == "tree":
                pending.append((f"{path}/", item.get("sha")))
            elif item.get("type") == "blob":
                blobs.append({**item, "path": path})
    return blobs


def _decode_blob(blob: dict) -> Optional[str]:
    content = blob.get("content")
    if content is None:
        return None
    encoding = (blob.get("encoding") or "base64").lower()
    try:
        if encoding == "base64":
            raw = base64.b64decode(content, validate=False)
            return raw.decode("utf-8", errors="strict")
        return str(content)
    except (ValueError, UnicodeDecodeError):
        return None


def github_file_crawler(options: CrawlerOptions) -> CrawlerResult:
    """
    Crawl the repository described by options.

    Paths matching an exclude pattern count as excluded_pattern; paths matching
    no include pattern count as not_included; files larger than max_file_size
    count as skipped_size and are never fetched.

    Raises:
        RepoError: validation (malformed URL, before any request), auth,
            rate_limit (with retry_after), not_found, network or timeout.
    """
    ref = parse_github_url(options.repo_url)
    if ref is None:
        raise validation_error(f"Cannot parse GitHub repository URL: {options.repo_url!r}", field="repo_url")
    if not options.token:
        logger.warning("No GitHub token; public repositories only, at a lower rate limit")

    stats = CrawlStats()
    session = _GitHubSession(options, ref, stats)

    branch = ref.branch
    if not branch:
        branch = session.get_json("").get("default_branch") or "main"
    stats.branch = branch
    logger.info("Crawling %s@%s", ref.full_name, branch)

    files: dict[str, str] = {}
    for item in _list_tree(session, branch):
        path = item.get("path", "")
        if options.exclude_patterns and matches_any(path, options.exclude_patterns):
            stats.excluded_pattern += 1
            continue
        if options.include_patterns and not matches_any(path, options.include_patterns):
            stats.not_included += 1
            continue
        size = int(item.get("size") or 0)
        if size > options.max_file_size:
            stats.skipped_size += 1
            stats.skipped_files.append((path, size))
            continue
        sha = item.get("sha")
        if not sha:
            continue
        try:
            blob = session.get_json(f"/git/blobs/{sha}")
        except RepoError as e:
            if e.retryable or e.status in (401, 403):
                raise
            logger.warning("Failed to fetch %s: %s", path, e.detail)
            stats.skipped_fetch += 1
            continue
        content = _decode_blob(blob)
        if content is None:
            stats.skipped_decode += 1
            continue
        key = path if options.use_relative_paths else f"{ref.owner}/{ref.repo}/{path}"
        files[key] = content
        stats.files_count += 1
        stats.total_bytes += len(content.encode("utf-8"))

    logger.info(
        "Crawled %s: files=%s excluded=%s skipped_size=%s api_requests=%s",
        ref.full_name,
        stats.files_count,
        stats.excluded_pattern,
        stats.skipped_size,
        stats.api_requests,
    )
    return CrawlerResult(files=files, stats=stats)


def server_github_crawler(options: CrawlerOptions) -> CrawlerResult:
    """Server-side variant: falls back to the privileged GITHUB_TOKEN when options carry none."""
    if not options.token:
        token = (os.environ.get("GITHUB_TOKEN") or "").strip()
        if token:
            options = options.model_copy(update={"token": token})
    return github_file_crawler(options)


def crawl_github_files(
    repo_url: str,
    token: Optional[str] = None,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    use_relative_paths: bool = True,
    include_patterns: Optional[Iterable[str]] = None,
    exclude_patterns: Optional[Iterable[str]] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> CrawlerResult:
    """
    Keyword wrapper around github_file_crawler.

    Args:
        repo_url: Any form accepted by parse_github_url.
        token: Optional GitHub token for higher rate limits and private repos.
        max_file_size: Skip blobs larger than this (bytes).
        use_relative_paths: If True, keys are paths relative to the repo root; else owner/repo/path.
        include_patterns: If non-empty, only include paths matching any glob.
        exclude_patterns: If non-empty, exclude paths matching any glob.
        retry_policy: Overrides the default RetryPolicy.
    """
    options = CrawlerOptions(
        repo_url=repo_url,
        token=token,
        max_file_size=max_file_size,
        use_relative_paths=use_relative_paths,
        include_patterns=include_patterns,
        exclude_patterns=exclude_patterns,
        retry_policy=retry_policy or RetryPolicy(),
    )
    return github_file_crawler(options)
