"""Unit tests for crawl_github_files."""

import base64
import os
from unittest.mock import MagicMock, patch

import pytest
import requests

from utils.crawl_github_files import (
    CrawlerOptions,
    CrawlStats,
    crawl_github_files,
    format_file_size,
    get_crawl_summary,
    is_valid_github_url,
    normalize_repo_url,
    parse_github_url,
    repo_url_to_filename,
    server_github_crawler,
)
from utils.errors import ErrorKind, RepoError
from utils.patterns import get_required_excluded_patterns
from utils.retry import RetryPolicy


def _no_sleep(_seconds: float) -> None:
    return None


def _resp(payload=None, status=200, text=""):
    r = MagicMock()
    r.status_code = status
    r.json.return_value = payload
    r.text = text
    r.headers = {}
    return r


def _blob(text: str):
    return _resp({"content": base64.b64encode(text.encode()).decode(), "encoding": "base64"})


def _tree(*entries, truncated=False):
    return _resp({"tree": list(entries), "truncated": truncated})


def test_parse_github_url_forms():
    """https, .git suffix, ssh, shorthand and /tree/<branch> all parse."""
    assert parse_github_url("https://github.com/owner/repo").full_name == "owner/repo"
    assert parse_github_url("https://github.com/owner/repo.git/").repo == "repo"
    assert parse_github_url("git@github.com:owner/repo.git").full_name == "owner/repo"
    assert parse_github_url("owner/repo").full_name == "owner/repo"
    ref = parse_github_url("https://github.com/owner/repo/tree/develop")
    assert ref.branch == "develop"
    assert parse_github_url("owner/repo#main").branch == "main"


def test_parse_github_url_invalid():
    assert parse_github_url("not a url") is None
    assert parse_github_url("https://gitlab.com/owner/repo") is None
    assert parse_github_url("") is None
    assert not is_valid_github_url("https://example.com")


def test_normalize_repo_url_is_case_insensitive():
    assert normalize_repo_url("https://github.com/Owner/Repo.git") == "owner/repo"
    assert normalize_repo_url("git@github.com:OWNER/repo") == "owner/repo"
    assert repo_url_to_filename("https://github.com/Owner/Repo") == "owner_repo.json"


def test_crawler_options_reject_non_positive_size():
    with pytest.raises(ValueError):
        CrawlerOptions(repo_url="o/r", max_file_size=0)


def test_crawl_github_files_contract():
    """Return value is a CrawlerResult with files and stats."""
    with patch("utils.crawl_github_files.requests.get") as mock_get:
        mock_get.side_effect = [_resp({"default_branch": "main"}), _tree()]
        result = crawl_github_files("https://github.com/owner/repo")
    assert result.files == {}
    assert result.stats.files_count == 0
    assert result.stats.branch == "main"
    assert result.stats.api_requests == 2


def test_crawl_github_files_mock_tree_with_blobs():
    """With mocked API returning one blob, files dict gets one entry."""
    with patch("utils.crawl_github_files.requests.get") as mock_get:
        mock_get.side_effect = [
            _resp({"default_branch": "main"}),
            _tree({"type": "blob", "path": "readme.md", "size": 10, "sha": "abc123"}),
            _blob("hello"),
        ]
        result = crawl_github_files("https://github.com/owner/repo")
    assert result.files == {"readme.md": "hello"}
    assert result.stats.files_count == 1
    assert result.stats.total_bytes == 5


def test_include_exclude_and_not_included_counts():
    """node_modules is excluded by default, b.txt matches no include, a.ts is fetched."""
    with patch("utils.crawl_github_files.requests.get") as mock_get:
        mock_get.side_effect = [
            _resp({"default_branch": "main"}),
            _tree(
                {"type": "blob", "path": "a.ts", "size": 5, "sha": "s1"},
                {"type": "blob", "path": "node_modules/x.js", "size": 5, "sha": "s2"},
                {"type": "blob", "path": "b.txt", "size": 5, "sha": "s3"},
            ),
            _blob("const a = 1;"),
        ]
        result = crawl_github_files(
            "https://github.com/o/r",
            include_patterns=["**/*.ts"],
            exclude_patterns=get_required_excluded_patterns(),
            max_file_size=10 * 1024 * 1024,
        )
    assert list(result.files) == ["a.ts"]
    assert result.stats.excluded_pattern == 1
    assert result.stats.not_included == 1
    assert result.stats.skipped_size == 0
    assert mock_get.call_count == 3


def test_crawl_github_files_skips_large_blobs():
    """Blobs over max_file_size are skipped (no blob fetch)."""
    with patch("utils.crawl_github_files.requests.get") as mock_get:
        mock_get.side_effect = [
            _resp({"default_branch": "main"}),
            _tree({"type": "blob", "path": "big.py", "size": 200_000, "sha": "x"}),
        ]
        result = crawl_github_files("https://github.com/owner/repo", max_file_size=100_000)
    assert result.files == {}
    assert result.stats.skipped_size == 1
    assert result.stats.skipped_files == [("big.py", 200_000)]


def test_branch_in_url_skips_repo_metadata_request():
    with patch("utils.crawl_github_files.requests.get") as mock_get:
        mock_get.side_effect = [_tree()]
        result = crawl_github_files("https://github.com/o/r/tree/dev")
    assert result.stats.branch == "dev"
    assert mock_get.call_args[0][0].endswith("/repos/o/r/git/trees/dev")


def test_absolute_paths_when_not_relative():
    with patch("utils.crawl_github_files.requests.get") as mock_get:
        mock_get.side_effect = [
            _resp({"default_branch": "main"}),
            _tree({"type": "blob", "path": "a.py", "size": 4, "sha": "s"}),
            _blob("code"),
        ]
        result = crawl_github_files("https://github.com/o/r", use_relative_paths=False)
    assert result.files == {"o/r/a.py": "code"}


def test_undecodable_blob_is_counted():
    with patch("utils.crawl_github_files.requests.get") as mock_get:
        mock_get.side_effect = [
            _resp({"default_branch": "main"}),
            _tree({"type": "blob", "path": "logo.dat2", "size": 4, "sha": "s"}),
            _resp({"content": base64.b64encode(b"\xff\xfe\x00").decode(), "encoding": "base64"}),
        ]
        result = crawl_github_files("https://github.com/o/r")
    assert result.files == {}
    assert result.stats.skipped_decode == 1


def test_missing_blob_is_skipped_not_fatal():
    with patch("utils.crawl_github_files.requests.get") as mock_get:
        mock_get.side_effect = [
            _resp({"default_branch": "main"}),
            _tree(
                {"type": "blob", "path": "gone.py", "size": 4, "sha": "s1"},
                {"type": "blob", "path": "here.py", "size": 4, "sha": "s2"},
            ),
            _resp(status=404, text="Not Found"),
            _blob("here"),
        ]
        result = crawl_github_files("https://github.com/o/r")
    assert result.files == {"here.py": "here"}
    assert result.stats.skipped_fetch == 1


def test_truncated_tree_is_walked_per_subtree():
    with patch("utils.crawl_github_files.requests.get") as mock_get:
        mock_get.side_effect = [
            _resp({"default_branch": "main"}),
            _tree(truncated=True),
            _tree(
                {"type": "tree", "path": "src", "sha": "t1"},
                {"type": "blob", "path": "a.py", "size": 1, "sha": "b1"},
            ),
            _tree({"type": "blob", "path": "x.py", "size": 1, "sha": "b2"}),
            _blob("a"),
            _blob("x"),
        ]
        result = crawl_github_files("https://github.com/o/r")
    assert result.files == {"a.py": "a", "src/x.py": "x"}
    assert result.stats.truncated is True


def test_not_found_repository_raises_typed_error_without_retry():
    with patch("utils.crawl_github_files.requests.get") as mock_get:
        mock_get.side_effect = [_resp(status=404, text="Not Found")]
        with pytest.raises(RepoError) as exc_info:
            crawl_github_files("https://github.com/o/missing", retry_policy=RetryPolicy(sleep=_no_sleep))
    assert exc_info.value.kind == ErrorKind.NOT_FOUND
    assert exc_info.value.status == 404
    assert mock_get.call_count == 1


def test_server_error_is_retried():
    with patch("utils.crawl_github_files.requests.get") as mock_get:
        mock_get.side_effect = [_resp(status=502, text="Bad Gateway"), _resp({"default_branch": "main"}), _tree()]
        result = crawl_github_files("https://github.com/o/r", retry_policy=RetryPolicy(sleep=_no_sleep))
    assert result.stats.api_requests == 3


def test_rate_limit_raises_after_retries_with_retry_after():
    """403 rate limit on every attempt -> RATE_LIMIT error carrying retry_after."""
    limited = _resp(status=403, text="API rate limit exceeded")
    limited.headers = {"Retry-After": "7"}
    with patch("utils.crawl_github_files.requests.get") as mock_get:
        mock_get.side_effect = [limited, limited, limited]
        with pytest.raises(RepoError) as exc_info:
            crawl_github_files("https://github.com/o/r", retry_policy=RetryPolicy(max_attempts=3, sleep=_no_sleep))
    assert exc_info.value.kind == ErrorKind.RATE_LIMIT
    assert exc_info.value.retry_after == 7.0
    assert "GITHUB_TOKEN" in exc_info.value.detail
    assert mock_get.call_count == 3


def test_timeout_becomes_timeout_error():
    with patch("utils.crawl_github_files.requests.get", side_effect=requests.Timeout("slow")):
        with pytest.raises(RepoError) as exc_info:
            crawl_github_files("https://github.com/o/r", retry_policy=RetryPolicy(max_attempts=1))
    assert exc_info.value.kind == ErrorKind.TIMEOUT


def test_malformed_url_fails_before_any_request():
    with patch("utils.crawl_github_files.requests.get") as mock_get:
        with pytest.raises(RepoError) as exc_info:
            crawl_github_files("https://example.com/nothing")
    assert exc_info.value.kind == ErrorKind.VALIDATION
    mock_get.assert_not_called()


def test_server_crawler_uses_env_token():
    with patch.dict(os.environ, {"GITHUB_TOKEN": "env-token"}, clear=False):
        with patch("utils.crawl_github_files.requests.get") as mock_get:
            mock_get.side_effect = [_resp({"default_branch": "main"}), _tree()]
            server_github_crawler(CrawlerOptions(repo_url="o/r"))
    headers = mock_get.call_args_list[0][1]["headers"]
    assert headers["Authorization"] == "Bearer env-token"


def test_crawl_summary_and_sizes():
    assert format_file_size(512) == "512 B"
    assert format_file_size(2048) == "2.0 KB"
    summary = get_crawl_summary(CrawlStats(files_count=2, total_bytes=2048, excluded_pattern=1))
    assert "Downloaded: 2 files (2.0 KB)" in summary
    assert "Excluded: 1 files" in summary
