"""Unit tests for the error taxonomy and the retry policy."""

import pytest

from utils.errors import (
    DocumentationFlowError,
    ErrorKind,
    LLMError,
    RepoError,
    generation_error,
    github_not_found_error,
    is_retryable_error,
    network_error,
    parse_github_error,
    validation_error,
)
from utils.retry import RetryPolicy, default_retry_policy


def _no_sleep(_seconds: float) -> None:
    return None


def test_problem_detail_shape():
    detail = validation_error("bad url", field="repo_url").to_problem_detail()
    assert detail["status"] == 400
    assert detail["kind"] == "validation"
    assert detail["retryable"] is False
    assert detail["field"] == "repo_url"
    assert detail["type"].endswith("/validation")


def test_parse_github_error_statuses():
    assert parse_github_error(401, "Bad credentials").kind == ErrorKind.AUTH
    assert parse_github_error(404, "Not Found", repo_url="o/r").kind == ErrorKind.NOT_FOUND
    assert parse_github_error(502, "Bad Gateway").kind == ErrorKind.NETWORK
    assert parse_github_error(422, "Unprocessable").kind == ErrorKind.API


def test_parse_github_error_rate_limit_carries_retry_after():
    err = parse_github_error(403, "API rate limit exceeded", {"Retry-After": "30", "X-RateLimit-Remaining": "0"})
    assert err.kind == ErrorKind.RATE_LIMIT
    assert err.status == 429
    assert err.retry_after == 30.0
    assert err.retryable


def test_retryable_kinds():
    assert is_retryable_error(network_error("down"))
    assert not is_retryable_error(github_not_found_error("o/r"))
    assert not is_retryable_error(ValueError("x"))


def test_llm_error_extensions():
    err = LLMError(ErrorKind.AUTH, "no key", status=401, provider="gemini", model="m")
    body = err.to_problem_detail()
    assert body["provider"] == "gemini"
    assert body["model"] == "m"


def test_documentation_flow_error_copies_cause():
    cause = github_not_found_error("o/r")
    err = DocumentationFlowError("FetchRepo", cause, partial_result=[])
    assert err.kind == ErrorKind.NOT_FOUND
    assert err.status == 404
    assert err.stage == "FetchRepo"
    assert err.to_problem_detail()["stage"] == "FetchRepo"


def test_documentation_flow_error_wraps_plain_exception_as_generation():
    err = DocumentationFlowError("WriteChapters", RuntimeError("boom"))
    assert err.kind == ErrorKind.GENERATION
    assert err.status == 500


def test_retry_policy_retries_then_succeeds():
    calls = []
    delays = []

    def flaky(attempt):
        calls.append(attempt)
        if attempt < 3:
            raise network_error("temporary")
        return "ok"

    policy = RetryPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0, sleep=delays.append)
    assert policy.run(flaky) == "ok"
    assert calls == [1, 2, 3]
    assert delays == [1.0, 2.0]


def test_retry_policy_gives_up_after_max_attempts():
    calls = []

    def down(attempt):
        calls.append(attempt)
        raise network_error("down")

    with pytest.raises(RepoError) as exc_info:
        RetryPolicy(max_attempts=2, sleep=_no_sleep).run(down)
    assert calls == [1, 2]
    assert exc_info.value.kind == ErrorKind.NETWORK


def test_retry_policy_does_not_retry_non_retryable():
    calls = []

    def fail(attempt):
        calls.append(attempt)
        raise generation_error("unparseable")

    with pytest.raises(RepoError):
        RetryPolicy(max_attempts=5, sleep=_no_sleep).run(fail)
    assert calls == [1]


def test_retry_after_hint_overrides_backoff_and_is_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=10.0)
    err = RepoError(ErrorKind.RATE_LIMIT, "slow down", status=429, retry_after=5)
    assert policy.delay_for(1, err) == 5.0
    err_long = RepoError(ErrorKind.RATE_LIMIT, "slow down", status=429, retry_after=500)
    assert policy.delay_for(1, err_long) == 10.0


def test_on_retry_callback():
    seen = []

    def flaky(attempt):
        if attempt == 1:
            raise network_error("once")
        return attempt

    RetryPolicy(sleep=_no_sleep).run(flaky, on_retry=lambda a, e, d: seen.append((a, d)))
    assert seen == [(1, 1.0)]


def test_invalid_max_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_default_retry_policy_from_env(monkeypatch):
    monkeypatch.setenv("LLM_RATE_LIMIT_MAX_RETRIES", "50")
    assert default_retry_policy().max_attempts == 10
    monkeypatch.setenv("LLM_RATE_LIMIT_MAX_RETRIES", "2")
    assert default_retry_policy().max_attempts == 2


def test_malformed_retry_env_falls_back(monkeypatch, caplog):
    monkeypatch.setenv("LLM_RATE_LIMIT_MAX_RETRIES", "three")
    with caplog.at_level("WARNING", logger="repo_scrapper"):
        assert default_retry_policy().max_attempts == 3
    assert "LLM_RATE_LIMIT_MAX_RETRIES" in caplog.text
