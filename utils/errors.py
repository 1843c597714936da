"""
Typed errors for crawling, caching and documentation generation.

Every error carries a machine-readable kind, an HTTP-style status, a human
detail message and a retryable flag so callers (CLI, API routes) can map them
to exit codes or responses. to_problem_detail() renders an RFC 7807 body.
"""

import time
from enum import Enum
from typing import Any, Mapping, Optional

PROBLEM_BASE_URL = "https://repo-scrapper.dev/problems"


class ErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    VALIDATION = "validation"
    CACHE = "cache"
    GENERATION = "generation"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    API = "api"


RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.NETWORK, ErrorKind.TIMEOUT})

_TITLES = {
    ErrorKind.AUTH: "Authentication Failed",
    ErrorKind.RATE_LIMIT: "Rate Limit Exceeded",
    ErrorKind.NOT_FOUND: "Repository Not Found",
    ErrorKind.NETWORK: "Network Error",
    ErrorKind.VALIDATION: "Validation Error",
    ErrorKind.CACHE: "Cache Error",
    ErrorKind.GENERATION: "Generation Error",
    ErrorKind.TIMEOUT: "Operation Timed Out",
    ErrorKind.MALFORMED_RESPONSE: "Malformed Response",
    ErrorKind.API: "API Error",
}


class RepoError(Exception):
    """Base error for repository operations."""

    def __init__(
        self,
        kind: ErrorKind,
        detail: str,
        status: int = 500,
        title: Optional[str] = None,
        retry_after: Optional[float] = None,
        extensions: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail)
        self.kind = kind
        self.detail = detail
        self.status = status
        self.title = title or _TITLES.get(kind, "Repository Operation Error")
        self.retry_after = retry_after
        self.extensions = dict(extensions or {})

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_problem_detail(self) -> dict[str, Any]:
        """Return an RFC 7807 problem detail dict."""
        body = {
            "type": f"{PROBLEM_BASE_URL}/{self.kind.value.replace('_', '-')}",
            "title": self.title,
            "status": self.status,
            "detail": self.detail,
            "kind": self.kind.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        body.update({k: v for k, v in self.extensions.items() if v is not None})
        return body

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, status={self.status}, detail={self.detail!r})"


class LLMError(RepoError):
    """Failure from the LLM call primitive."""

    def __init__(
        self,
        kind: ErrorKind,
        detail: str,
        status: int = 500,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(
            kind,
            detail,
            status=status,
            retry_after=retry_after,
            extensions={"provider": provider, "model": model},
        )
        self.provider = provider
        self.model = model


class DocumentationFlowError(RepoError):
    """
    A pipeline stage failed. The cause is chained (__cause__) and the chapters
    written before the failure are kept on partial_result.
    """

    def __init__(self, stage: str, cause: BaseException, partial_result: Any = None) -> None:
        if isinstance(cause, RepoError):
            kind, status, retry_after = cause.kind, cause.status, cause.retry_after
        else:
            kind, status, retry_after = ErrorKind.GENERATION, 500, None
        super().__init__(
            kind,
            f"{stage} failed: {cause}",
            status=status,
            title="Documentation Generation Failed",
            retry_after=retry_after,
            extensions={"stage": stage},
        )
        self.stage = stage
        self.partial_result = partial_result


# --- factories ---


def github_auth_error(detail: Optional[str] = None) -> RepoError:
    return RepoError(
        ErrorKind.AUTH,
        detail or "Invalid or expired GitHub token. Please check your credentials.",
        status=401,
        title="GitHub Authentication Failed",
        extensions={"help_url": "https://github.com/settings/tokens"},
    )


def github_rate_limit_error(
    remaining: Optional[int] = None,
    reset_time: Optional[float] = None,
    retry_after: Optional[float] = None,
) -> RepoError:
    """Rate-limit error; reset_time is a unix timestamp from X-RateLimit-Reset."""
    if retry_after is None and reset_time is not None:
        retry_after = max(reset_time - time.time(), 0) + 1
    parts = ["GitHub API rate limit exceeded."]
    if remaining is not None:
        parts.append(f"Remaining: {remaining}.")
    if reset_time is not None:
        parts.append(f"Rate limit resets at {time.strftime('%H:%M:%S', time.localtime(reset_time))}.")
    parts.append("Set GITHUB_TOKEN for a higher limit.")
    return RepoError(
        ErrorKind.RATE_LIMIT,
        " ".join(parts),
        status=429,
        title="GitHub Rate Limit Exceeded",
        retry_after=retry_after,
        extensions={"remaining": remaining, "reset_time": reset_time},
    )


def github_not_found_error(repo_url: str) -> RepoError:
    return RepoError(
        ErrorKind.NOT_FOUND,
        f'The repository "{repo_url}" was not found. Check the URL, or provide a token if the repository is private.',
        status=404,
        extensions={"repo_url": repo_url},
    )


def github_api_error(status: int, message: str) -> RepoError:
    return RepoError(ErrorKind.API, message, status=status, title="GitHub API Error")


def network_error(detail: str) -> RepoError:
    return RepoError(ErrorKind.NETWORK, detail, status=503)


def timeout_error(operation: str, timeout_seconds: float) -> RepoError:
    return RepoError(
        ErrorKind.TIMEOUT,
        f"The {operation} operation timed out after {timeout_seconds}s.",
        status=504,
        extensions={"operation": operation, "timeout_seconds": timeout_seconds},
    )


def validation_error(detail: str, field: Optional[str] = None) -> RepoError:
    return RepoError(ErrorKind.VALIDATION, detail, status=400, extensions={"field": field})


def cache_error(detail: str, operation: Optional[str] = None) -> RepoError:
    return RepoError(ErrorKind.CACHE, detail, status=500, extensions={"operation": operation})


def generation_error(detail: str, phase: Optional[str] = None, chapter: Optional[str] = None) -> RepoError:
    return RepoError(
        ErrorKind.GENERATION,
        detail,
        status=500,
        extensions={"phase": phase, "chapter": chapter},
    )


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value
    return None


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def parse_github_error(
    status: int,
    text: str,
    headers: Optional[Mapping[str, str]] = None,
    repo_url: str = "",
) -> RepoError:
    """Map a failed GitHub API response to a typed RepoError."""
    text = text or ""
    lower = text.lower()
    if status == 401 or "bad credentials" in lower:
        return github_auth_error(text or None)
    if status == 429 or (status == 403 and ("rate limit" in lower or "rate-limit" in lower)):
        retry_after = _int_or_none(_header(headers, "Retry-After"))
        reset = _int_or_none(_header(headers, "X-RateLimit-Reset"))
        remaining = _int_or_none(_header(headers, "X-RateLimit-Remaining"))
        return github_rate_limit_error(
            remaining=remaining,
            reset_time=float(reset) if reset is not None else None,
            retry_after=float(retry_after) if retry_after is not None else None,
        )
    if status == 404:
        return github_not_found_error(repo_url or text)
    if status >= 500:
        return network_error(f"GitHub API returned {status}: {text[:200]}")
    return github_api_error(status, text[:500] or f"GitHub API returned {status}")


def is_retryable_error(exc: BaseException) -> bool:
    """True for rate-limit, network and timeout RepoErrors."""
    return isinstance(exc, RepoError) and exc.retryable
