"""
Call an LLM with a prompt and return the response text plus token usage.

Backend is selected via the provider argument or LLM_PROVIDER: gemini (default),
gemini_aiplatform, openai (any OpenAI-compatible chat completions endpoint) or cursor.
- gemini: google-genai client; GEMINI_API_KEY, GEMINI_MODEL.
- gemini_aiplatform: REST to aiplatform.googleapis.com (API key in URL); same env vars.
- openai: POST {OPENAI_BASE_URL}/chat/completions; OPENAI_API_KEY, OPENAI_MODEL.
- cursor: Cursor CLI via subprocess; CURSOR_MODEL, CURSOR_TIMEOUT, CURSOR_API_KEY.
Used by IdentifyAbstractions, AnalyzeRelationships, OrderChapters, WriteChapters.

Every failure is raised as an LLMError with a kind (auth, rate_limit, network,
timeout, malformed_response, api). Rate-limit, network and timeout failures are
retried by the RetryPolicy (LLM_RATE_LIMIT_MAX_RETRIES attempts by default); on
Gemini 429 the API's retryDelay (RetryInfo) or 'Please retry in Xs' becomes the
wait. We distinguish RPM (requests-per-minute) vs RPD (requests-per-day) for
clearer logging.
"""

import json
import logging
import os
import re
import subprocess
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

from utils.errors import ErrorKind, LLMError
from utils.retry import RetryPolicy, default_retry_policy

logger = logging.getLogger("repo_scrapper")

DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_AIPLATFORM_BASE_URL = "https://aiplatform.googleapis.com"

_PROVIDER_ALIASES = {
    "openai-compatible": "openai",
    "openai_compatible": "openai",
    "aiplatform": "gemini_aiplatform",
}


@dataclass(frozen=True)
class LLMResult:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    provider: str = ""
    model: str = ""


def resolve_provider(provider: Optional[str] = None) -> str:
    name = (provider or os.environ.get("LLM_PROVIDER", "gemini") or "gemini").strip().lower()
    return _PROVIDER_ALIASES.get(name, name)


def call_llm(
    prompt: str,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> LLMResult:
    """
    Send prompt to the configured LLM and return an LLMResult.

    Args:
        prompt: User prompt string.
        provider: "gemini", "gemini_aiplatform", "openai" or "cursor"; defaults to LLM_PROVIDER.
        model: Model name; defaults to the provider's *_MODEL env var.
        api_key: Overrides the provider's API key env var.
        base_url: Overrides the provider's base URL (gemini_aiplatform, openai).
        retry_policy: Retry schedule for transient failures; defaults to
            default_retry_policy().

    Raises:
        LLMError: typed failure after retries are exhausted or on a non-retryable error.
    """
    name = resolve_provider(provider)
    backend = _BACKENDS.get(name)
    if backend is None:
        raise LLMError(
            ErrorKind.VALIDATION,
            f"Unknown LLM provider {name!r} (expected one of {', '.join(sorted(_BACKENDS))})",
            status=400,
            provider=name,
        )
    text = _clean_prompt(prompt)
    policy = retry_policy or default_retry_policy()
    result = policy.run(
        lambda attempt: backend(text, model, api_key, base_url),
        description=f"LLM call ({name})",
    )
    logger.debug(
        "LLM %s/%s: %s input tokens, %s output tokens",
        result.provider,
        result.model,
        result.input_tokens,
        result.output_tokens,
    )
    return result


def check_llm_connection(
    provider: Optional[str] = None,
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
) -> dict[str, Any]:
    """
    Send a tiny prompt once and report whether the provider answered.

    Returns a dict with ok, provider, model, latency_ms and either response or error
    (a problem detail).
    """
    name = resolve_provider(provider)
    started = time.monotonic()
    try:
        result = call_llm(
            "Reply with the single word: ok",
            provider=name,
            model=model,
            api_key=api_key,
            base_url=base_url,
            retry_policy=RetryPolicy(max_attempts=1),
        )
    except LLMError as e:
        logger.warning("LLM connection test failed for %s: %s", name, e)
        return {
            "ok": False,
            "provider": name,
            "model": model,
            "latency_ms": int((time.monotonic() - started) * 1000),
            "error": e.to_problem_detail(),
        }
    return {
        "ok": True,
        "provider": result.provider,
        "model": result.model,
        "latency_ms": int((time.monotonic() - started) * 1000),
        "response": result.text[:200],
    }


def _clean_prompt(prompt: str) -> str:
    """
    Ensure prompt is a clean string (APIs can reject null bytes) and truncate
    it to LLM_MAX_INPUT_CHARS (default 1M chars ~ 250k tokens; 0 disables).
    """
    text = str(prompt) if prompt is not None else ""
    if "\x00" in text:
        text = text.replace("\x00", "")
    max_chars_raw = os.environ.get("LLM_MAX_INPUT_CHARS", "")
    try:
        max_chars = int(max_chars_raw) if max_chars_raw.strip() else 1_000_000
    except ValueError:
        logger.warning("Ignoring invalid LLM_MAX_INPUT_CHARS=%r", max_chars_raw)
        max_chars = 1_000_000
    max_chars = max(0, min(max_chars, 2_000_000))
    if max_chars > 0 and len(text) > max_chars:
        logger.warning(
            "Truncating prompt from %s to %s chars (set LLM_MAX_INPUT_CHARS=0 to disable)",
            len(text),
            max_chars,
        )
        text = text[:max_chars]
    return text


def _timeout() -> float:
    raw = os.environ.get("LLM_TIMEOUT", "")
    try:
        return float(raw) if raw.strip() else 120.0
    except ValueError:
        logger.warning("Ignoring invalid LLM_TIMEOUT=%r", raw)
        return 120.0


def _as_int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


# --- 429 parsing ---


def _parse_retry_delay_from_exception(exc: BaseException) -> Optional[int]:
    """
    Extract retry delay from Gemini error structure (RetryInfo in details).
    Returns seconds or None if not found.
    """
    data = getattr(exc, "response_json", None)
    if not isinstance(data, dict):
        data = getattr(exc, "details", None)
    if not isinstance(data, dict):
        return None
    if "error" in data and isinstance(data["error"], dict):
        data = data["error"]
    for detail in data.get("details") or []:
        if isinstance(detail, dict) and detail.get("@type") == "type.googleapis.com/google.rpc.RetryInfo":
            match = re.search(r"([\d.]+)\s*s?", str(detail.get("retryDelay", "")))
            if match:
                return max(1, int(float(match.group(1))))
    return None


def _parse_retry_delay_seconds(exc: Optional[BaseException], error_message: str) -> int:
    """
    Parse retry delay from a Gemini 429 error.
    Prefer exception structure (RetryInfo.retryDelay); else regex on message; else 60.
    """
    if exc is not None:
        sec = _parse_retry_delay_from_exception(exc)
        if sec is not None:
            return sec
    # API RetryInfo in str: 'retryDelay': '57s' or "retryDelay": "57s"
    match = re.search(r"retryDelay['\"]?\s*:\s*['\"]?(\d+)s", error_message, re.IGNORECASE)
    if match:
        return max(1, int(match.group(1)))
    # Fallback: "Please retry in 57.282934807s"
    match = re.search(r"retry in (\d+(?:\.\d+)?)\s*s", error_message, re.IGNORECASE)
    if match:
        return max(1, int(float(match.group(1))) + 1)
    return 60


def _quota_type(error_message: str) -> str:
    """Return 'RPM', 'RPD', or '' for 429 quota type (for logging)."""
    if "PerDay" in error_message or "GenerateRequestsPerDay" in error_message:
        return "RPD"
    if "PerMinute" in error_message or "GenerateRequestsPerMinutePerProjectPerModel" in error_message:
        return "RPM"
    return ""


def _rate_limit_error(message: str, provider: str, model: Optional[str], retry_after: float) -> LLMError:
    qtype = _quota_type(message)
    if qtype == "RPM":
        quota_note = " (RPM quota exhausted; wait for next minute)"
    elif qtype == "RPD":
        quota_note = " (RPD daily quota exhausted)"
    else:
        quota_note = ""
    logger.warning("%s 429 (quota/rate limit)%s: %s", provider, quota_note, message[:200])
    return LLMError(
        ErrorKind.RATE_LIMIT,
        f"{provider} rate limit exceeded{quota_note}",
        status=429,
        provider=provider,
        model=model,
        retry_after=retry_after,
    )


# --- error classification ---


def _classify_exception(exc: BaseException, provider: str, model: Optional[str]) -> LLMError:
    """Map an SDK exception to an LLMError."""
    msg = str(exc)
    code = getattr(exc, "code", None)
    if not isinstance(code, int):
        code = getattr(exc, "status_code", None)
    if not isinstance(code, int):
        code = None
    if code == 429 or "429" in msg or "RESOURCE_EXHAUSTED" in msg:
        return _rate_limit_error(msg, provider, model, _parse_retry_delay_seconds(exc, msg))
    if code in (401, 403) or "API key not valid" in msg or "PERMISSION_DENIED" in msg or "UNAUTHENTICATED" in msg:
        return LLMError(ErrorKind.AUTH, f"{provider} rejected the credentials: {msg[:200]}", 401, provider, model)
    if code in (408, 504) or "DEADLINE_EXCEEDED" in msg or isinstance(exc, TimeoutError):
        return LLMError(ErrorKind.TIMEOUT, f"{provider} request timed out: {msg[:200]}", 504, provider, model)
    if (code is not None and code >= 500) or "UNAVAILABLE" in msg or isinstance(exc, ConnectionError):
        return LLMError(ErrorKind.NETWORK, f"{provider} is unavailable: {msg[:200]}", 503, provider, model)
    return LLMError(ErrorKind.API, f"{provider} request failed: {msg[:200]}", code or 502, provider, model)


def _response_text(r: requests.Response) -> str:
    text = r.text or ""
    try:
        parsed = r.json()
    except ValueError:
        return text
    return json.dumps(parsed) if isinstance(parsed, (dict, list)) else text


def _classify_response(r: requests.Response, provider: str, model: Optional[str]) -> LLMError:
    """Map a non-200 HTTP response to an LLMError."""
    status = r.status_code
    body = _response_text(r)
    if status == 429:
        header = (r.headers or {}).get("Retry-After")
        retry_after = float(header) if header and header.isdigit() else _parse_retry_delay_seconds(None, body)
        return _rate_limit_error(body, provider, model, retry_after)
    logger.error("%s HTTP %s: %s (model=%s)", provider, status, body[:500], model)
    if status in (401, 403):
        return LLMError(ErrorKind.AUTH, f"{provider} rejected the credentials (HTTP {status})", 401, provider, model)
    if status in (408, 504):
        return LLMError(ErrorKind.TIMEOUT, f"{provider} timed out (HTTP {status})", 504, provider, model)
    if status >= 500:
        return LLMError(ErrorKind.NETWORK, f"{provider} server error (HTTP {status})", 503, provider, model)
    return LLMError(ErrorKind.API, f"{provider} request failed (HTTP {status}): {body[:200]}", status, provider, model)


def _post(
    url: str,
    payload: dict,
    headers: dict,
    provider: str,
    model: Optional[str],
    stream: bool = False,
) -> requests.Response:
    timeout = _timeout()
    try:
        r = requests.post(url, json=payload, headers=headers, timeout=timeout, stream=stream)
    except requests.Timeout as e:
        raise LLMError(ErrorKind.TIMEOUT, f"{provider} request timed out after {timeout}s", 504, provider, model) from e
    except requests.RequestException as e:
        raise LLMError(ErrorKind.NETWORK, f"{provider} request failed: {e}", 503, provider, model) from e
    if r.status_code != 200:
        raise _classify_response(r, provider, model)
    return r


def _empty_response(provider: str, model: Optional[str], detail: str = "Empty response from LLM") -> LLMError:
    return LLMError(ErrorKind.MALFORMED_RESPONSE, detail, 502, provider, model)


# --- gemini (google-genai) ---


def _call_llm_gemini(prompt: str, model: Optional[str], api_key: Optional[str], base_url: Optional[str]) -> LLMResult:
    api_key = (api_key or os.environ.get("GEMINI_API_KEY", "")).strip()
    if not api_key:
        raise LLMError(ErrorKind.AUTH, "GEMINI_API_KEY environment variable is not set", 401, "gemini", model)
    model = model or os.environ.get("GEMINI_MODEL", DEFAULT_GEMINI_MODEL).strip() or DEFAULT_GEMINI_MODEL

    from google import genai

    client = genai.Client(api_key=api_key)
    try:
        response = client.models.generate_content(model=model, contents=[prompt])
    except Exception as e:
        raise _classify_exception(e, "gemini", model) from e
    if not response or not response.text:
        raise _empty_response("gemini", model)
    usage = getattr(response, "usage_metadata", None)
    return LLMResult(
        text=response.text,
        input_tokens=_as_int(getattr(usage, "prompt_token_count", 0)),
        output_tokens=_as_int(getattr(usage, "candidates_token_count", 0)),
        provider="gemini",
        model=model,
    )


# --- gemini via AI Platform REST ---


def _parse_one_json_object(s: str) -> tuple[Optional[dict], int]:
    """
    Parse a single JSON object from the start of s. Returns (dict, chars_consumed) or (None, 0).
    Handles nested braces; does not enter string literals.
    """
    s = s.lstrip()
    if not s or s[0] != "{":
        return None, 0
    depth = 0
    in_string = False
    escape = False
    for i, c in enumerate(s):
        if escape:
            escape = False
            continue
        if in_string:
            if c == "\\":
                escape = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                try:
                    obj = json.loads(s[: i + 1])
                except json.JSONDecodeError:
                    return None, 0
                return (obj, i + 1) if isinstance(obj, dict) else (None, 0)
    return None, 0


def _parse_aiplatform_body(body: str) -> list:
    """
    Parse streamGenerateContent response: one JSON object, JSON array, or concatenated objects.
    Returns a list of dicts (one per top-level object).
    """
    body = (body or "").strip()
    if not body:
        return []
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        pass
    else:
        return parsed if isinstance(parsed, list) else [parsed]
    # Concatenated stream chunks: parse object by object
    items = []
    rest = body
    while rest:
        obj, consumed = _parse_one_json_object(rest)
        if consumed == 0:
            break
        items.append(obj)
        rest = rest[consumed:].lstrip()
    if items:
        return items
    logger.error("Gemini AI Platform invalid JSON (len=%s): %s ...", len(body), body[:300])
    raise _empty_response("gemini_aiplatform", None, "Empty response from LLM (invalid JSON)")


def _extract_aiplatform_text(items: list) -> tuple[str, dict]:
    """
    Extract text from AI Platform response items. Returns (text, info).
    info includes finishReasons, promptFeedback and token counts when present.
    """
    chunks: list[str] = []
    info: dict = {
        "candidates": 0,
        "finishReasons": [],
        "promptFeedback": None,
        "blocked": False,
        "input_tokens": 0,
        "output_tokens": 0,
    }
    for data in items:
        if not isinstance(data, dict):
            continue
        feedback = data.get("promptFeedback")
        if isinstance(feedback, dict):
            info["promptFeedback"] = feedback
            if feedback.get("blockReason"):
                info["blocked"] = True
        usage = data.get("usageMetadata")
        if isinstance(usage, dict):
            # streamed chunks carry running totals
            info["input_tokens"] = max(info["input_tokens"], _as_int(usage.get("promptTokenCount")))
            info["output_tokens"] = max(info["output_tokens"], _as_int(usage.get("candidatesTokenCount")))
        candidates = data.get("candidates") or []
        if not isinstance(candidates, list):
            continue
        info["candidates"] += len(candidates)
        for c in candidates:
            if not isinstance(c, dict):
                continue
            finish_reason = c.get("finishReason")
            if isinstance(finish_reason, str) and finish_reason:
                info["finishReasons"].append(finish_reason)
                if finish_reason.upper() in {"SAFETY", "BLOCKLIST", "RECITATION"}:
                    info["blocked"] = True
            content = c.get("content")
            if isinstance(content, dict):
                for part in content.get("parts") or []:
                    if isinstance(part, str) and part:
                        chunks.append(part)
                    elif isinstance(part, dict) and isinstance(part.get("text"), str):
                        chunks.append(part["text"])
            elif isinstance(content, str) and content:
                chunks.append(content)
    return "".join(chunks).strip(), info


def _call_llm_gemini_aiplatform(
    prompt: str, model: Optional[str], api_key: Optional[str], base_url: Optional[str]
) -> LLMResult:
    """
    Call Gemini via AI Platform REST (express mode) using streamGenerateContent,
    falling back to generateContent when the stream carries no text.
    Uses GEMINI_API_KEY, GEMINI_MODEL; optional GEMINI_AIPLATFORM_BASE_URL.
    If you get 400 INVALID_ARGUMENT, try GEMINI_MODEL=gemini-2.5-flash or gemini-2.0-flash
    (express mode model list may differ).
    """
    provider = "gemini_aiplatform"
    api_key = (api_key or os.environ.get("GEMINI_API_KEY", "")).strip()
    if not api_key:
        raise LLMError(ErrorKind.AUTH, "GEMINI_API_KEY environment variable is not set", 401, provider, model)
    model = model or os.environ.get("GEMINI_MODEL", DEFAULT_GEMINI_MODEL).strip() or DEFAULT_GEMINI_MODEL
    base = (
        base_url or os.environ.get("GEMINI_AIPLATFORM_BASE_URL", DEFAULT_AIPLATFORM_BASE_URL) or DEFAULT_AIPLATFORM_BASE_URL
    ).rstrip("/")
    payload = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        # Disable function/tool calling to avoid MALFORMED_FUNCTION_CALL with long prompts.
        "toolConfig": {"functionCallingConfig": {"mode": "NONE"}},
    }
    headers = {"Content-Type": "application/json"}

    url = f"{base}/v1/publishers/google/models/{model}:streamGenerateContent?key={api_key}"
    r = _post(url, payload, headers, provider, model, stream=True)
    body = b"".join(chunk for chunk in r.iter_content(chunk_size=65536) if chunk).decode("utf-8", errors="replace")
    text, info = _extract_aiplatform_text(_parse_aiplatform_body(body))
    if not text:
        logger.warning(
            "Gemini AI Platform empty text from stream (body_len=%s, candidates=%s, finishReasons=%s, blocked=%s)",
            len(body),
            info["candidates"],
            info["finishReasons"],
            info["blocked"],
        )
        # Some responses only finalize on the non-stream endpoint.
        fallback_url = f"{base}/v1/publishers/google/models/{model}:generateContent?key={api_key}"
        r2 = _post(fallback_url, payload, headers, provider, model)
        text, info = _extract_aiplatform_text(_parse_aiplatform_body(r2.text or ""))
        if not text:
            raise _empty_response(provider, model, "Empty response from LLM (no text in stream)")
    return LLMResult(
        text=text,
        input_tokens=info["input_tokens"],
        output_tokens=info["output_tokens"],
        provider=provider,
        model=model,
    )


# --- OpenAI-compatible chat completions ---


def _call_llm_openai(prompt: str, model: Optional[str], api_key: Optional[str], base_url: Optional[str]) -> LLMResult:
    provider = "openai"
    api_key = (api_key or os.environ.get("OPENAI_API_KEY", "")).strip()
    model = model or os.environ.get("OPENAI_MODEL", DEFAULT_OPENAI_MODEL).strip() or DEFAULT_OPENAI_MODEL
    base = (base_url or os.environ.get("OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL) or DEFAULT_OPENAI_BASE_URL).rstrip("/")
    # Local OpenAI-compatible servers often run without a key.
    if not api_key and base == DEFAULT_OPENAI_BASE_URL:
        raise LLMError(ErrorKind.AUTH, "OPENAI_API_KEY environment variable is not set", 401, provider, model)
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    payload = {"model": model, "messages": [{"role": "user", "content": prompt}]}
    r = _post(f"{base}/chat/completions", payload, headers, provider, model)
    try:
        data = r.json()
    except ValueError as e:
        raise _empty_response(provider, model, "LLM returned a non-JSON body") from e
    choices = data.get("choices") if isinstance(data, dict) else None
    message = choices[0].get("message") if choices and isinstance(choices[0], dict) else None
    text = (message or {}).get("content") or ""
    if not text.strip():
        raise _empty_response(provider, model)
    usage = data.get("usage") or {}
    return LLMResult(
        text=text,
        input_tokens=_as_int(usage.get("prompt_tokens")),
        output_tokens=_as_int(usage.get("completion_tokens")),
        provider=provider,
        model=data.get("model") or model,
    )


# --- cursor CLI ---


def _call_llm_cursor(prompt: str, model: Optional[str], api_key: Optional[str], base_url: Optional[str]) -> LLMResult:
    """Invoke Cursor CLI agent via subprocess; prompt via stdin, --output-format text."""
    provider = "cursor"
    timeout_sec = int(os.environ.get("CURSOR_TIMEOUT", "120") or "120")
    env = dict(os.environ)
    api_key = (api_key or os.environ.get("CURSOR_API_KEY", "")).strip()
    if api_key:
        env["CURSOR_API_KEY"] = api_key
    model = model or (os.environ.get("CURSOR_MODEL", "") or "").strip()
    cmd = ["cursor", "agent", "--output-format", "text"]
    if model:
        cmd.extend(["--model", model])

    try:
        result = subprocess.run(
            cmd,
            input=prompt,
            capture_output=True,
            text=True,
            timeout=timeout_sec,
            env=env,
        )
    except subprocess.TimeoutExpired as e:
        raise LLMError(ErrorKind.TIMEOUT, f"Cursor agent timed out after {timeout_sec}s", 504, provider, model) from e
    except FileNotFoundError as e:
        raise LLMError(ErrorKind.API, "Cursor CLI not found on PATH", 500, provider, model) from e

    if result.returncode != 0:
        raise LLMError(
            ErrorKind.API,
            f"Cursor agent exited with code {result.returncode}: {result.stderr or result.stdout or 'no output'}",
            502,
            provider,
            model,
        )
    out = (result.stdout or "").strip()
    if not out:
        raise _empty_response(provider, model, "Empty response from Cursor LLM")
    return LLMResult(text=out, provider=provider, model=model or "")


_BACKENDS: dict[str, Callable[[str, Optional[str], Optional[str], Optional[str]], LLMResult]] = {
    "gemini": _call_llm_gemini,
    "gemini_aiplatform": _call_llm_gemini_aiplatform,
    "openai": _call_llm_openai,
    "cursor": _call_llm_cursor,
}
