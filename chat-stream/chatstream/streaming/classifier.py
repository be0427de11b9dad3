"""Maps a failed HTTP response to a user-facing error description.

The same functions serve the client side (aggregator route answered non-2xx) and the
aggregator route itself (upstream provider answered non-2xx), so a given root cause
always produces the same text.

Keyword matching on provider text is a best-effort heuristic: rows are tried in order,
first hit wins, and unmatched text falls through to the generic message.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

DEFAULT_RETRY_AFTER_SEC = 120


class ErrorKind(str, Enum):
    ENDPOINT_NOT_FOUND = "endpoint_not_found"
    RATE_LIMITED = "rate_limited"
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorClassification:
    kind: ErrorKind
    http_status: int
    user_message: str
    retry_after_seconds: Optional[int] = None
    variant: Optional[str] = None
    detail: Optional[str] = None

    def as_body(self, error: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"message": self.user_message}
        if error:
            body["error"] = error
        return body


BAD_REQUEST_RULES: Tuple[Tuple[str, Tuple[str, ...], str], ...] = (
    ("context_length", ("context", "token", "too long"),
     "Message too long. Please reduce the message length or context size."),
    ("format", ("invalid", "format"),
     "Invalid request format. Please check your message and try again."),
    ("model", ("model", "not found"),
     "Model not available or invalid. Please select a different model."),
    ("parameters", ("parameter", "missing"),
     "Missing or invalid parameters. Please try again."),
)
BAD_REQUEST_GENERIC = "Invalid request (400). Please check your message and try again."

HOSTED_ROUTES: Tuple[Tuple[str, str], ...] = (
    ("/api/chat/openai",
     "OpenAI endpoint not found. The model may not be available or the API route may be missing."),
    ("/api/chat/azure",
     "Azure OpenAI endpoint not found. Check the deployment name and endpoint in your settings."),
    ("/api/chat/anthropic",
     "Anthropic endpoint not found. The model may not be available or the API route may be missing."),
    ("/api/chat/custom",
     "Custom model endpoint not found. Please check your custom model configuration."),
)

INVALID_KEY_MESSAGE = "Invalid API key. Please check your API keys in settings."


def body_message(body: Any) -> Optional[str]:
    if isinstance(body, Mapping):
        msg = body.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg
        err = body.get("error")
        # OpenAI/Anthropic nest the text under error.message
        if isinstance(err, Mapping):
            inner = err.get("message")
            if isinstance(inner, str) and inner.strip():
                return inner
        elif isinstance(err, str) and err.strip():
            return err
    return None


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        seconds = int(str(value).strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


def format_wait(seconds: int) -> str:
    minutes, rest = divmod(max(0, seconds), 60)
    if minutes and rest:
        return f"{_plural(minutes, 'minute')} and {_plural(rest, 'second')}"
    if minutes:
        return _plural(minutes, "minute")
    return _plural(rest, "second")


def _not_found(body: Any, parsed: bool, url: Optional[str], hosted: bool) -> ErrorClassification:
    if not hosted:
        return ErrorClassification(
            ErrorKind.ENDPOINT_NOT_FOUND, 404,
            "Model not found. Make sure you have it downloaded via Ollama.",
            variant="local_model",
            detail="Try: ollama pull <model-name>",
        )
    if not parsed:
        endpoint = (url or "").rstrip("/").split("/")[-1] or "API endpoint"
        return ErrorClassification(
            ErrorKind.ENDPOINT_NOT_FOUND, 404, f"{endpoint} not found (404)",
            variant="hosted_route",
            detail="The requested endpoint doesn't exist. Please check your model selection.",
        )
    for route, message in HOSTED_ROUTES:
        if url and route in url:
            break
    else:
        message = f"API endpoint not found (404): {url}" if url else (body_message(body) or "API endpoint not found")
    return ErrorClassification(
        ErrorKind.ENDPOINT_NOT_FOUND, 404, message,
        variant="hosted_route",
        detail="This usually means the model or API endpoint doesn't exist.",
    )


def _rate_limited(body: Any, retry_after: Optional[int]) -> ErrorClassification:
    if retry_after is not None:
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds "
            f"({format_wait(retry_after)}) before trying again."
        )
        detail = "You've hit the rate limit for your API plan."
        wait = retry_after
    else:
        wait = DEFAULT_RETRY_AFTER_SEC
        message = (
            "Rate limit exceeded. Please wait 1-2 minutes before trying again. "
            "Your API provider has rate limits to prevent abuse."
        )
        detail = "This usually happens when you've made too many requests in a short time."
    upstream = body_message(body)
    return ErrorClassification(
        ErrorKind.RATE_LIMITED, 429, message,
        retry_after_seconds=wait,
        detail=f"{detail} ({upstream})" if upstream else detail,
    )


def _bad_request(body: Any) -> ErrorClassification:
    text = body_message(body)
    if text:
        lowered = text.lower()
        for variant, keywords, message in BAD_REQUEST_RULES:
            if any(k in lowered for k in keywords):
                return ErrorClassification(ErrorKind.BAD_REQUEST, 400, message, variant=variant, detail=text)
    return ErrorClassification(ErrorKind.BAD_REQUEST, 400, BAD_REQUEST_GENERIC, variant="generic", detail=text)


def classify(
    status: int,
    body: Any = None,
    *,
    retry_after: Optional[int] = None,
    url: Optional[str] = None,
    hosted: bool = True,
    parsed: Optional[bool] = None,
) -> ErrorClassification:
    """Classify a non-2xx response.

    ``body`` is the decoded JSON body, or None when it was missing or not JSON
    (``parsed`` defaults to ``body is not None``).
    """
    if parsed is None:
        parsed = body is not None
    text = body_message(body)

    if status == 404:
        return _not_found(body, parsed, url, hosted)
    if status == 429:
        return _rate_limited(body, retry_after)
    if status == 400:
        return _bad_request(body)
    if status == 401:
        return ErrorClassification(ErrorKind.UNAUTHORIZED, 401, text or INVALID_KEY_MESSAGE)
    if status in (500, 502, 503):
        return ErrorClassification(
            ErrorKind.SERVER_ERROR, status, text or f"Server error ({status}). Please try again later."
        )
    return ErrorClassification(ErrorKind.UNKNOWN, status, text or f"Error: {status}")


async def classify_response(
    response: httpx.Response, *, url: Optional[str] = None, hosted: bool = True
) -> ErrorClassification:
    """Read the (possibly streamed) body of a failed response and classify it."""
    raw = await response.aread()
    body: Any = None
    parsed = False
    if raw:
        try:
            body = json.loads(raw)
            parsed = True
        except ValueError:
            body = None
    if url is None:
        try:
            url = str(response.request.url)
        except RuntimeError:
            url = None
    return classify(
        response.status_code,
        body,
        retry_after=parse_retry_after(response.headers.get("retry-after")),
        url=url,
        hosted=hosted,
        parsed=parsed,
    )
