from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from chatstream.core.errors import MissingApiKey
from chatstream.core.profile import Profile, check_api_key
from chatstream.core.settings import AppSettings
from chatstream.streaming.classifier import ErrorClassification, classify, classify_response

log = logging.getLogger("app.upstream")

OPENAI_LARGE_OUTPUT_MODELS = ("gpt-4-vision-preview", "gpt-4o")

ANTHROPIC_MAX_OUTPUT: Dict[str, int] = {
    "claude-3-5-sonnet-20240620": 8192,
    "claude-3-5-sonnet-20241022": 8192,
    "claude-3-opus-20240229": 4096,
    "claude-3-sonnet-20240229": 4096,
    "claude-3-haiku-20240307": 4096,
    "claude-2.1": 4096,
}
ANTHROPIC_DEFAULT_MAX_OUTPUT = 4096

PROVIDER_LABELS = {"openai": "OpenAI", "azure": "Azure OpenAI", "anthropic": "Anthropic"}

TextExtractor = Callable[[Dict[str, Any]], Optional[str]]


def _openai_text(obj: Dict[str, Any]) -> Optional[str]:
    choices = obj.get("choices") or []
    if not choices:
        return None
    delta = (choices[0] or {}).get("delta") or {}
    return delta.get("content") or None


def _anthropic_text(obj: Dict[str, Any]) -> Optional[str]:
    kind = obj.get("type")
    if kind == "content_block_delta":
        return (obj.get("delta") or {}).get("text") or None
    if kind == "error":
        log.error({"event": "anthropic.stream_error", "error": obj.get("error")})
    return None


async def iter_sse_text(response: httpx.Response, extract: TextExtractor) -> AsyncIterator[str]:
    """Yield text fragments from an SSE body, one per ``data:`` line that carries text."""
    async for line in response.aiter_lines():
        if not line:
            continue
        if line.startswith("data: "):
            data_str = line[len("data: "):]
        elif line.startswith("data:"):
            data_str = line[len("data:"):].lstrip()
        else:
            continue
        if data_str.strip() == "[DONE]":
            break
        try:
            obj = json.loads(data_str)
        except json.JSONDecodeError:
            log.warning({"event": "upstream.bad_sse_line", "line": data_str[:200]})
            continue
        if not isinstance(obj, dict):
            continue
        text = extract(obj)
        if text:
            yield text


def anthropic_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Everything after the system message, with content turned into Anthropic blocks."""
    formatted: List[Dict[str, Any]] = []
    for message in messages[1:]:
        content = message.get("content")
        parts = [content] if isinstance(content, str) else list(content or [])
        blocks: List[Any] = []
        for part in parts:
            if isinstance(part, str):
                blocks.append({"type": "text", "text": part})
            elif part.get("type") == "image_url" and (part.get("image_url") or {}).get("url"):
                url = part["image_url"]["url"]
                blocks.append({
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": media_type_from_data_url(url),
                        "data": base64_from_data_url(url),
                    },
                })
            else:
                blocks.append(part)
        formatted.append({**message, "content": blocks})
    return formatted


def media_type_from_data_url(url: str) -> str:
    head = url.split(",", 1)[0]
    if head.startswith("data:"):
        return head[len("data:"):].split(";", 1)[0] or "image/png"
    return "image/png"


def base64_from_data_url(url: str) -> str:
    return url.split(",", 1)[1] if "," in url else url


@dataclass
class UpstreamCall:
    request: httpx.Request
    extract: TextExtractor


def build_upstream_call(
    client: httpx.AsyncClient,
    provider: str,
    body: Dict[str, Any],
    profile: Profile,
    settings: AppSettings,
) -> UpstreamCall:
    """Raises MissingApiKey before anything is sent when the provider key is absent."""
    chat_settings = body.get("chatSettings") or {}
    messages = body.get("messages") or []
    model = chat_settings.get("model", "")
    temperature = chat_settings.get("temperature")
    keys = profile.keys

    if provider in ("openai", "azure"):
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if model in OPENAI_LARGE_OUTPUT_MODELS:
            payload["max_tokens"] = 4096
        if provider == "openai":
            check_api_key(keys.openai_api_key, "OpenAI")
            headers = {"Authorization": f"Bearer {keys.openai_api_key}"}
            if keys.openai_organization_id:
                headers["OpenAI-Organization"] = keys.openai_organization_id
            url = f"{settings.openai_base_url.rstrip('/')}/v1/chat/completions"
        else:
            check_api_key(keys.azure_openai_api_key, "Azure OpenAI")
            deployment = keys.azure_openai_45_turbo_id or model
            headers = {"api-key": keys.azure_openai_api_key or ""}
            url = (
                f"{(keys.azure_openai_endpoint or '').rstrip('/')}/openai/deployments/{deployment}"
                f"/chat/completions?api-version={settings.azure_api_version}"
            )
        return UpstreamCall(client.build_request("POST", url, json=payload, headers=headers), _openai_text)

    if provider == "anthropic":
        check_api_key(keys.anthropic_api_key, "Anthropic")
        payload = {
            "model": model,
            "messages": anthropic_messages(messages),
            "max_tokens": ANTHROPIC_MAX_OUTPUT.get(model, ANTHROPIC_DEFAULT_MAX_OUTPUT),
            "stream": True,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if messages:
            payload["system"] = messages[0].get("content")
        headers = {
            "x-api-key": keys.anthropic_api_key or "",
            "anthropic-version": settings.anthropic_version,
        }
        url = f"{settings.anthropic_base_url.rstrip('/')}/v1/messages"
        return UpstreamCall(client.build_request("POST", url, json=payload, headers=headers), _anthropic_text)

    raise ValueError(f"unsupported provider: {provider}")


@dataclass
class RelayResult:
    """Either ``classification`` is set (answer with an error body) or ``chunks`` streams the text."""

    classification: Optional[ErrorClassification] = None
    chunks: Optional[AsyncIterator[bytes]] = None
    error: Optional[str] = None
    retry_after: Optional[str] = None


async def open_relay(
    provider: str,
    body: Dict[str, Any],
    profile: Profile,
    settings: AppSettings,
) -> RelayResult:
    """Start the upstream call and hand back the relayed body or a classified failure.

    Classification uses the same rules as the client side so both ends agree on the text.
    """
    label = PROVIDER_LABELS.get(provider, provider)
    client = httpx.AsyncClient(timeout=settings.request_timeout_sec)
    try:
        call = build_upstream_call(client, provider, body, profile, settings)
    except MissingApiKey as e:
        await client.aclose()
        log.warning({"event": "upstream.missing_key", "provider": provider})
        return RelayResult(
            classification=classify(
                401, {"message": f"{label} API Key not found or invalid. Please check your API key in settings."}
            ),
            error=str(e),
        )

    log.info({"event": "upstream.start", "provider": provider, "url": str(call.request.url)})
    try:
        response = await client.send(call.request, stream=True)
    except httpx.RequestError as e:
        await client.aclose()
        log.error({"event": "upstream.unreachable", "provider": provider, "error": str(e)})
        return RelayResult(
            classification=classify(502, {"message": f"Failed to reach {label}. Please try again later."}),
            error=str(e),
        )

    if response.status_code >= 400:
        try:
            classification = await classify_response(response, url=str(call.request.url), hosted=True)
            raw = response.text
            retry_after = response.headers.get("retry-after")
        finally:
            await response.aclose()
            await client.aclose()
        log.warning(
            {"event": "upstream.failed", "provider": provider, "status": response.status_code,
             "kind": classification.kind.value}
        )
        return RelayResult(classification=classification, error=raw[:2000], retry_after=retry_after)

    async def chunks() -> AsyncIterator[bytes]:
        try:
            async for text in iter_sse_text(response, call.extract):
                yield text.encode("utf-8")
        finally:
            await response.aclose()
            await client.aclose()

    return RelayResult(chunks=chunks())
