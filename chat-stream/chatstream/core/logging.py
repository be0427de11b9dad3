from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

from fastapi import Request, Response

SENSITIVE_KEYS = ("api_key", "apikey", "authorization", "x-api-key", "password", "secret")
QUIET_PATHS = ("/health",)


def redact(obj: Any) -> Any:
    """Mask values stored under key-like names; used for dict-style log records."""
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if isinstance(k, str) and any(s in k.lower() for s in SENSITIVE_KEYS):
                out[k] = "[REDACTED]" if v else v
            else:
                out[k] = redact(v)
        return out
    if isinstance(obj, list):
        return [redact(v) for v in obj]
    return obj


def _fields(record: logging.LogRecord) -> Dict[str, Any]:
    if isinstance(record.msg, dict):
        return redact(record.msg)
    return {"message": record.getMessage()}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "logger": record.name,
            **_fields(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class PlainFormatter(logging.Formatter):
    """``time | LEVEL | logger: event key=value ...`` for reading a dev console."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ts = time.strftime("%H:%M:%S", time.localtime(record.created))
        fields = _fields(record)
        head = str(fields.pop("event", fields.pop("message", "")))
        parts = [head] if head else []
        for k, v in fields.items():
            v_str = json.dumps(v, ensure_ascii=False, default=str) if isinstance(v, (dict, list)) else str(v)
            if " " in v_str:
                v_str = f'"{v_str}"'
            parts.append(f"{k}={v_str}")
        text = " ".join(parts)
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return f"{ts} | {record.levelname:<5} | {record.name}: {text}".rstrip()


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(PlainFormatter() if fmt.lower() == "plain" else JsonFormatter())
    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers.clear()
    root.addHandler(handler)


async def request_logging_middleware(request: Request, call_next):
    """Log one ``http.request`` record per request; for SSE the duration ends when streaming starts."""
    start = time.perf_counter()
    response: Optional[Response] = None
    try:
        response = await call_next(request)
        return response
    finally:
        path = request.url.path
        content_type = response.headers.get("content-type", "") if response is not None else ""
        level = logging.DEBUG if path in QUIET_PATHS else logging.INFO
        logging.getLogger("chatstream.http").log(
            level,
            {
                "event": "http.request",
                "method": request.method,
                "path": path,
                "status": response.status_code if response is not None else 500,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                "streaming": content_type.startswith("text/event-stream"),
            },
        )
