# tests/test_config.py
from __future__ import annotations

import json
import logging

import pytest
from httpx import AsyncClient, ASGITransport

from apps.api.main import app
from chatstream.core.logging import JsonFormatter, PlainFormatter, redact


@pytest.mark.asyncio
async def test_config_safe_fields() -> None:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.get("/config")
    assert resp.status_code == 200
    data = resp.json()
    assert set(["app_name", "env", "db_dialect", "log_level", "providers", "session"]).issubset(data.keys())
    assert "db_url" not in data
    assert data["db_dialect"] == "sqlite"
    assert data["providers"]["keys"] == {"openai": False, "anthropic": False, "azure": False}
    assert data["session"]["persistent"] is False
    assert "api_key" not in json.dumps(data)


def test_redact_masks_key_like_fields() -> None:
    out = redact({"headers": {"Authorization": "Bearer sk-1", "x-api-key": "k"}, "openai_api_key": "sk", "model": "gpt-4o"})
    assert out["headers"]["Authorization"] == "[REDACTED]"
    assert out["headers"]["x-api-key"] == "[REDACTED]"
    assert out["openai_api_key"] == "[REDACTED]"
    assert out["model"] == "gpt-4o"


def _record(msg) -> logging.LogRecord:
    return logging.LogRecord("chatstream.test", logging.INFO, __file__, 1, msg, None, None)


def test_json_formatter_structured_record() -> None:
    line = JsonFormatter().format(_record({"event": "x", "api_key": "secret-value"}))
    data = json.loads(line)
    assert data["event"] == "x"
    assert data["api_key"] == "[REDACTED]"
    assert data["logger"] == "chatstream.test"


def test_plain_formatter_leads_with_event_name() -> None:
    line = PlainFormatter().format(_record({"event": "stream.aborted", "parts": 3, "api_key": "sk"}))
    assert line.endswith("| INFO  | chatstream.test: stream.aborted parts=3 api_key=[REDACTED]")


@pytest.mark.asyncio
async def test_requests_are_logged_once_with_event_name(caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="chatstream.http")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        await ac.get("/config")
        await ac.get("/health")
    records = [r.msg for r in caplog.records if r.name == "chatstream.http"]
    assert [(r["event"], r["path"], r["status"]) for r in records] == [
        ("http.request", "/config", 200),
        ("http.request", "/health", 200),
    ]
    levels = [r.levelno for r in caplog.records if r.name == "chatstream.http"]
    assert levels == [logging.INFO, logging.DEBUG]
    assert records[0]["streaming"] is False
