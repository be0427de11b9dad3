# tests/test_api_chats.py
from __future__ import annotations

import json
from uuid import uuid4

import pytest
import respx
from httpx import AsyncClient, ASGITransport, Response

import apps.api.main as api_main

OLLAMA_CHAT = "http://localhost:11434/api/chat"


def parse_events(raw: bytes):
    text = raw.decode("utf-8", errors="ignore")
    events: list[tuple[str, dict]] = []
    for block in text.split("\n\n"):
        if not block.strip():
            continue
        ev = None
        data = ""
        for ln in block.splitlines():
            if ln.startswith("event: "):
                ev = ln[len("event: "):]
            elif ln.startswith("data: "):
                data = ln[len("data: "):]
        if ev:
            events.append((ev, json.loads(data)))
    return events


def generate_body(content: str = "Hi", model: str = "llama3") -> dict:
    return {
        "message_content": content,
        "chat_settings": {"model": model, "temperature": 0.1},
        "model": {"model_id": model, "provider": "ollama"},
    }


def client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=api_main.app), base_url="http://test")


@pytest.mark.asyncio
@respx.mock
async def test_generate_streams_deltas_then_done() -> None:
    chat_id = uuid4().hex
    respx.post(OLLAMA_CHAT).mock(
        return_value=Response(
            200,
            content=b'{"message":{"content":"Hel"}}\n{"message":{"content":"lo"}}\n{"done":true,"message":{"content":""}}\n',
        )
    )
    async with client() as ac:
        resp = await ac.post(f"/chats/{chat_id}/generate", json=generate_body())
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = parse_events(resp.content)

        assert events[-1] == ("done", {"status": "completed", "text": "Hello"})
        deltas = [d["text"] for ev, d in events if ev == "delta"]
        assert "".join(deltas) == "Hello"

        history = (await ac.get(f"/chats/{chat_id}/messages")).json()
    assert [m["role"] for m in history["messages"]] == ["user", "assistant"]
    assert history["messages"][1]["content"] == "Hello"


@pytest.mark.asyncio
@respx.mock
async def test_regenerate_keeps_message_count() -> None:
    chat_id = uuid4().hex
    respx.post(OLLAMA_CHAT).mock(
        side_effect=[
            Response(200, content=b'{"message":{"content":"first"}}\n'),
            Response(200, content=b'{"message":{"content":"second"}}\n'),
        ]
    )
    async with client() as ac:
        await ac.post(f"/chats/{chat_id}/generate", json=generate_body())
        resp = await ac.post(f"/chats/{chat_id}/generate?mode=regenerate", json=generate_body(content=""))
        assert parse_events(resp.content)[-1][1]["text"] == "second"
        messages = (await ac.get(f"/chats/{chat_id}/messages")).json()["messages"]
    assert [m["content"] for m in messages] == ["Hi", "second"]


@pytest.mark.asyncio
@respx.mock
async def test_generate_error_event_for_missing_local_model() -> None:
    chat_id = uuid4().hex
    respx.post(OLLAMA_CHAT).mock(return_value=Response(404, json={"error": "model 'llama3' not found"}))
    async with client() as ac:
        resp = await ac.post(f"/chats/{chat_id}/generate", json=generate_body())
        ev, data = parse_events(resp.content)[-1]
        assert ev == "error"
        assert data["kind"] == "endpoint_not_found"
        assert "Ollama" in data["message"]
        messages = (await ac.get(f"/chats/{chat_id}/messages")).json()["messages"]
    assert messages == []


@pytest.mark.asyncio
@respx.mock
async def test_retry_after_failure() -> None:
    chat_id = uuid4().hex
    respx.post(OLLAMA_CHAT).mock(
        side_effect=[
            Response(503, json={"error": "loading model"}),
            Response(200, content=b'{"message":{"content":"ok now"}}\n'),
        ]
    )
    async with client() as ac:
        first = await ac.post(f"/chats/{chat_id}/generate", json=generate_body())
        assert parse_events(first.content)[-1][0] == "error"
        resp = await ac.post(f"/chats/{chat_id}/retry")
    assert resp.status_code == 200
    assert resp.json() == {"status": "completed", "text": "ok now"}


@pytest.mark.asyncio
async def test_retry_and_cancel_without_generation() -> None:
    chat_id = uuid4().hex
    async with client() as ac:
        retry = await ac.post(f"/chats/{chat_id}/retry")
        cancel = await ac.post(f"/chats/{chat_id}/cancel")
    assert retry.status_code == 409
    assert retry.json()["status"] == "failed"
    assert cancel.status_code == 404


@pytest.mark.asyncio
async def test_generate_rejects_unknown_mode() -> None:
    async with client() as ac:
        resp = await ac.post(f"/chats/{uuid4().hex}/generate?mode=rewrite", json=generate_body())
    assert resp.status_code == 422
