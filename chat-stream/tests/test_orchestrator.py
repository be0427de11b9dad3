# tests/test_orchestrator.py
from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import OLLAMA, Upstream, chunked, make_history, make_payload
from chatstream.core.errors import ClassifiedHTTPError, GenerationStateError, TransportFailure
from chatstream.core.types import GenerationMode, MessageImage
from chatstream.orchestration.events import DeltaEvent, EventChannel, GenerationEnded
from chatstream.orchestration.generation import GenerationState
from chatstream.storage.images import LocalImageStore
from chatstream.streaming.abort import AbortHandle
from chatstream.streaming.classifier import ErrorKind


@pytest.mark.asyncio
async def test_append_streams_and_persists(build_orchestrator, store, auth_session) -> None:
    upstream = Upstream(chunked(b"Hello", b" there"))
    orch = build_orchestrator(upstream)
    sub = orch.events.subscribe("c1")

    text = await orch.run_generation(make_payload(), GenerationMode.APPEND, AbortHandle("c1"), auth_session)

    assert text == "Hello there"
    assert str(upstream.requests[0].url) == "http://agg.test/api/chat/openai"
    body = upstream.body()
    assert body["chatSettings"]["model"] == "gpt-4o"
    assert body["messages"][0]["role"] == "system"
    assert body["messages"][-1] == {"role": "user", "content": "Hi"}

    transcript = orch.transcript("c1")
    assert [m.role for m in transcript] == ["user", "assistant"]
    assert transcript[-1].content == "Hello there"
    assert orch.state("c1") is GenerationState.IDLE

    assert store.calls[0] == ("create_messages", ["user", "assistant"])
    assert store.calls[1][0] == "update_message"
    assert store.calls[1][2] == {"image_paths": []}
    assert len(store.calls) == 2

    events = sub.drain()
    deltas = [e for e in events if isinstance(e, DeltaEvent)]
    assert [d.delta_text for d in deltas] == ["Hello", " there"]
    assert deltas[-1].text == "Hello there"
    assert isinstance(events[-1], GenerationEnded) and events[-1].outcome == "completed"


@pytest.mark.asyncio
async def test_append_links_file_items_and_uploads_images(build_orchestrator, store, auth_session, tmp_path) -> None:
    orch = build_orchestrator(Upstream(chunked(b"seen")), image_store=LocalImageStore(str(tmp_path)))
    payload = make_payload(
        images=[MessageImage(name="cat.png", data=b"\x89PNG", base64="data:image/png;base64,iVBO")],
        retrieved_file_items=["f1", "f2"],
    )

    await orch.run_generation(payload, "append", AbortHandle("c1"), auth_session)

    user_msg, assistant_msg = orch.transcript("c1")
    assert len(user_msg.image_paths) == 1
    assert user_msg.image_paths[0].startswith(f"u1/c1/{user_msg.id}/")
    assert (tmp_path / user_msg.image_paths[0]).read_bytes() == b"\x89PNG"
    assert assistant_msg.file_items == ["f1", "f2"]
    assert ("create_message_file_items", assistant_msg.id, ["f1", "f2"], "u1") in store.calls


@pytest.mark.asyncio
async def test_regenerate_replaces_only_last_message(build_orchestrator, store, auth_session) -> None:
    history = make_history()
    store.seed(history)
    upstream = Upstream(chunked(b"new ", b"answer"))
    orch = build_orchestrator(upstream)

    text = await orch.run_generation(
        make_payload(content="", history=history), GenerationMode.REGENERATE, AbortHandle("c1"), auth_session
    )

    assert text == "new answer"
    transcript = orch.transcript("c1")
    assert len(transcript) == len(history)
    assert transcript[0] == history[0]
    assert transcript[-1].id == history[-1].id
    assert transcript[-1].content == "new answer"
    assert store.calls == [("update_message", history[-1].id, {"content": "new answer"})]
    # the replaced answer is not sent back upstream
    sent = upstream.body()["messages"]
    assert [m["content"] for m in sent[1:]] == ["Hello?"]


@pytest.mark.asyncio
async def test_regenerate_without_assistant_message(build_orchestrator, auth_session) -> None:
    orch = build_orchestrator(Upstream())
    history = make_history()[:1]
    with pytest.raises(GenerationStateError):
        await orch.run_generation(
            make_payload(history=history), GenerationMode.REGENERATE, AbortHandle("c1"), auth_session
        )
    assert orch.state("c1") is GenerationState.IDLE
    assert orch.transcript("c1") == history


@pytest.mark.asyncio
async def test_non_2xx_rolls_back_and_raises_classified(build_orchestrator, store, auth_session) -> None:
    history = make_history()
    upstream = Upstream(
        httpx.Response(429, headers={"Retry-After": "90"}, json={"message": "Rate limit exceeded"})
    )
    orch = build_orchestrator(upstream)

    with pytest.raises(ClassifiedHTTPError) as exc:
        await orch.run_generation(make_payload(history=history), "append", AbortHandle("c1"), auth_session)

    err = exc.value
    assert err.status_code == 429
    assert err.retry_after_seconds == 90
    assert err.classification.kind is ErrorKind.RATE_LIMITED
    assert orch.transcript("c1") == history
    assert orch.state("c1") is GenerationState.FAILED
    assert store.calls == []

    orch.reset("c1")
    assert orch.state("c1") is GenerationState.IDLE


@pytest.mark.asyncio
async def test_hosted_404_uses_route_message(build_orchestrator, auth_session) -> None:
    orch = build_orchestrator(Upstream(httpx.Response(404, json={"message": "missing"})))
    payload = make_payload(provider="anthropic", model="claude-3-haiku-20240307")
    with pytest.raises(ClassifiedHTTPError) as exc:
        await orch.run_generation(payload, "append", AbortHandle("c1"), auth_session)
    assert exc.value.classification.user_message.startswith("Anthropic endpoint not found")


@pytest.mark.asyncio
async def test_transport_failure_rolls_back(build_orchestrator, store, auth_session) -> None:
    orch = build_orchestrator(Upstream(httpx.ConnectError("refused")))
    with pytest.raises(TransportFailure):
        await orch.run_generation(make_payload(), "append", AbortHandle("c1"), auth_session)
    assert orch.transcript("c1") == []
    assert orch.state("c1") is GenerationState.FAILED
    assert store.calls == []


@pytest.mark.asyncio
async def test_abort_after_n_deltas_discards_text(build_orchestrator, store, auth_session) -> None:
    history = make_history()
    orch = build_orchestrator(Upstream(chunked(b"one ", b"two ", hang=True)))
    sub = orch.events.subscribe("c1")
    handle = AbortHandle("c1")

    task = asyncio.create_task(orch.run_generation(make_payload(history=history), "append", handle, auth_session))
    seen = []
    while len(seen) < 2:
        seen.append(await asyncio.wait_for(sub.get(), timeout=2))
    assert all(isinstance(e, DeltaEvent) for e in seen)
    assert orch.inflight("c1").accumulated_text == "one two "

    handle.abort()
    result = await asyncio.wait_for(task, timeout=2)

    assert result is None
    assert store.calls == []
    assert orch.transcript("c1") == history
    assert orch.state("c1") is GenerationState.IDLE
    ended = sub.drain()[-1]
    assert isinstance(ended, GenerationEnded) and ended.outcome == "aborted"


@pytest.mark.asyncio
async def test_abort_before_dispatch_sends_nothing(build_orchestrator, store, auth_session) -> None:
    upstream = Upstream(chunked(b"never"))
    orch = build_orchestrator(upstream)
    handle = AbortHandle("c1")
    handle.abort()
    assert await orch.run_generation(make_payload(), "append", handle, auth_session) is None
    assert upstream.requests == []
    assert orch.transcript("c1") == []


@pytest.mark.asyncio
async def test_anonymous_session_keeps_history_in_memory(build_orchestrator, store, anon_session) -> None:
    orch = build_orchestrator(Upstream(chunked(b"first"), chunked(b"second")))

    await orch.run_generation(make_payload(content="a"), "append", AbortHandle("c1"), anon_session)
    await orch.run_generation(
        make_payload(content="b", history=orch.transcript("c1")), "append", AbortHandle("c1"), anon_session
    )

    transcript = orch.transcript("c1")
    assert [m.content for m in transcript] == ["a", "first", "b", "second"]
    assert [m.sequence_number for m in transcript] == [0, 1, 2, 3]
    assert all(m.created_at is not None for m in transcript)
    assert store.calls == []


@pytest.mark.asyncio
async def test_local_model_reads_ndjson(build_orchestrator, auth_session) -> None:
    upstream = Upstream(
        chunked(
            b'{"message":{"role":"assistant","content":"Hel"}}\n{"message":{"content":"lo"}}\n',
            b'{"message":{"content":"!"},"done":true}\n',
        )
    )
    orch = build_orchestrator(upstream)
    payload = make_payload(provider="ollama", model="llama3")

    text = await orch.run_generation(payload, "append", AbortHandle("c1"), auth_session)

    assert text == "Hello!"
    assert str(upstream.requests[0].url) == f"{OLLAMA}/api/chat"
    body = upstream.body()
    assert body["model"] == "llama3"
    assert body["options"] == {"temperature": 0.5}


@pytest.mark.asyncio
async def test_local_model_404_mentions_ollama(build_orchestrator, auth_session) -> None:
    orch = build_orchestrator(Upstream(httpx.Response(404, json={"error": "model not found"})))
    with pytest.raises(ClassifiedHTTPError) as exc:
        await orch.run_generation(
            make_payload(provider="ollama", model="llama3"), "append", AbortHandle("c1"), auth_session
        )
    assert "Ollama" in exc.value.classification.user_message


@pytest.mark.asyncio
async def test_busy_chat_rejects_second_run(build_orchestrator, auth_session) -> None:
    orch = build_orchestrator(Upstream(chunked(b"x", hang=True)))
    sub = orch.events.subscribe("c1")
    handle = AbortHandle("c1")
    task = asyncio.create_task(orch.run_generation(make_payload(), "append", handle, auth_session))
    await asyncio.wait_for(sub.get(), timeout=2)

    with pytest.raises(GenerationStateError):
        await orch.run_generation(make_payload(), "append", AbortHandle("c1"), auth_session)

    handle.abort()
    assert await asyncio.wait_for(task, timeout=2) is None


def broken_error_body() -> httpx.Response:
    async def gen():
        yield b'{"mess'
        raise httpx.ReadError("connection reset by peer")

    return httpx.Response(500, content=gen())


@pytest.mark.asyncio
async def test_unreadable_error_body_fails_and_frees_the_chat(build_orchestrator, store, auth_session) -> None:
    history = make_history()
    orch = build_orchestrator(Upstream(broken_error_body, chunked(b"recovered")))

    with pytest.raises(TransportFailure):
        await orch.run_generation(make_payload(history=history), "append", AbortHandle("c1"), auth_session)

    assert orch.state("c1") is GenerationState.FAILED
    assert orch.transcript("c1") == history
    assert orch.inflight("c1") is None

    text = await orch.run_generation(make_payload(history=history), "append", AbortHandle("c1"), auth_session)
    assert text == "recovered"
    assert orch.state("c1") is GenerationState.IDLE


class ExplodingEvents(EventChannel):
    def publish(self, event) -> None:
        if isinstance(event, DeltaEvent):
            raise RuntimeError("subscriber bug")
        super().publish(event)


@pytest.mark.asyncio
async def test_unexpected_error_while_streaming_rolls_back(build_orchestrator, store, auth_session) -> None:
    events = ExplodingEvents()
    sub = events.subscribe("c1")
    orch = build_orchestrator(Upstream(chunked(b"half")), events=events)

    with pytest.raises(RuntimeError):
        await orch.run_generation(make_payload(), "append", AbortHandle("c1"), auth_session)

    assert orch.state("c1") is GenerationState.FAILED
    assert orch.transcript("c1") == []
    assert orch.inflight("c1") is None
    assert store.calls == []
    ended = sub.drain()[-1]
    assert isinstance(ended, GenerationEnded) and ended.outcome == "failed"


class FailingUpdateStore:
    def __init__(self, inner) -> None:
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def update_message(self, message_id, patch):
        raise RuntimeError("disk full")


@pytest.mark.asyncio
async def test_finalize_failure_leaves_no_rows_behind(build_orchestrator, store, auth_session) -> None:
    orch = build_orchestrator(Upstream(chunked(b"answer")))
    orch.store = FailingUpdateStore(store)

    with pytest.raises(RuntimeError):
        await orch.run_generation(make_payload(), "append", AbortHandle("c1"), auth_session)

    assert store.rows == {}
    assert store.calls[-1][0] == "delete_messages"
    assert orch.transcript("c1") == []
    assert orch.state("c1") is GenerationState.FAILED


@pytest.mark.asyncio
async def test_response_is_closed_on_success_and_on_error(build_orchestrator, auth_session) -> None:
    seen = []

    def track(factory):
        def make():
            response = factory()
            seen.append(response)
            return response

        return make

    orch = build_orchestrator(
        Upstream(track(chunked(b"fine")), track(lambda: httpx.Response(400, json={"message": "bad request"})))
    )
    await orch.run_generation(make_payload(), "append", AbortHandle("c1"), auth_session)
    with pytest.raises(ClassifiedHTTPError):
        await orch.run_generation(make_payload(), "append", AbortHandle("c1"), auth_session)

    assert len(seen) == 2
    assert all(r.is_closed for r in seen)
