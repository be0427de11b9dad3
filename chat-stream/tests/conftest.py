from __future__ import annotations

import os
import tempfile

# Point the app at throwaway storage before anything imports the settings
_TMP = tempfile.mkdtemp(prefix="chatstream-tests-")
os.environ["DB_URL"] = f"sqlite:///{_TMP}/app.db"
os.environ["IMAGE_STORAGE_DIR"] = os.path.join(_TMP, "images")
os.environ["APP_ENV"] = "dev"
for _name in (
    "AUTH_USER_ID",
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_BASE_URL",
    "AZURE_OPENAI_API_KEY",
    "USE_AZURE_OPENAI",
    "OLLAMA_URL",
    "AGGREGATOR_BASE_URL",
):
    os.environ.pop(_name, None)

from chatstream.core.settings import get_settings  # noqa: E402

get_settings.cache_clear()

import asyncio  # noqa: E402
import json  # noqa: E402
from typing import Any, Callable, Dict, List, Optional  # noqa: E402
from uuid import uuid4  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402

from chatstream.core.profile import AnonymousProfile, AuthenticatedProfile, ProviderKeys  # noqa: E402
from chatstream.core.settings import AppSettings  # noqa: E402
from chatstream.core.types import ChatMessage, ChatPayload, ChatSettings, ModelInfo  # noqa: E402
from chatstream.orchestration.generation import GenerationOrchestrator, Session  # noqa: E402

AGG = "http://agg.test"
OLLAMA = "http://ollama.test"


class FakeStore:
    """In-memory MessageStore that records every call."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.rows: Dict[str, ChatMessage] = {}

    def seed(self, messages: List[ChatMessage]) -> None:
        for m in messages:
            self.rows[m.id] = m

    def create_messages(self, messages: List[ChatMessage]) -> List[ChatMessage]:
        self.calls.append(("create_messages", [m.role for m in messages]))
        out = []
        for m in messages:
            saved = m.model_copy(update={"id": uuid4().hex})
            self.rows[saved.id] = saved
            out.append(saved)
        return out

    def update_message(self, message_id: str, patch: Dict[str, Any]) -> ChatMessage:
        self.calls.append(("update_message", message_id, dict(patch)))
        row = self.rows[message_id].model_copy(update=dict(patch))
        self.rows[message_id] = row
        return row

    def create_message_file_items(self, message_id: str, file_item_ids: List[str], user_id: str) -> int:
        self.calls.append(("create_message_file_items", message_id, list(file_item_ids), user_id))
        return len(file_item_ids)

    def delete_messages(self, message_ids: List[str]) -> int:
        self.calls.append(("delete_messages", list(message_ids)))
        removed = [self.rows.pop(i) for i in message_ids if i in self.rows]
        return len(removed)


class Upstream:
    """MockTransport handler answering with queued responses and keeping the requests it saw."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        if callable(nxt):
            return nxt()
        return nxt

    def body(self, i: int = -1) -> Dict[str, Any]:
        return json.loads(self.requests[i].content)


def chunked(*parts: bytes, hang: bool = False) -> Callable[[], httpx.Response]:
    """Response factory whose body arrives as the given network chunks."""

    def make() -> httpx.Response:
        async def gen():
            for p in parts:
                yield p
            if hang:
                await asyncio.Event().wait()

        return httpx.Response(200, content=gen())

    return make


def make_payload(
    chat_id: str = "c1",
    content: str = "Hi",
    history: Optional[List[ChatMessage]] = None,
    provider: str = "openai",
    model: str = "gpt-4o",
    **extra: Any,
) -> ChatPayload:
    return ChatPayload(
        chat_id=chat_id,
        message_content=content,
        chat_settings=ChatSettings(model=model),
        model=ModelInfo(model_id=model, provider=provider),
        chat_messages=list(history or []),
        **extra,
    )


def make_history(chat_id: str = "c1") -> List[ChatMessage]:
    return [
        ChatMessage(chat_id=chat_id, user_id="u1", role="user", content="Hello?", sequence_number=0),
        ChatMessage(chat_id=chat_id, user_id="u1", role="assistant", content="old answer", sequence_number=1),
    ]


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(aggregator_base_url=AGG, ollama_url=OLLAMA, _env_file=None)


@pytest.fixture
def auth_session(settings: AppSettings) -> Session:
    return Session(profile=AuthenticatedProfile(user_id="u1", keys=ProviderKeys()), settings=settings)


@pytest.fixture
def anon_session(settings: AppSettings) -> Session:
    return Session(profile=AnonymousProfile(), settings=settings)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def build_orchestrator(store: FakeStore):
    clients: List[httpx.AsyncClient] = []

    def build(upstream: Upstream, **kwargs: Any) -> GenerationOrchestrator:
        client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        clients.append(client)
        return GenerationOrchestrator(store, client=client, **kwargs)

    return build
