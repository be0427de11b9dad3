from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from chatstream.core.logging import configure_logging, request_logging_middleware
from chatstream.core.profile import resolve_profile
from chatstream.core.settings import get_settings
from chatstream.core.types import ChatMessage, ChatPayload, ChatSettings, GenerationMode, MessageImage, ModelInfo
from chatstream.orchestration.events import DeltaEvent, GenerationEnded
from chatstream.orchestration.generation import GenerationOrchestrator, Session
from chatstream.orchestration.supervisor import Aborted, Completed, Failed, GenerationSupervisor, Outcome
from chatstream.providers.upstream import PROVIDER_LABELS, open_relay
from chatstream.storage.images import LocalImageStore
from chatstream.storage.repo import SqlMessageStore
from chatstream.streaming.classifier import classify

settings = get_settings()
configure_logging(level=settings.log_level, fmt=settings.log_format)

app = FastAPI(title=settings.app_name, version="0.1.0")
log = logging.getLogger("app.api")

allow_origins = os.environ.get("CORS_ALLOWED_ORIGINS", "http://127.0.0.1:5173").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Retry-After"],
)

app.middleware("http")(request_logging_middleware)

STORE = SqlMessageStore()
ORCHESTRATOR = GenerationOrchestrator(STORE, image_store=LocalImageStore(settings.image_storage_dir))
SUPERVISOR = GenerationSupervisor(ORCHESTRATOR)


class ImageIn(BaseModel):
    name: str = "image"
    base64: str  # data URL


class GenerateRequest(BaseModel):
    message_content: str = ""
    chat_settings: ChatSettings
    model: ModelInfo
    images: List[ImageIn] = Field(default_factory=list)
    retrieved_file_items: List[str] = Field(default_factory=list)
    assistant_id: Optional[str] = None


def _session() -> Session:
    return Session(profile=resolve_profile(settings), settings=settings)


def _decode_image(img: ImageIn) -> MessageImage:
    data: Optional[bytes] = None
    encoded = img.base64.split(",", 1)[1] if "," in img.base64 else img.base64
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        log.warning({"event": "images.undecodable", "name": img.name})
    return MessageImage(name=img.name, data=data, base64=img.base64)


def _history(chat_id: str, session: Session):
    if session.profile.persistent:
        return STORE.list_messages(chat_id)
    return ORCHESTRATOR.transcript(chat_id)


def _outcome_body(outcome: Outcome) -> Dict[str, Any]:
    if isinstance(outcome, Completed):
        return {"status": "completed", "text": outcome.text}
    if isinstance(outcome, Aborted):
        return {"status": "aborted"}
    body: Dict[str, Any] = {"status": "failed", "message": outcome.message}
    if outcome.classification is not None:
        body["kind"] = outcome.classification.kind.value
        body["http_status"] = outcome.classification.http_status
        body["retry_after_seconds"] = outcome.retry_after_seconds
    return body


async def _sse_format(event: str, data: Dict[str, Any]) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n".encode("utf-8")


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}


@app.get("/config")
async def config() -> JSONResponse:
    profile = resolve_profile(settings)
    safe_config = {
        "app_name": settings.app_name,
        "env": settings.app_env,
        "db_dialect": settings.db_dialect,
        "log_level": settings.log_level,
        "session": {"persistent": profile.persistent, "display_name": profile.display_name},
        "providers": {
            "ollama": {"base_url": str(settings.ollama_url)},
            "aggregator": {"base_url": str(settings.aggregator_base_url)},
            "use_azure_openai": settings.use_azure_openai,
            "keys": settings.provider_key_flags(),
        },
        "request_timeout_sec": settings.request_timeout_sec,
    }
    return JSONResponse(content=safe_config)


@app.post("/api/chat/{provider}")
async def chat_relay(provider: str, request: Request):
    try:
        body = await request.json()
    except ValueError:
        c = classify(400, {"message": "Invalid request format. Request body must be JSON."})
        return JSONResponse(status_code=400, content=c.as_body())

    if provider not in PROVIDER_LABELS:
        c = classify(404, None, url=str(request.url.path))
        return JSONResponse(status_code=404, content=c.as_body())

    result = await open_relay(provider, body, resolve_profile(settings), settings)
    if result.classification is not None:
        c = result.classification
        headers = {"Retry-After": result.retry_after} if result.retry_after else None
        error = result.error if settings.expose_error_details else None
        return JSONResponse(status_code=c.http_status, content=c.as_body(error), headers=headers)
    return StreamingResponse(result.chunks, media_type="text/plain; charset=utf-8")


@app.post("/chats/{chat_id}/generate")
async def generate(chat_id: str, req: GenerateRequest, mode: GenerationMode = GenerationMode.APPEND):
    session = _session()
    payload = ChatPayload(
        chat_id=chat_id,
        message_content=req.message_content,
        chat_settings=req.chat_settings,
        model=req.model,
        images=[_decode_image(i) for i in req.images],
        retrieved_file_items=req.retrieved_file_items,
        assistant_id=req.assistant_id,
    )
    sub = ORCHESTRATOR.events.subscribe(chat_id)
    started = asyncio.Event()

    def history() -> List[ChatMessage]:
        # anything queued so far belongs to the turn this one superseded
        sub.drain()
        started.set()
        return _history(chat_id, session)

    async def event_iter():
        task = asyncio.create_task(SUPERVISOR.generate(payload, mode, session, history=history))
        try:
            while True:
                if task.done() and sub.queue.empty():
                    break
                try:
                    event = await asyncio.wait_for(sub.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                if not started.is_set():
                    continue
                if isinstance(event, DeltaEvent):
                    yield await _sse_format("delta", {"message_id": event.message_id, "text": event.delta_text})
                elif isinstance(event, GenerationEnded):
                    log.debug({"event": "sse.generation_ended", "chat_id": chat_id, "outcome": event.outcome})
                    break
            outcome = await task
            body = _outcome_body(outcome)
            yield await _sse_format("error" if isinstance(outcome, Failed) else "done", body)
        except (asyncio.CancelledError, GeneratorExit):
            # client went away mid-stream
            SUPERVISOR.cancel(chat_id)
            raise
        finally:
            sub.close()

    headers = {"Content-Type": "text/event-stream; charset=utf-8", "Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return StreamingResponse(event_iter(), headers=headers)


@app.post("/chats/{chat_id}/cancel")
async def cancel_generation(chat_id: str) -> JSONResponse:
    if not SUPERVISOR.cancel(chat_id):
        raise HTTPException(status_code=404, detail="no generation in flight for this chat")
    return JSONResponse(content={"status": "cancelling"})


@app.post("/chats/{chat_id}/retry")
async def retry_generation(chat_id: str) -> JSONResponse:
    outcome = await SUPERVISOR.retry(chat_id)
    status = 200
    if isinstance(outcome, Failed):
        status = outcome.classification.http_status if outcome.classification else 409
    return JSONResponse(status_code=status, content=_outcome_body(outcome))


@app.get("/chats/{chat_id}/messages")
async def get_chat_messages(chat_id: str) -> JSONResponse:
    messages = _history(chat_id, _session())
    return JSONResponse(content={"chat_id": chat_id, "messages": [m.model_dump(mode="json") for m in messages]})
