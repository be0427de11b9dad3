"""One generation turn per chat: dispatch, stream, finalize, or roll back.

State machine per chat::

    IDLE -> DISPATCHING -> STREAMING -> FINALIZING -> IDLE
    DISPATCHING | STREAMING | FINALIZING -> FAILED -> IDLE   (reset)
    DISPATCHING | STREAMING -> ABORTED -> IDLE

The transcript (ordered message list) of a chat is only rewritten by this module while a
turn runs, and message content only through ``_apply_delta``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, UTC
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

import httpx

from chatstream.core.errors import (
    AbortedByUser,
    ClassifiedHTTPError,
    GenerationStateError,
    StreamAlreadyClaimed,
    TransportFailure,
)
from chatstream.core.metrics import CLASSIFIED_ERRORS, GENERATIONS
from chatstream.core.profile import Profile
from chatstream.core.settings import AppSettings
from chatstream.core.types import ChatMessage, ChatPayload, GenerationMode, ModelInfo
from chatstream.orchestration.events import DeltaEvent, EventChannel, GenerationEnded
from chatstream.providers.base import ProviderAdapter
from chatstream.providers.hosted import select_adapter
from chatstream.storage.images import ImageStore, upload_message_images
from chatstream.storage.repo import MessageStore
from chatstream.streaming.abort import AbortHandle
from chatstream.streaming.classifier import classify_response
from chatstream.streaming.reader import ByteStream, consume_stream

log = logging.getLogger("chatstream.generation")


class GenerationState(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    FAILED = "failed"
    ABORTED = "aborted"


TRANSITIONS: Dict[GenerationState, tuple] = {
    GenerationState.IDLE: (GenerationState.DISPATCHING,),
    GenerationState.DISPATCHING: (GenerationState.STREAMING, GenerationState.FAILED, GenerationState.ABORTED),
    GenerationState.STREAMING: (GenerationState.FINALIZING, GenerationState.FAILED, GenerationState.ABORTED),
    GenerationState.FINALIZING: (GenerationState.IDLE, GenerationState.FAILED),
    GenerationState.FAILED: (GenerationState.IDLE,),
    GenerationState.ABORTED: (GenerationState.IDLE,),
}


@dataclass
class InFlightGeneration:
    chat_id: str
    target_message_id: str
    mode: GenerationMode
    accumulated_text: str = ""
    first_token_received: bool = False
    tool_in_use: Optional[str] = None
    deltas: int = 0

    def append(self, delta: str) -> None:
        self.first_token_received = True
        self.tool_in_use = None
        self.accumulated_text += delta
        self.deltas += 1


@dataclass
class Session:
    """Explicit per-call context: who is generating and with which configuration."""

    profile: Profile
    settings: AppSettings


AdapterFactory = Callable[[ModelInfo, AppSettings], ProviderAdapter]


class GenerationOrchestrator:
    def __init__(
        self,
        store: MessageStore,
        *,
        image_store: Optional[ImageStore] = None,
        events: Optional[EventChannel] = None,
        adapter_factory: AdapterFactory = select_adapter,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.store = store
        self.image_store = image_store
        self.events = events or EventChannel()
        self.adapter_factory = adapter_factory
        self._client = client
        self._states: Dict[str, GenerationState] = {}
        self._transcripts: Dict[str, List[ChatMessage]] = {}
        self._inflight: Dict[str, InFlightGeneration] = {}

    # -- read side -------------------------------------------------------

    def state(self, chat_id: str) -> GenerationState:
        return self._states.get(chat_id, GenerationState.IDLE)

    def transcript(self, chat_id: str) -> List[ChatMessage]:
        return list(self._transcripts.get(chat_id, []))

    def inflight(self, chat_id: str) -> Optional[InFlightGeneration]:
        return self._inflight.get(chat_id)

    def reset(self, chat_id: str) -> None:
        if self.state(chat_id) in (GenerationState.FAILED, GenerationState.ABORTED):
            self._set_state(chat_id, GenerationState.IDLE)
        self._inflight.pop(chat_id, None)

    # -- state ----------------------------------------------------------------

    def _set_state(self, chat_id: str, new: GenerationState) -> None:
        cur = self.state(chat_id)
        if new not in TRANSITIONS[cur]:
            raise GenerationStateError(f"chat {chat_id}: cannot go from {cur.value} to {new.value}")
        self._states[chat_id] = new
        log.debug({"event": "generation.state", "chat_id": chat_id, "from": cur.value, "to": new.value})

    def _begin(self, chat_id: str) -> None:
        cur = self.state(chat_id)
        if cur is GenerationState.FAILED:
            self._set_state(chat_id, GenerationState.IDLE)
        elif cur is not GenerationState.IDLE:
            raise GenerationStateError(f"chat {chat_id} already has a generation in state {cur.value}")
        self._set_state(chat_id, GenerationState.DISPATCHING)

    # -- transcript -----------------------------------------------------------

    def _place_optimistic(
        self, payload: ChatPayload, mode: GenerationMode, profile: Profile, before: List[ChatMessage]
    ) -> InFlightGeneration:
        chat_id = payload.chat_id
        if mode is GenerationMode.REGENERATE:
            if not before or before[-1].role != "assistant":
                raise GenerationStateError("Nothing to regenerate: the last message is not an assistant message")
            cleared = before[-1].with_content("")
            self._transcripts[chat_id] = before[:-1] + [cleared]
            return InFlightGeneration(chat_id, cleared.id, mode)

        if not payload.message_content:
            raise GenerationStateError("Message content not found")
        seq = len(before)
        user = ChatMessage(
            chat_id=chat_id,
            user_id=profile.user_id,
            role="user",
            content=payload.message_content,
            model=payload.chat_settings.model,
            sequence_number=seq,
            image_paths=[img.base64 for img in payload.images if img.base64],
        )
        assistant = ChatMessage(
            chat_id=chat_id,
            user_id=profile.user_id,
            assistant_id=payload.assistant_id,
            role="assistant",
            content="",
            model=payload.chat_settings.model,
            sequence_number=seq + 1,
        )
        self._transcripts[chat_id] = before + [user, assistant]
        return InFlightGeneration(chat_id, assistant.id, mode)

    def _apply_delta(self, gen: InFlightGeneration, delta: str) -> None:
        gen.append(delta)
        messages = self._transcripts[gen.chat_id]
        for i in range(len(messages) - 1, -1, -1):
            if messages[i].id == gen.target_message_id:
                messages[i] = messages[i].with_content(gen.accumulated_text)
                break
        self.events.publish(DeltaEvent(gen.chat_id, gen.target_message_id, delta, gen.accumulated_text))

    def _rollback(self, chat_id: str, before: List[ChatMessage]) -> None:
        self._transcripts[chat_id] = before
        self._inflight.pop(chat_id, None)

    def _fail(self, gen: InFlightGeneration, before: List[ChatMessage]) -> None:
        self._rollback(gen.chat_id, before)
        self._set_state(gen.chat_id, GenerationState.FAILED)
        GENERATIONS.labels("failed").inc()
        self.events.publish(GenerationEnded(gen.chat_id, gen.target_message_id, "failed"))

    def _abort(self, gen: InFlightGeneration, before: List[ChatMessage]) -> None:
        log.info({"event": "generation.aborted", "chat_id": gen.chat_id, "deltas": gen.deltas})
        self._rollback(gen.chat_id, before)
        self._set_state(gen.chat_id, GenerationState.ABORTED)
        self._set_state(gen.chat_id, GenerationState.IDLE)
        GENERATIONS.labels("aborted").inc()
        self.events.publish(GenerationEnded(gen.chat_id, gen.target_message_id, "aborted"))

    # -- finalizing -----------------------------------------------------------

    def _finalize(self, payload: ChatPayload, gen: InFlightGeneration, profile: Profile) -> None:
        chat_id = payload.chat_id
        messages = self._transcripts[chat_id]
        text = gen.accumulated_text

        if not profile.persistent:
            now = datetime.now(UTC)
            if gen.mode is GenerationMode.APPEND:
                messages[-2] = messages[-2].model_copy(update={"created_at": now, "updated_at": now})
                messages[-1] = messages[-1].model_copy(
                    update={
                        "content": text,
                        "file_items": list(payload.retrieved_file_items),
                        "created_at": now,
                        "updated_at": now,
                    }
                )
            else:
                messages[-1] = messages[-1].model_copy(update={"content": text, "updated_at": now})
            return

        if gen.mode is GenerationMode.REGENERATE:
            messages[-1] = self.store.update_message(messages[-1].id, {"content": text})
            return

        user_tmp, assistant_tmp = messages[-2], messages[-1]
        created = self.store.create_messages(
            [user_tmp.model_copy(update={"image_paths": []}), assistant_tmp.with_content(text)]
        )
        try:
            paths: List[str] = []
            if self.image_store is not None and payload.images:
                paths = upload_message_images(self.image_store, payload.images, profile.user_id, chat_id, created[0].id)
            user_msg = self.store.update_message(created[0].id, {"image_paths": paths})
            if payload.retrieved_file_items:
                self.store.create_message_file_items(created[1].id, list(payload.retrieved_file_items), profile.user_id)
        except Exception:
            self.store.delete_messages([m.id for m in created])
            raise
        assistant_msg = created[1].model_copy(update={"file_items": list(payload.retrieved_file_items)})
        messages[-2:] = [user_msg, assistant_msg]

    # -- the turn -------------------------------------------------------------

    async def run_generation(
        self,
        payload: ChatPayload,
        mode: Union[GenerationMode, str],
        abort_handle: AbortHandle,
        session: Session,
    ) -> Optional[str]:
        """Run one turn. Returns the final text, or None when the turn was aborted.

        Raises ClassifiedHTTPError for a non-2xx answer, TransportFailure for network errors,
        StreamAlreadyClaimed if the body was already being read. On every error and on abort
        the transcript is back to what it was before the call.
        """
        mode = GenerationMode(mode)
        chat_id = payload.chat_id
        before = list(payload.chat_messages)
        self._begin(chat_id)
        try:
            gen = self._place_optimistic(payload, mode, session.profile, before)
            adapter = self.adapter_factory(payload.model, session.settings)
            request = adapter.build_request(payload, session.profile, mode)
        except Exception:
            self._transcripts[chat_id] = before
            self._states[chat_id] = GenerationState.IDLE
            raise
        self._inflight[chat_id] = gen

        log.info(
            {"event": "generation.dispatch", "chat_id": chat_id, "mode": mode.value,
             "provider": payload.model.provider, "url": request.url, "framing": request.framing}
        )
        client = self._client or httpx.AsyncClient(timeout=session.settings.request_timeout_sec)
        source: Optional[ByteStream] = None
        try:
            outbound = client.build_request("POST", request.url, json=request.json, headers=request.headers)
            try:
                response = await abort_handle.guard(client.send(outbound, stream=True))
            except AbortedByUser:
                self._abort(gen, before)
                return None
            except httpx.RequestError as e:
                log.error({"event": "generation.transport_failure", "chat_id": chat_id, "error": str(e)})
                self._fail(gen, before)
                raise TransportFailure(f"Failed to reach {request.url}: {e}") from e
            source = ByteStream.from_response(response)

            if not response.is_success:
                try:
                    classification = await classify_response(response, url=request.url, hosted=request.hosted)
                except httpx.HTTPError as e:
                    log.error({"event": "generation.transport_failure", "chat_id": chat_id, "error": str(e)})
                    self._fail(gen, before)
                    raise TransportFailure(f"Failed to read error body from {request.url}: {e}") from e
                CLASSIFIED_ERRORS.labels(classification.kind.value).inc()
                log.warning(
                    {"event": "generation.http_error", "chat_id": chat_id, "status": response.status_code,
                     "kind": classification.kind.value, "message": classification.user_message}
                )
                self._fail(gen, before)
                raise ClassifiedHTTPError(classification)

            self._set_state(chat_id, GenerationState.STREAMING)
            try:
                await consume_stream(
                    source,
                    lambda delta: self._apply_delta(gen, delta),
                    abort_handle,
                    framing=request.framing,
                )
            except (TransportFailure, StreamAlreadyClaimed):
                self._fail(gen, before)
                raise

            if abort_handle.aborted:
                self._abort(gen, before)
                return None

            self._set_state(chat_id, GenerationState.FINALIZING)
            try:
                self._finalize(payload, gen, session.profile)
            except Exception:
                log.exception({"event": "generation.finalize_failed", "chat_id": chat_id})
                self._fail(gen, before)
                raise
            self._set_state(chat_id, GenerationState.IDLE)
            self._inflight.pop(chat_id, None)
            GENERATIONS.labels("completed").inc()
            log.info(
                {"event": "generation.completed", "chat_id": chat_id, "deltas": gen.deltas,
                 "chars": len(gen.accumulated_text)}
            )
            self.events.publish(
                GenerationEnded(chat_id, self._transcripts[chat_id][-1].id, "completed", gen.accumulated_text)
            )
            return gen.accumulated_text
        except BaseException as e:
            if self._inflight.get(chat_id) is gen:
                self._discard(gen, before, abort_handle, e)
            raise
        finally:
            if source is not None:
                await source.aclose()
            if self._client is None:
                await client.aclose()

    def _discard(
        self, gen: InFlightGeneration, before: List[ChatMessage], abort_handle: AbortHandle, error: BaseException
    ) -> None:
        """Roll back a turn that ended with an error none of the handlers above expected."""
        if abort_handle.aborted and self.state(gen.chat_id) in (GenerationState.DISPATCHING, GenerationState.STREAMING):
            self._abort(gen, before)
            return
        log.error({"event": "generation.unexpected_error", "chat_id": gen.chat_id, "error": repr(error)})
        self._fail(gen, before)
