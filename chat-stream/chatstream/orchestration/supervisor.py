from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

from chatstream.core.errors import ChatStreamError, ClassifiedHTTPError, GenerationStateError
from chatstream.core.types import ChatMessage, ChatPayload, GenerationMode
from chatstream.orchestration.generation import GenerationOrchestrator, Session
from chatstream.streaming.abort import AbortHandle
from chatstream.streaming.cancellation import CancellationController
from chatstream.streaming.classifier import ErrorClassification

log = logging.getLogger("chatstream.supervisor")

HistorySource = Callable[[], List[ChatMessage]]


@dataclass(frozen=True)
class Completed:
    chat_id: str
    text: str


@dataclass(frozen=True)
class Aborted:
    chat_id: str


@dataclass(frozen=True)
class Failed:
    chat_id: str
    message: str
    classification: Optional[ErrorClassification] = None

    @property
    def retry_after_seconds(self) -> Optional[int]:
        return self.classification.retry_after_seconds if self.classification else None


Outcome = Union[Completed, Aborted, Failed]


class GenerationSupervisor:
    """Turns orchestrator exceptions into result values and owns the per-chat abort handles.

    A new generate() on a chat aborts the one in flight and waits for it to unwind first,
    so at most one turn per chat touches its transcript.
    """

    def __init__(self, orchestrator: GenerationOrchestrator, controller: Optional[CancellationController] = None):
        self.orchestrator = orchestrator
        self.controller = controller or CancellationController()
        self._last: Dict[str, Tuple[ChatPayload, GenerationMode, Session, Optional[HistorySource]]] = {}

    async def generate(
        self,
        payload: ChatPayload,
        mode: Union[GenerationMode, str],
        session: Session,
        history: Optional[HistorySource] = None,
    ) -> Outcome:
        """Run one turn and report how it ended.

        ``history`` is read only after the chat's previous turn has unwound, so text from a
        superseded turn never reaches the new request.
        """
        mode = GenerationMode(mode)
        chat_id = payload.chat_id
        self._last[chat_id] = (payload, mode, session, history)
        handle: Optional[AbortHandle] = None
        try:
            handle = await self.controller.begin(chat_id)
            if history is not None:
                payload = payload.model_copy(update={"chat_messages": list(history())})
            text = await self.orchestrator.run_generation(payload, mode, handle, session)
        except ClassifiedHTTPError as e:
            self.orchestrator.reset(chat_id)
            return Failed(chat_id, e.classification.user_message, e.classification)
        except GenerationStateError as e:
            return Failed(chat_id, str(e))
        except ChatStreamError as e:
            self.orchestrator.reset(chat_id)
            return Failed(chat_id, str(e))
        except asyncio.TimeoutError:
            log.error({"event": "generation.settle_timeout", "chat_id": chat_id})
            return Failed(chat_id, "The previous generation for this chat is still stopping, try again")
        except Exception as e:
            log.exception({"event": "generation.crashed", "chat_id": chat_id})
            self.orchestrator.reset(chat_id)
            return Failed(chat_id, str(e) or type(e).__name__)
        finally:
            if handle is not None:
                self.controller.finish(chat_id, handle)
        if text is None:
            return Aborted(chat_id)
        return Completed(chat_id, text)

    async def retry(self, chat_id: str) -> Outcome:
        """Re-run the last request made for this chat with the chat's current transcript."""
        last = self._last.get(chat_id)
        if last is None:
            return Failed(chat_id, "Nothing to retry for this chat")
        payload, mode, session, history = last
        log.info({"event": "generation.retry", "chat_id": chat_id, "mode": mode.value})
        if history is not None:
            return await self.generate(payload, mode, session, history=history)
        if session.profile.persistent:
            messages = payload.chat_messages
        else:
            messages = self.orchestrator.transcript(chat_id) or payload.chat_messages
        return await self.generate(payload.model_copy(update={"chat_messages": list(messages)}), mode, session)

    def cancel(self, chat_id: str) -> bool:
        return self.controller.cancel(chat_id)
