from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from chatstream.streaming.abort import AbortHandle

log = logging.getLogger("chatstream.cancellation")


class CancellationController:
    """Keeps at most one live AbortHandle per chat."""

    def __init__(self, settle_timeout: Optional[float] = 30.0) -> None:
        self.settle_timeout = settle_timeout
        self._live: Dict[str, AbortHandle] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def live(self, chat_id: str) -> Optional[AbortHandle]:
        return self._live.get(chat_id)

    async def begin(self, chat_id: str) -> AbortHandle:
        """Fire the chat's live handle (if any), wait until its generation unwound, issue a new one."""
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        async with lock:
            prev = self._live.get(chat_id)
            if prev is not None and not prev.settled:
                log.info({"event": "cancel.superseded", "chat_id": chat_id, "handle": prev.id})
                prev.abort()
                if self.settle_timeout is None:
                    await prev.wait_settled()
                else:
                    await asyncio.wait_for(prev.wait_settled(), timeout=self.settle_timeout)
            handle = AbortHandle(chat_id)
            self._live[chat_id] = handle
            return handle

    def finish(self, chat_id: str, handle: AbortHandle) -> None:
        handle.settle()
        if self._live.get(chat_id) is handle:
            del self._live[chat_id]

    def cancel(self, chat_id: str) -> bool:
        handle = self._live.get(chat_id)
        if handle is None or handle.aborted:
            return False
        log.info({"event": "cancel.requested", "chat_id": chat_id, "handle": handle.id})
        handle.abort()
        return True
