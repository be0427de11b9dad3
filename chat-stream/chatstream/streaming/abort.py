from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, TypeVar
from uuid import uuid4

from chatstream.core.errors import AbortedByUser

T = TypeVar("T")

log = logging.getLogger("chatstream.abort")

Observer = Callable[[], None]


class AbortHandle:
    """Cooperative cancellation signal shared by the request and the stream reader.

    ``abort()`` fires every registered observer exactly once, synchronously. Observers
    registered after the handle fired are invoked immediately. ``settle()`` is called by
    the owner of the generation once it has fully unwound, so whoever aborted can wait
    for that with ``wait_settled()``.
    """

    def __init__(self, chat_id: str = "") -> None:
        self.id = uuid4().hex
        self.chat_id = chat_id
        self._aborted = asyncio.Event()
        self._settled = asyncio.Event()
        self._observers: List[Observer] = []

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    @property
    def settled(self) -> bool:
        return self._settled.is_set()

    def add_observer(self, observer: Observer) -> Observer:
        if self.aborted:
            observer()
        else:
            self._observers.append(observer)
        return observer

    def remove_observer(self, observer: Observer) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            pass

    def abort(self) -> None:
        if self.aborted:
            return
        self._aborted.set()
        observers, self._observers = self._observers, []
        for observer in observers:
            try:
                observer()
            except Exception:  # noqa: BLE001
                log.exception({"event": "abort.observer_failed", "chat_id": self.chat_id})

    def settle(self) -> None:
        self._settled.set()

    async def wait_settled(self) -> None:
        await self._settled.wait()

    async def guard(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` as a task that the handle cancels when it fires.

        Raises AbortedByUser instead of CancelledError when the handle caused the cancel.
        """
        if self.aborted:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise AbortedByUser()
        task: asyncio.Future[T] = asyncio.ensure_future(aw)
        observer = self.add_observer(task.cancel)
        try:
            return await task
        except asyncio.CancelledError:
            if self.aborted:
                raise AbortedByUser() from None
            task.cancel()
            raise
        finally:
            self.remove_observer(observer)

