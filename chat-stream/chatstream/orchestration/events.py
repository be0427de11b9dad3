from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Union


@dataclass(frozen=True)
class DeltaEvent:
    chat_id: str
    message_id: str
    delta_text: str
    text: str  # accumulated text after this delta


@dataclass(frozen=True)
class GenerationEnded:
    chat_id: str
    message_id: str
    outcome: str  # completed|aborted|failed
    text: Optional[str] = None


Event = Union[DeltaEvent, GenerationEnded]


class Subscription:
    def __init__(self, channel: "EventChannel", chat_id: Optional[str]) -> None:
        self._channel = channel
        self.chat_id = chat_id
        self.queue: asyncio.Queue[Event] = asyncio.Queue()

    def accepts(self, event: Event) -> bool:
        return self.chat_id is None or event.chat_id == self.chat_id

    async def get(self) -> Event:
        return await self.queue.get()

    def drain(self) -> List[Event]:
        items: List[Event] = []
        while not self.queue.empty():
            items.append(self.queue.get_nowait())
        return items

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[Event]:
        while True:
            yield await self.queue.get()


class EventChannel:
    """Fan-out of generation events; every subscriber sees events in publish order."""

    def __init__(self) -> None:
        self._subs: List[Subscription] = []

    def subscribe(self, chat_id: Optional[str] = None) -> Subscription:
        sub = Subscription(self, chat_id)
        self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subs:
            self._subs.remove(sub)

    def publish(self, event: Event) -> None:
        for sub in list(self._subs):
            if sub.accepts(event):
                sub.queue.put_nowait(event)
