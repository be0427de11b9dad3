from __future__ import annotations

import uuid
from datetime import datetime, UTC
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from sqlalchemy.engine import Engine

from chatstream.core.types import ChatMessage
from chatstream.storage.database import session_scope
from chatstream.storage.models import Chat, Message, MessageFileItem

UPDATABLE_FIELDS = ("content", "image_paths", "model", "assistant_id")


class MessageStore(Protocol):
    def create_messages(self, messages: List[ChatMessage]) -> List[ChatMessage]:
        ...

    def update_message(self, message_id: str, patch: Dict[str, Any]) -> ChatMessage:
        ...

    def create_message_file_items(self, message_id: str, file_item_ids: List[str], user_id: str) -> int:
        ...

    def delete_messages(self, message_ids: List[str]) -> int:
        ...


def _to_chat_message(row: Message) -> ChatMessage:
    return ChatMessage(
        id=row.id,
        chat_id=row.chat_id,
        user_id=row.user_id,
        assistant_id=row.assistant_id,
        role=row.role,
        content=row.content or "",
        model=row.model or "",
        sequence_number=row.sequence_number,
        image_paths=list(row.image_paths or []),
        file_items=[fi.file_item_id for fi in row.file_items],
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def create_chat(
    user_id: str,
    name: Optional[str] = None,
    model: Optional[str] = None,
    prompt: Optional[str] = None,
    temperature: Optional[float] = None,
    chat_id: Optional[str] = None,
    engine: Engine | None = None,
) -> Chat:
    chat = Chat(
        id=chat_id or uuid.uuid4().hex,
        user_id=user_id,
        name=(name or "")[:100] or None,
        model=model,
        prompt=prompt,
        temperature=temperature,
    )
    with session_scope(engine) as s:
        s.add(chat)
    return chat


def get_chat(chat_id: str, engine: Engine | None = None) -> Optional[Chat]:
    with session_scope(engine) as s:
        return s.get(Chat, chat_id)


def create_messages(messages: Iterable[ChatMessage], engine: Engine | None = None) -> List[ChatMessage]:
    """Insert messages in order; the owning chat is created on first use."""
    now = datetime.now(UTC).replace(tzinfo=None)
    ids: List[str] = []
    with session_scope(engine) as s:
        for msg in messages:
            if s.get(Chat, msg.chat_id) is None:
                s.add(Chat(id=msg.chat_id, user_id=msg.user_id, name=msg.content[:100] or None, model=msg.model))
                s.flush()
            row = Message(
                id=uuid.uuid4().hex,
                chat_id=msg.chat_id,
                user_id=msg.user_id,
                assistant_id=msg.assistant_id,
                role=msg.role,
                content=msg.content,
                model=msg.model,
                sequence_number=msg.sequence_number,
                image_paths=list(msg.image_paths),
                created_at=now,
                updated_at=now,
            )
            s.add(row)
            ids.append(row.id)
    return [m for m in (get_message(i, engine) for i in ids) if m is not None]


def get_message(message_id: str, engine: Engine | None = None) -> Optional[ChatMessage]:
    with session_scope(engine) as s:
        row = s.get(Message, message_id)
        return _to_chat_message(row) if row else None


def update_message(message_id: str, patch: Dict[str, Any], engine: Engine | None = None) -> ChatMessage:
    with session_scope(engine) as s:
        row = s.get(Message, message_id)
        if row is None:
            raise KeyError(f"message not found: {message_id}")
        for key, value in patch.items():
            if key not in UPDATABLE_FIELDS:
                continue
            setattr(row, key, list(value) if key == "image_paths" else value)
        row.updated_at = datetime.now(UTC).replace(tzinfo=None)
        s.flush()
        return _to_chat_message(row)


def create_message_file_items(
    items: Iterable[Tuple[str, str, str]], engine: Engine | None = None
) -> int:
    """``items`` are (message_id, file_item_id, user_id) triples; returns how many were linked."""
    count = 0
    with session_scope(engine) as s:
        for message_id, file_item_id, user_id in items:
            s.add(MessageFileItem(message_id=message_id, file_item_id=file_item_id, user_id=user_id))
            count += 1
    return count


def delete_messages(message_ids: Iterable[str], engine: Engine | None = None) -> int:
    """Delete messages by id together with their file item links; unknown ids are skipped."""
    count = 0
    with session_scope(engine) as s:
        for message_id in message_ids:
            row = s.get(Message, message_id)
            if row is not None:
                s.delete(row)
                count += 1
    return count


def list_messages(chat_id: str, engine: Engine | None = None) -> List[ChatMessage]:
    with session_scope(engine) as s:
        rows = (
            s.query(Message)
            .filter(Message.chat_id == chat_id)
            .order_by(Message.sequence_number.asc())
            .all()
        )
        return [_to_chat_message(r) for r in rows]


class SqlMessageStore:
    """MessageStore backed by the SQLAlchemy models above."""

    def __init__(self, engine: Engine | None = None) -> None:
        self.engine = engine

    def create_messages(self, messages: List[ChatMessage]) -> List[ChatMessage]:
        return create_messages(messages, self.engine)

    def update_message(self, message_id: str, patch: Dict[str, Any]) -> ChatMessage:
        return update_message(message_id, patch, self.engine)

    def create_message_file_items(self, message_id: str, file_item_ids: List[str], user_id: str) -> int:
        return create_message_file_items(((message_id, fid, user_id) for fid in file_item_ids), self.engine)

    def list_messages(self, chat_id: str) -> List[ChatMessage]:
        return list_messages(chat_id, self.engine)

    def delete_messages(self, message_ids: List[str]) -> int:
        return delete_messages(message_ids, self.engine)
