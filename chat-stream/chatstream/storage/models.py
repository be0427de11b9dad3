from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Chat(Base):
    __tablename__ = "chats"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(256), nullable=True)
    model = Column(String(128), nullable=True)
    prompt = Column(Text, nullable=True)
    temperature = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    messages = relationship("Message", back_populates="chat", cascade="all, delete-orphan")


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True)
    chat_id = Column(String(64), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    assistant_id = Column(String(64), nullable=True)
    role = Column(String(32), nullable=False)  # system|user|assistant
    content = Column(Text, nullable=False, default="")
    model = Column(String(128), nullable=False, default="")
    sequence_number = Column(Integer, nullable=False)
    image_paths = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    chat = relationship("Chat", back_populates="messages")
    file_items = relationship("MessageFileItem", back_populates="message", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("role in ('system','user','assistant')", name="ck_messages_role"),
        UniqueConstraint("chat_id", "sequence_number", name="uq_messages_chat_sequence"),
    )


class MessageFileItem(Base):
    __tablename__ = "message_file_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(64), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    file_item_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    message = relationship("Message", back_populates="file_items")
