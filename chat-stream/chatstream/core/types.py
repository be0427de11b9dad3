from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]


class GenerationMode(str, Enum):
    APPEND = "append"
    REGENERATE = "regenerate"


class ChatSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    model: str
    temperature: float = 0.5
    prompt: str = "You are a helpful AI assistant."
    context_length: int = Field(default=4096, alias="contextLength")
    include_profile_context: bool = Field(default=False, alias="includeProfileContext")
    embeddings_provider: Literal["openai", "local"] = Field(default="openai", alias="embeddingsProvider")

    def wire(self) -> Dict[str, Any]:
        # camelCase as the aggregator routes expect it
        return self.model_dump(by_alias=True)


class ModelInfo(BaseModel):
    model_id: str
    provider: str  # openai|anthropic|azure|custom|ollama
    hosted_id: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.provider == "ollama"


class ChatMessage(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    chat_id: str = ""
    user_id: str = ""
    assistant_id: Optional[str] = None
    role: Role
    content: str = ""
    model: str = ""
    sequence_number: int = 0
    image_paths: List[str] = Field(default_factory=list)
    file_items: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def with_content(self, content: str) -> "ChatMessage":
        return self.model_copy(update={"content": content})


class MessageImage(BaseModel):
    """Image attached to the user message of a turn; ``data`` is what gets uploaded."""

    name: str = "image"
    data: Optional[bytes] = None
    base64: Optional[str] = None  # data URL sent to the provider
    path: Optional[str] = None


class ChatPayload(BaseModel):
    chat_id: str
    message_content: str = ""
    chat_settings: ChatSettings
    model: ModelInfo
    chat_messages: List[ChatMessage] = Field(default_factory=list)
    images: List[MessageImage] = Field(default_factory=list)
    retrieved_file_items: List[str] = Field(default_factory=list)
    assistant_id: Optional[str] = None
