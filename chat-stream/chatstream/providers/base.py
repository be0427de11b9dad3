from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

from chatstream.core.profile import Profile
from chatstream.core.types import ChatPayload, GenerationMode
from chatstream.streaming.reader import Framing


@dataclass
class ProviderRequest:
    url: str
    json: Dict[str, Any]
    framing: Framing
    hosted: bool
    headers: Dict[str, str] = field(default_factory=dict)


class ProviderAdapter(Protocol):
    def build_request(self, payload: ChatPayload, profile: Profile, mode: GenerationMode) -> ProviderRequest:
        """Turn one chat turn into the outbound request; the core never looks inside ``json``."""
        ...


def build_final_messages(
    payload: ChatPayload, mode: GenerationMode, *, with_images: bool = True
) -> List[Dict[str, Any]]:
    """System prompt, prior history, then the turn's user message.

    When regenerating, the history already ends with the assistant message being
    replaced; it is dropped and the user message before it is what gets answered.
    """
    messages: List[Dict[str, Any]] = [{"role": "system", "content": payload.chat_settings.prompt}]
    history = payload.chat_messages
    if mode is GenerationMode.REGENERATE:
        history = history[:-1]
    for msg in history:
        if msg.role == "system":
            continue
        messages.append({"role": msg.role, "content": msg.content})
    if mode is GenerationMode.APPEND:
        images = [img.base64 for img in payload.images if img.base64] if with_images else []
        if images:
            content: Any = [{"type": "text", "text": payload.message_content}] + [
                {"type": "image_url", "image_url": {"url": url}} for url in images
            ]
        else:
            content = payload.message_content
        messages.append({"role": "user", "content": content})
    return messages
