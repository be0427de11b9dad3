from __future__ import annotations

from typing import Any, Dict

from chatstream.core.profile import Profile
from chatstream.core.types import ChatPayload, GenerationMode
from chatstream.providers.base import ProviderRequest, build_final_messages


class OllamaAdapter:
    """Local provider: ``POST {base}/api/chat``, answered as NDJSON ``{"message": {"content": ...}}`` lines."""

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    def build_request(self, payload: ChatPayload, profile: Profile, mode: GenerationMode) -> ProviderRequest:
        body: Dict[str, Any] = {
            "model": payload.chat_settings.model,
            "messages": build_final_messages(payload, mode, with_images=False),
            "options": {"temperature": payload.chat_settings.temperature},
        }
        return ProviderRequest(url=f"{self.base_url}/api/chat", json=body, framing="ndjson", hosted=False)
