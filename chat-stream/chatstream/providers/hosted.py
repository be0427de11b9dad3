from __future__ import annotations

from typing import Any, Dict

from chatstream.core.profile import Profile
from chatstream.core.settings import AppSettings
from chatstream.core.types import ChatPayload, GenerationMode, ModelInfo
from chatstream.providers.base import ProviderAdapter, ProviderRequest, build_final_messages
from chatstream.providers.ollama import OllamaAdapter


class HostedAdapter:
    """Hosted providers are reached through this service's ``/api/chat/{provider}`` routes (raw text framing)."""

    def __init__(self, aggregator_base_url: str, model: ModelInfo) -> None:
        self.base_url = aggregator_base_url.rstrip("/")
        self.model = model

    def route_provider(self, profile: Profile) -> str:
        if self.model.provider == "openai" and profile.keys.use_azure_openai:
            return "azure"
        return self.model.provider

    def build_request(self, payload: ChatPayload, profile: Profile, mode: GenerationMode) -> ProviderRequest:
        provider = self.route_provider(profile)
        body: Dict[str, Any] = {
            "chatSettings": payload.chat_settings.wire(),
            "messages": build_final_messages(payload, mode),
            "customModelId": (self.model.hosted_id or "") if provider == "custom" else "",
        }
        return ProviderRequest(
            url=f"{self.base_url}/api/chat/{provider}", json=body, framing="raw", hosted=True
        )


def select_adapter(model: ModelInfo, settings: AppSettings) -> ProviderAdapter:
    if model.is_local:
        return OllamaAdapter(str(settings.ollama_url))
    return HostedAdapter(str(settings.aggregator_base_url), model)
