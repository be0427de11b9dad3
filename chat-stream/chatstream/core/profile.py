from __future__ import annotations

from typing import Dict, Optional, Union

from pydantic import BaseModel, Field

from chatstream.core.errors import MissingApiKey
from chatstream.core.settings import AppSettings


class ProviderKeys(BaseModel):
    openai_api_key: Optional[str] = None
    openai_organization_id: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    use_azure_openai: bool = False
    azure_openai_api_key: Optional[str] = None
    azure_openai_endpoint: Optional[str] = None
    azure_openai_45_turbo_id: Optional[str] = None

    def key_for(self, provider: str) -> Optional[str]:
        return {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "azure": self.azure_openai_api_key,
        }.get(provider)

    def presence(self) -> Dict[str, bool]:
        return {p: bool(self.key_for(p)) for p in ("openai", "anthropic", "azure")}


class AuthenticatedProfile(BaseModel):
    user_id: str
    display_name: str = "User"
    keys: ProviderKeys = Field(default_factory=ProviderKeys)

    @property
    def persistent(self) -> bool:
        return True


class AnonymousProfile(BaseModel):
    user_id: str = "anonymous"
    display_name: str = "Guest"
    keys: ProviderKeys = Field(default_factory=ProviderKeys)

    @property
    def persistent(self) -> bool:
        # history lives only in the in-memory transcript
        return False


Profile = Union[AuthenticatedProfile, AnonymousProfile]


def resolve_profile(settings: AppSettings) -> Profile:
    """Pick the profile variant once per session; keys always come from settings/env."""
    keys = ProviderKeys(
        openai_api_key=settings.openai_api_key,
        openai_organization_id=settings.openai_organization_id,
        anthropic_api_key=settings.anthropic_api_key,
        use_azure_openai=settings.use_azure_openai,
        azure_openai_api_key=settings.azure_openai_api_key,
        azure_openai_endpoint=settings.azure_openai_endpoint,
        azure_openai_45_turbo_id=settings.azure_openai_45_turbo_id,
    )
    if settings.auth_user_id:
        return AuthenticatedProfile(
            user_id=settings.auth_user_id, display_name=settings.auth_display_name, keys=keys
        )
    return AnonymousProfile(keys=keys)


def check_api_key(api_key: Optional[str], provider_label: str) -> None:
    if api_key is None or api_key == "":
        raise MissingApiKey(provider_label)
