from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional, Union

from pydantic import AnyUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_ignore_empty=True, extra="ignore", populate_by_name=True
    )

    app_env: str = "dev"
    app_name: str = "Chat Stream Hub"
    app_host: str = "127.0.0.1"
    app_port: int = 8000

    log_level: str = "INFO"
    log_format: str = "json"  # json | plain
    db_url: str = "sqlite:///data/app.db"

    # Local provider (NDJSON framing)
    ollama_url: Union[AnyUrl, str] = Field(default="http://localhost:11434", validation_alias="OLLAMA_URL")
    # Where hosted providers are reached from the client side (this service's /api/chat/* routes)
    aggregator_base_url: Union[AnyUrl, str] = Field(
        default="http://127.0.0.1:8000", validation_alias="AGGREGATOR_BASE_URL"
    )

    # Upstream endpoints used by the aggregator routes
    openai_base_url: str = Field(default="https://api.openai.com", validation_alias="OPENAI_BASE_URL")
    anthropic_base_url: str = Field(default="https://api.anthropic.com", validation_alias="ANTHROPIC_BASE_URL")
    anthropic_version: str = Field(default="2023-06-01", validation_alias="ANTHROPIC_VERSION")
    azure_api_version: str = Field(default="2023-12-01-preview", validation_alias="AZURE_OPENAI_API_VERSION")

    # Credentials (resolved once into a profile, never logged)
    openai_api_key: Optional[str] = Field(default=None, validation_alias="OPENAI_API_KEY")
    openai_organization_id: Optional[str] = Field(default=None, validation_alias="OPENAI_ORGANIZATION_ID")
    anthropic_api_key: Optional[str] = Field(default=None, validation_alias="ANTHROPIC_API_KEY")
    use_azure_openai: bool = Field(default=False, validation_alias="USE_AZURE_OPENAI")
    azure_openai_api_key: Optional[str] = Field(default=None, validation_alias="AZURE_OPENAI_API_KEY")
    azure_openai_endpoint: Optional[str] = Field(default=None, validation_alias="AZURE_OPENAI_ENDPOINT")
    azure_openai_45_turbo_id: Optional[str] = Field(default=None, validation_alias="AZURE_GPT_45_TURBO_NAME")

    # Present -> authenticated profile with persistent history; absent -> anonymous, in-memory
    auth_user_id: Optional[str] = Field(default=None, validation_alias="AUTH_USER_ID")
    auth_display_name: str = Field(default="User", validation_alias="AUTH_DISPLAY_NAME")

    request_timeout_sec: float = Field(default=60.0, validation_alias="REQUEST_TIMEOUT_SEC")
    image_storage_dir: str = Field(default="data/message_images", validation_alias="IMAGE_STORAGE_DIR")

    @property
    def db_dialect(self) -> str:
        return self.db_url.split(":", 1)[0] if ":" in self.db_url else self.db_url

    @property
    def expose_error_details(self) -> bool:
        return self.app_env.lower() in ("dev", "development")

    def provider_key_flags(self) -> Dict[str, bool]:
        return {
            "openai": bool(self.openai_api_key),
            "anthropic": bool(self.anthropic_api_key),
            "azure": bool(self.use_azure_openai and self.azure_openai_api_key),
        }


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()
