from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

from stemflow.core.models import Provider

DEFAULT_MODELS: dict[str, str] = {
    "openai": "gpt-4o",
    "openai-compatible": "gpt-4o",
    "anthropic": "claude-3-5-sonnet-20241022",
    "gemini": "gemini-2.5-pro",
}


class LLMSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Empty string means "infer from whichever key is configured"
    provider: Literal["", "openai", "openai-compatible", "anthropic", "gemini"] = ""

    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_model: str = ""

    anthropic_api_key: str = ""
    anthropic_base_url: str = ""
    anthropic_model: str = ""

    gemini_api_key: str = ""
    gemini_base_url: str = ""
    gemini_model: str = ""

    stream: bool = False
    timeout_seconds: float = 120
    max_output_tokens: int = 4096


@dataclass(frozen=True, slots=True)
class ApiCredentials:
    provider: Optional[Provider]
    key: str
    base_url: Optional[str] = None
    model: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.provider is not None and bool(self.key.strip())


class SettingsCredentialStore:
    """Resolves the active provider and its key from LLMSettings."""

    def __init__(self, settings: LLMSettings) -> None:
        self._settings = settings

    def load_api_keys(self) -> ApiCredentials:
        settings = self._settings
        provider = settings.provider or self._infer_provider()
        if not provider:
            return ApiCredentials(provider=None, key="")

        if provider in ("openai", "openai-compatible"):
            key, base_url, model = settings.openai_api_key, settings.openai_base_url, settings.openai_model
        elif provider == "anthropic":
            key, base_url, model = settings.anthropic_api_key, settings.anthropic_base_url, settings.anthropic_model
        else:
            key, base_url, model = settings.gemini_api_key, settings.gemini_base_url, settings.gemini_model

        return ApiCredentials(
            provider=provider,
            key=key,
            base_url=base_url or None,
            model=model or DEFAULT_MODELS[provider],
        )

    def _infer_provider(self) -> Optional[Provider]:
        if self._settings.openai_api_key:
            return "openai"
        if self._settings.gemini_api_key:
            return "gemini"
        if self._settings.anthropic_api_key:
            return "anthropic"
        return None
