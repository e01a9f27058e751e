"""Provider-neutral model calls: adapters, HTTP transport, streaming and retries."""

from stemflow.llm.settings import ApiCredentials, LLMSettings, SettingsCredentialStore
from stemflow.llm.transport import ProviderClient

__all__ = ["ApiCredentials", "LLMSettings", "ProviderClient", "SettingsCredentialStore"]
