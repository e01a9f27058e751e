from __future__ import annotations

from typing import Protocol

from stemflow.config.models import AppConfig, ConfigLoadRequest


class ConfigLoader(Protocol):
    """
    Loads effective runtime configuration.

    Precedence, lowest to highest: model defaults, the YAML file, then ``STEMFLOW__``
    environment variables (a ``.env`` file is read first when present).
    """

    async def load(self, request: ConfigLoadRequest = ConfigLoadRequest()) -> AppConfig:
        ...
