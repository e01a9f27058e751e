from __future__ import annotations

import asyncio
import logging

from stemflow.config import YamlConfigLoader
from stemflow.config.models import ConfigLoadRequest
from stemflow.llm.settings import SettingsCredentialStore
from stemflow.logging import init_logging


async def main() -> None:
    config = await YamlConfigLoader().load(ConfigLoadRequest(yaml_path="examples/config.yaml"))
    init_logging(config.logging)

    logger = logging.getLogger("smoke")
    credentials = SettingsCredentialStore(config.ai).load_api_keys()
    logger.info("Config loaded. global_goal=%s", config.app.global_goal)
    logger.info("Model credentials. provider=%s model=%s usable=%s", credentials.provider, credentials.model, credentials.usable)
    logger.info("Logging level=%s", config.logging.level)


if __name__ == "__main__":
    asyncio.run(main())
