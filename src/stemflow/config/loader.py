"""
YAML configuration for stemflow.

The file is merged over the `AppConfig` defaults (`app`, `logging`, `ai`, `search`,
`generation`), then `STEMFLOW__SECTION__KEY` variables replace string values. Provider and
Exa API keys are normally supplied this way, e.g. `STEMFLOW__AI__OPENAI_API_KEY` or
`STEMFLOW__SEARCH__EXA_API_KEY`, with a `.env` file loaded first when present.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Sequence

import yaml
from dotenv import load_dotenv

from stemflow.config.models import AppConfig, ConfigLoadRequest

logger = logging.getLogger(__name__)


def _deep_merge_dicts(base: MutableMapping[str, Any], override: Mapping[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), Mapping):
            _deep_merge_dicts(base[key], value)  # type: ignore[index]
            continue
        base[key] = value


def _read_yaml_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Top-level YAML must be a mapping, got: {type(data).__name__}")
    return data


def _env_var_name_to_segments(env_var_name: str, prefix: str) -> Sequence[str]:
    parts = [part for part in env_var_name[len(prefix) :].split("__") if part]
    if not parts:
        raise ValueError(f"Invalid environment variable override name: {env_var_name}")
    return [part.lower() for part in parts]


def _resolve_parent(config: MutableMapping[str, Any], path: Sequence[str]) -> MutableMapping[str, Any]:
    dotted = ".".join(path)
    current: MutableMapping[str, Any] = config
    for segment in path[:-1]:
        if segment not in current:
            raise KeyError(f"Unknown configuration key path: {dotted}")
        current = current[segment]
        if not isinstance(current, dict):
            raise TypeError(f"Configuration key path does not point to a mapping: {dotted}")
    return current


def _apply_env_overrides(config: MutableMapping[str, Any], env_prefix: str) -> int:
    """Apply ``PREFIX__SECTION__KEY`` variables; only string-valued keys may be overridden."""
    applied = 0
    for name in sorted(os.environ):
        if not name.startswith(env_prefix):
            continue

        segments = _env_var_name_to_segments(name, env_prefix)
        parent = _resolve_parent(config, segments)
        leaf = segments[-1]
        dotted = ".".join(segments)

        if leaf not in parent:
            raise KeyError(f"Unknown configuration key path: {dotted}")
        if not isinstance(parent[leaf], str):
            raise TypeError(
                f"Environment variable overrides are only allowed for string values. "
                f"Key '{dotted}' is {type(parent[leaf]).__name__}."
            )
        parent[leaf] = os.environ[name]
        applied += 1
    return applied


class YamlConfigLoader:
    """`ConfigLoader` backed by a YAML file; unknown keys fail validation instead of being ignored."""

    async def load(self, request: ConfigLoadRequest = ConfigLoadRequest()) -> AppConfig:
        config: dict[str, Any] = copy.deepcopy(AppConfig().model_dump(mode="python"))
        _deep_merge_dicts(config, _read_yaml_config(Path(request.yaml_path)))

        if request.dotenv_path is not None and Path(request.dotenv_path).exists():
            load_dotenv(dotenv_path=request.dotenv_path, override=False)

        applied = _apply_env_overrides(config, request.env_prefix)
        logger.debug("Configuration loaded. yaml_path=%s env_overrides=%s", request.yaml_path, applied)
        return AppConfig.model_validate(config)
