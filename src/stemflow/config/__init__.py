from stemflow.config.loader import YamlConfigLoader

__all__ = ["YamlConfigLoader"]
