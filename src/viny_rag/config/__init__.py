"""Configuration management for the retrieval engine."""
from .engine import (
    EngineConfig,
    EmbeddingsConfig,
    CacheConfig,
    SearchConfig,
    LLMConfig,
    LoggingConfig,
    load_engine_config,
)
from .settings import Settings

__all__ = [
    "EngineConfig",
    "EmbeddingsConfig",
    "CacheConfig",
    "SearchConfig",
    "LLMConfig",
    "LoggingConfig",
    "Settings",
    "load_engine_config",
]
