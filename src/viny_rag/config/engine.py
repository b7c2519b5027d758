"""Engine configuration loading and validation.

Loads YAML configuration for the retrieval engine with full validation.
"""
from __future__ import annotations
import os
import yaml
from pathlib import Path
from typing import Literal, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from .settings import Settings

DEFAULT_LLM_BASE_URLS = {
    "ollama": "http://localhost:11434",
    "openai": "https://api.openai.com/v1",
    "groq": "https://api.groq.com/openai/v1",
    "anthropic": "https://api.anthropic.com/v1",
}


class EmbeddingsConfig(BaseModel):
    """Embedding model and chunking configuration."""
    provider: Literal["ollama", "openai", "local"] = Field("ollama", description="Embedding backend")
    model_name: str = Field("all-minilm:latest", description="Embedding model name")
    dimension: int = Field(384, description="Embedding dimension")
    base_url: str = Field("http://localhost:11434", description="Embedding API URL")
    api_key: str = Field("", description="API key for OpenAI-compatible endpoints")
    batch_size: int = Field(8, ge=1, le=256, description="Documents per embedding batch")
    workers: int = Field(1, ge=0, le=16, description="Worker count (0 = embed inline)")
    max_chunk_length: int = Field(512, ge=32, description="Max characters per chunk")
    chunk_overlap: int = Field(128, ge=0, description="Overlap carried into split sub-chunks")
    min_chunk_size: int = Field(100, ge=0, description="Soft paragraph boundary threshold")
    preserve_markdown: bool = Field(True, description="Split on headings and fences")
    preserve_code_blocks: bool = Field(True, description="Keep fenced code atomic")

    @field_validator("dimension")
    @classmethod
    def validate_dimension(cls, v: int) -> int:
        """Validate embedding dimension is reasonable."""
        if v < 16 or v > 4096:
            raise ValueError("dimension must be between 16 and 4096")
        return v

    @model_validator(mode="after")
    def validate_overlap(self) -> EmbeddingsConfig:
        if self.chunk_overlap >= self.max_chunk_length:
            raise ValueError("chunk_overlap must be smaller than max_chunk_length")
        return self


class CacheConfig(BaseModel):
    """Embedding cache configuration."""
    backend: Literal["sqlite", "postgres", "none"] = Field("sqlite", description="Cache backend")
    use_cache: bool = Field(True, description="Use the cache at all")
    path: str = Field("~/.viny/embeddings.sqlite3", description="SQLite database file")
    dsn: str = Field("", description="Postgres connection string")
    query_cache_ttl_hours: int = Field(24, ge=1, description="Query vector lifespan")
    sweep_interval_seconds: int = Field(3600, ge=1, description="Expired-query sweep period")

    @model_validator(mode="after")
    def validate_backend(self) -> CacheConfig:
        """Validate backend-specific configuration."""
        if self.use_cache and self.backend == "postgres" and not self.dsn.startswith("postgresql://"):
            raise ValueError("cache.dsn must start with 'postgresql://' when backend=postgres")
        return self


class SearchConfig(BaseModel):
    """Lexical/semantic scoring parameters."""
    lexical_threshold: float = Field(0.3, ge=0.0, le=1.0)
    lexical_distance: int = Field(100, ge=0, description="How far from the field start a fuzzy match may sit")
    lexical_ignore_location: bool = Field(False, description="Score matches anywhere in a field equally")
    semantic_similarity_floor: float = Field(0.5, ge=0.0, le=1.0)
    semantic_top_k: int = Field(10, ge=1, le=100)
    debounce_ms: int = Field(300, ge=0, le=10_000)
    lexical_min_query_length: int = Field(2, ge=1)
    semantic_min_query_length: int = Field(3, ge=1)
    rag_top_k: int = Field(5, ge=1, le=50)


class LLMConfig(BaseModel):
    """Answer-generation backend."""
    provider: Literal["ollama", "openai", "groq", "anthropic"] = Field("ollama")
    model: str = Field("llama3.2")
    base_url: str = Field("", description="Defaults per provider when empty")
    api_key: str = Field("")
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(1024, ge=1)
    timeout: float = Field(120.0, gt=0)
    prompt_template: Literal["default", "detailed", "conversational"] = Field("default")

    def resolved_base_url(self) -> str:
        return (self.base_url or DEFAULT_LLM_BASE_URLS[self.provider]).rstrip("/")


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field("INFO")
    format: str = Field("%(asctime)s %(levelname)s %(name)s: %(message)s")


class EngineConfig(BaseModel):
    """Complete engine configuration."""
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> EngineConfig:
        """Load configuration from YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Validated EngineConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If configuration is invalid
        """
        config_path = Path(path)

        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)

        if not data:
            raise ValueError(f"Empty configuration file: {config_path}")

        try:
            return cls.model_validate(data)
        except Exception as e:
            raise ValueError(f"Invalid configuration in {config_path}: {e}") from e

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> EngineConfig:
        """Build configuration from environment variables."""
        s = settings or Settings()
        return cls.model_validate({
            "embeddings": {
                "provider": s.embeddings_provider,
                "model_name": s.embeddings_model,
                "dimension": s.embeddings_dimension,
                "base_url": s.embeddings_base_url,
                "api_key": s.embeddings_api_key,
                "batch_size": s.embedding_batch_size,
                "workers": s.embedding_workers,
                "max_chunk_length": s.max_chunk_length,
                "chunk_overlap": s.chunk_overlap,
            },
            "cache": {
                "backend": s.cache_backend,
                "use_cache": s.use_cache,
                "path": s.cache_path,
                "dsn": s.database_url,
                "query_cache_ttl_hours": s.query_cache_ttl_hours,
            },
            "search": {
                "lexical_threshold": s.lexical_threshold,
                "semantic_similarity_floor": s.semantic_similarity_floor,
                "semantic_top_k": s.semantic_top_k,
                "debounce_ms": s.debounce_ms,
            },
            "llm": {
                "provider": s.llm_provider,
                "model": s.llm_model,
                "base_url": s.llm_base_url,
                "api_key": s.llm_api_key,
            },
            "logging": {"level": s.log_level.upper()},
        })

    def log_redacted(self) -> dict:
        """Get configuration dict with secrets redacted for logging."""
        config_dict = self.model_dump()

        dsn = config_dict["cache"]["dsn"]
        # Redact password from DSN
        if "@" in dsn:
            creds, host = dsn.rsplit("@", 1)
            if creds.count(":") >= 2:
                user = creds.rsplit(":", 1)[0]
                config_dict["cache"]["dsn"] = f"{user}:***@{host}"

        for section in ("embeddings", "llm"):
            if config_dict[section]["api_key"]:
                config_dict[section]["api_key"] = "***"

        return config_dict


def load_engine_config(
    config_path: str | Path | None = None,
    env_var: str = "VINY_RAG_CONFIG",
) -> EngineConfig:
    """Load engine configuration from file or environment.

    Order: explicit path, path in ``env_var``, then plain environment variables.

    Raises:
        ValueError: If configuration is invalid
    """
    path = config_path or os.getenv(env_var)
    if path:
        return EngineConfig.from_yaml(path)
    return EngineConfig.from_settings()
