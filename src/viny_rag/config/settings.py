"""Environment-backed settings.

Loads settings from environment variables using python-dotenv.
"""
from __future__ import annotations
import os
from dotenv import load_dotenv


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self) -> None:
        """Initialize settings from environment variables."""
        load_dotenv()

        # Embeddings
        self.embeddings_provider = os.getenv("EMBEDDINGS_PROVIDER", "ollama")
        self.embeddings_model = os.getenv("EMBEDDINGS_MODEL", "all-minilm:latest")
        self.embeddings_base_url = os.getenv("EMBEDDINGS_BASE_URL", "http://localhost:11434")
        self.embeddings_api_key = os.getenv("EMBEDDINGS_API_KEY", "")
        self.embeddings_dimension = int(os.getenv("EMBEDDINGS_DIMENSION", "384"))
        self.embedding_batch_size = int(os.getenv("EMBEDDING_BATCH_SIZE", "8"))
        self.embedding_workers = int(os.getenv("EMBEDDING_WORKERS", "1"))
        self.max_chunk_length = int(os.getenv("MAX_CHUNK_LENGTH", "512"))
        self.chunk_overlap = int(os.getenv("CHUNK_OVERLAP", "128"))

        # Cache
        self.cache_backend = os.getenv("CACHE_BACKEND", "sqlite")
        self.use_cache = os.getenv("USE_CACHE", "true").lower() == "true"
        self.cache_path = os.getenv("CACHE_PATH", "~/.viny/embeddings.sqlite3")
        self.database_url = os.getenv("DATABASE_URL", "")
        self.query_cache_ttl_hours = int(os.getenv("QUERY_CACHE_TTL_HOURS", "24"))

        # Search parameters
        self.lexical_threshold = float(os.getenv("LEXICAL_THRESHOLD", "0.3"))
        self.semantic_similarity_floor = float(os.getenv("SEMANTIC_SIMILARITY_FLOOR", "0.5"))
        self.semantic_top_k = int(os.getenv("SEMANTIC_TOP_K", "10"))
        self.debounce_ms = int(os.getenv("SEARCH_DEBOUNCE_MS", "300"))

        # LLM
        self.llm_provider = os.getenv("LLM_PROVIDER", "ollama")
        self.llm_model = os.getenv("LLM_MODEL", "llama3.2")
        self.llm_base_url = os.getenv("LLM_BASE_URL", "")
        self.llm_api_key = os.getenv("LLM_API_KEY", "")

        self.log_level = os.getenv("LOG_LEVEL", "INFO")
