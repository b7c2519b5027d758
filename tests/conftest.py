"""Shared pytest fixtures for all tests."""
import re
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest
import pytest_asyncio

from viny_rag.cache import SQLiteEmbeddingCache
from viny_rag.embeddings.models import EmbeddingModel
from viny_rag.models import Document

# Words mapped onto the same vector dimension embed as "related"
CONCEPTS = [
    {"own", "owns", "owner", "ownership", "borrow", "borrowing", "borrows", "reference", "references", "memory"},
    {"rust"},
    {"python", "interpreter"},
    {"garden", "gardening", "tomato", "tomatoes", "soil", "plant", "plants"},
    {"pasta", "recipe", "sauce", "cook", "cooking"},
]
FAKE_DIMENSION = 16


def concept_vector(text: str, dimension: int = FAKE_DIMENSION) -> list[float]:
    """Deterministic bag-of-concepts vector, unit length."""
    vector = np.zeros(dimension, dtype=np.float32)
    for token in re.findall(r"[a-z]+", text.lower()):
        for dim, words in enumerate(CONCEPTS):
            if token in words:
                vector[dim] += 1.0
    if not vector.any():
        vector[dimension - 1] = 1.0
    return (vector / np.linalg.norm(vector)).tolist()


class FakeEmbeddingModel(EmbeddingModel):
    """Embeds by concept lookup and records every call.

    ``failures`` maps a substring to how many more times a text containing it
    should fail (-1 for always).
    """

    provider = "fake"

    def __init__(self, dimension: int = FAKE_DIMENSION, failures: dict[str, int] | None = None):
        super().__init__("fake-model", dimension)
        self.calls: list[list[str]] = []
        self.failures = dict(failures or {})

    @property
    def embedded_texts(self) -> list[str]:
        return [t for call in self.calls for t in call]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        for text in texts:
            for marker, remaining in self.failures.items():
                if marker in text and remaining != 0:
                    if remaining > 0:
                        self.failures[marker] = remaining - 1
                    raise RuntimeError(f"model failed on {marker!r}")
        return [concept_vector(t, self.dimension) for t in texts]


class FakeClock:
    """Settable clock for TTL tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def rust_note():
    return Document(
        id="n1",
        version="2024-01-01T00:00:00Z",
        title="Rust Ownership",
        content="# Intro\nRust uses ownership...\n\n# Borrowing\nReferences borrow...",
        tags=["rust", "programming"],
        notebook="Languages",
    )


@pytest.fixture
def garden_note():
    return Document(
        id="n2",
        version="2024-01-02T00:00:00Z",
        title="Garden Plans",
        content="Plant tomatoes along the south fence. Add compost to the soil in spring.",
        tags=["garden"],
        notebook="Home",
    )


@pytest.fixture
def pasta_note():
    return Document(
        id="n3",
        version="2024-01-03T00:00:00Z",
        title="Weeknight Pasta",
        content="Cook the pasta, then toss it with a quick tomato sauce and basil.",
        tags=["recipe"],
        notebook="Kitchen",
    )


@pytest.fixture
def notes(rust_note, garden_note, pasta_note):
    return [rust_note, garden_note, pasta_note]


@pytest.fixture
def fake_model():
    return FakeEmbeddingModel()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def sqlite_cache(tmp_path, clock):
    cache = SQLiteEmbeddingCache(
        tmp_path / "embeddings.sqlite3",
        model_name="fake-model",
        dimension=FAKE_DIMENSION,
        clock=clock,
    )
    await cache.initialize()
    yield cache
    await cache.close()
