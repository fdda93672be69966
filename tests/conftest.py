"""
Shared pytest fixtures for moments tests.

Provides mock embedding providers so no test loads a model or calls an API.
"""

import hashlib
import re

import pytest

from moments.api import Journal
from moments.config import EmbeddingConfig, JournalConfig, ProviderKind
from moments.errors import ProviderUnavailableError
from moments.providers.registry import EmbeddingRegistry


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash - no ML model loading.
    """

    name = "mock-model"
    dimension = 16

    def __init__(self):
        self.embed_calls = 0

    def initialize(self) -> None:
        pass

    def is_available(self) -> bool:
        return True

    def generate_embedding(self, text: str) -> list[float]:
        """Generate deterministic embedding from text hash."""
        self.embed_calls += 1
        h = hashlib.md5(text.encode()).hexdigest()
        # 16 values in (0, 1]; never the zero vector
        return [(int(h[i:i + 2], 16) + 1) / 256.0 for i in range(0, 32, 2)]


class KeywordEmbeddingProvider(MockEmbeddingProvider):
    """
    Bag-of-words embeddings over a tiny vocabulary.

    Texts sharing vocabulary words get high cosine similarity, so ranking
    tests can reason about expected order.
    """

    name = "keyword-model"
    VOCABULARY = ("anxious", "tomorrow", "calm", "lake", "meeting", "tired", "joy", "rain")
    dimension = len(VOCABULARY) + 1

    def generate_embedding(self, text: str) -> list[float]:
        self.embed_calls += 1
        words = re.findall(r"[a-z]+", text.lower())
        vector = [float(words.count(w)) for w in self.VOCABULARY]
        # Small constant component keeps every vector non-zero
        return vector + [0.1]


class FlakyEmbeddingProvider(MockEmbeddingProvider):
    """Passes the availability probe, then fails every embedding call."""

    name = "flaky-model"

    def generate_embedding(self, text: str) -> list[float]:
        self.embed_calls += 1
        raise ProviderUnavailableError("simulated timeout")


def make_registry(provider) -> EmbeddingRegistry:
    """Registry that resolves to ``provider`` through the normal probe path."""
    return EmbeddingRegistry(
        EmbeddingConfig(provider=ProviderKind.LOCAL),
        constructors={ProviderKind.LOCAL: lambda config: provider},
    )


@pytest.fixture
def registry_for():
    """Factory: build a registry that resolves to the given provider."""
    return make_registry


@pytest.fixture
def flaky_provider():
    return FlakyEmbeddingProvider()


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def keyword_provider():
    return KeywordEmbeddingProvider()


@pytest.fixture
def journal_config(tmp_path):
    """Config rooted in a temp dir, no ops log, no batch delay."""
    return JournalConfig(path=tmp_path, ops_log=False, batch_delay=0.0)


@pytest.fixture
def journal(journal_config, mock_embedding_provider):
    """Journal with a deterministic mock provider and a flat vector store."""
    j = Journal(config=journal_config, registry=make_registry(mock_embedding_provider))
    yield j
    j.close()


@pytest.fixture
def plain_journal(journal_config):
    """Journal with no embedding provider configured."""
    j = Journal(config=journal_config)
    yield j
    j.close()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the developer's environment out of config resolution."""
    for name in (
        "MOMENTS_STORE_PATH", "MOMENTS_EMBEDDING_PROVIDER", "MOMENTS_EMBEDDING_API_KEY",
        "MOMENTS_EMBEDDING_MODEL", "MOMENTS_EMBEDDING_DIMENSIONS", "MOMENTS_VECTOR_STORE",
        "MOMENTS_EMBEDDING_BASE_URL", "MOMENTS_QDRANT_URL", "MOMENTS_QDRANT_API_KEY",
        "MOMENTS_QDRANT_COLLECTION", "MOMENTS_BATCH_DELAY", "MOMENTS_TIMEOUT",
        "OPENAI_API_KEY", "VOYAGE_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
