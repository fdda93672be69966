"""
Embedding provider protocol.

Using Protocol for structural subtyping - no explicit inheritance required.
``BaseEmbeddingProvider`` holds the input checks every concrete provider
shares.
"""

import math
from typing import Protocol, runtime_checkable

from ..errors import ValidationError

MAX_TEXT_LENGTH = 1_000_000


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    The same provider must be used for indexing and querying; vectors from
    different providers are not comparable.

    Example implementation:
        class HashEmbedding:
            name = "hash"
            dimension = 8

            def initialize(self) -> None:
                pass

            def is_available(self) -> bool:
                return True

            def generate_embedding(self, text: str) -> list[float]:
                digest = hashlib.md5(text.encode()).digest()
                return [b / 255 for b in digest[:8]]
    """

    @property
    def name(self) -> str:
        """Human-readable provider name, e.g. ``OpenAI-text-embedding-3-large``."""
        ...

    @property
    def dimension(self) -> int:
        """Length of the vectors this provider returns."""
        ...

    def initialize(self) -> None:
        """
        Prepare the provider (load a model, open a client).

        Raises:
            ProviderUnavailableError: if the provider cannot be prepared
        """
        ...

    def is_available(self) -> bool:
        """
        Cheap probe: can this provider produce embeddings right now?

        A True answer is not a guarantee for later calls.
        """
        ...

    def generate_embedding(self, text: str) -> list[float]:
        """
        Embed a non-empty string.

        Raises:
            ValidationError: empty or oversized text
            ProviderUnavailableError: transport failure, timeout, model error
        """
        ...


class BaseEmbeddingProvider:
    """Shared input validation and vector helpers."""

    @staticmethod
    def validate_text(text: str) -> str:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Text cannot be empty")
        if len(text) > MAX_TEXT_LENGTH:
            raise ValidationError(
                f"Text too long: {len(text)} characters (max {MAX_TEXT_LENGTH})"
            )
        return text

    @staticmethod
    def normalize(vector: list[float]) -> list[float]:
        """Scale to unit length; a zero vector is returned unchanged."""
        norm = math.sqrt(sum(x * x for x in vector))
        if norm == 0:
            return list(vector)
        return [x / norm for x in vector]
