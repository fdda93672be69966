"""
No-op embedding provider.

Zero-config default and the fallback when a configured provider is
unavailable. Its fixed one-dimensional zero vector means "no semantic
signal"; callers check for it rather than ranking by it.
"""

from .base import BaseEmbeddingProvider

NONE_PROVIDER_NAME = "None"


class NoneProvider(BaseEmbeddingProvider):
    """Always available, always returns ``[0.0]``."""

    name = NONE_PROVIDER_NAME
    dimension = 1

    def initialize(self) -> None:
        pass

    def is_available(self) -> bool:
        return True

    def generate_embedding(self, text: str) -> list[float]:
        self.validate_text(text)
        return [0.0]
