"""
Local embedding provider using sentence-transformers.

The model is loaded on first use, not at construction, so building a
registry stays fast and a missing model only matters when it is needed.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from ..errors import ProviderUnavailableError
from .base import BaseEmbeddingProvider

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_MODEL = "all-MiniLM-L6-v2"


class LocalModelProvider(BaseEmbeddingProvider):
    """
    Embeddings from a local sentence-transformers model.

    Vectors are unit-normalized so cosine scores are comparable with the
    remote providers.
    """

    def __init__(self, model: Optional[str] = None, device: Optional[str] = None):
        self.model_name = model or DEFAULT_LOCAL_MODEL
        self._device = device
        self._model: Any = None
        self._load_error: Optional[Exception] = None
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return f"Local-{self.model_name}"

    @property
    def dimension(self) -> int:
        self.initialize()
        return self._model.get_sentence_embedding_dimension()

    def initialize(self) -> None:
        if self._model is not None:
            return
        with self._lock:
            if self._model is not None:
                return
            if self._load_error is not None:
                raise ProviderUnavailableError(
                    f"{self.name}: model failed to load ({self._load_error})"
                )
            try:
                from sentence_transformers import SentenceTransformer
                logger.info("Loading local embedding model %s", self.model_name)
                self._model = SentenceTransformer(self.model_name, device=self._device)
            except Exception as e:
                self._load_error = e
                raise ProviderUnavailableError(
                    f"{self.name}: model failed to load ({e})"
                ) from e

    def is_available(self) -> bool:
        try:
            self.initialize()
        except ProviderUnavailableError as e:
            logger.info("%s unavailable: %s", self.name, e)
            return False
        return True

    def generate_embedding(self, text: str) -> list[float]:
        self.validate_text(text)
        self.initialize()
        try:
            vector = self._model.encode(text)
        except Exception as e:
            raise ProviderUnavailableError(f"{self.name}: {e}") from e
        return self.normalize([float(x) for x in vector])
