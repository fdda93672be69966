"""
Embedding providers backed by hosted HTTP APIs.

``RemoteAPIProvider`` owns the httpx client, credentials, timeout and error
mapping; subclasses describe one vendor's request and response shape.
Transport errors are not retried here. They surface as
``ProviderUnavailableError`` so the caller can degrade.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..errors import ProviderUnavailableError
from .base import BaseEmbeddingProvider

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
PROBE_TEXT = "test"


class RemoteAPIProvider(BaseEmbeddingProvider):
    """Base class for embedding APIs reached over HTTPS."""

    vendor = "remote"
    default_model = ""
    default_base_url = ""
    endpoint = "/embeddings"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        *,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._api_key = api_key
        self.model = model or self.default_model
        self._dimensions = dimensions
        self._base_url = (base_url or self.default_base_url).rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None
        self._available: Optional[bool] = None  # cached after first probe

    @property
    def name(self) -> str:
        return f"{self.vendor}-{self.model}"

    @property
    def dimension(self) -> int:
        return self._dimensions or self.default_dimensions()

    def default_dimensions(self) -> int:
        raise NotImplementedError

    def build_payload(self, text: str) -> dict[str, Any]:
        raise NotImplementedError

    def parse_response(self, data: dict[str, Any]) -> list[float]:
        return [float(x) for x in data["data"][0]["embedding"]]

    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        if not self._api_key:
            raise ProviderUnavailableError(f"{self.name}: no API key configured")
        if self._client is None:
            self._client = httpx.Client(
                base_url=self._base_url,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self._timeout,
                transport=self._transport,
            )

    def is_available(self) -> bool:
        """Credentials present and a one-word probe succeeds."""
        if self._available is not None:
            return self._available
        if not self._api_key:
            self._available = False
            return False
        try:
            self.generate_embedding(PROBE_TEXT)
            self._available = True
        except ProviderUnavailableError as e:
            logger.info("%s probe failed: %s", self.name, e)
            self._available = False
        return self._available

    def generate_embedding(self, text: str) -> list[float]:
        self.validate_text(text)
        self.initialize()
        try:
            resp = self._client.post(self.endpoint, json=self.build_payload(text))
            resp.raise_for_status()
            return self.parse_response(resp.json())
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(
                f"{self.name}: request timed out after {self._timeout}s"
            ) from e
        except httpx.HTTPStatusError as e:
            raise ProviderUnavailableError(
                f"{self.name}: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(f"{self.name}: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderUnavailableError(f"{self.name}: malformed response ({e})") from e

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


class OpenAIProvider(RemoteAPIProvider):
    """OpenAI embeddings API."""

    vendor = "OpenAI"
    default_model = "text-embedding-3-large"
    default_base_url = "https://api.openai.com/v1"

    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def default_dimensions(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model, 1536)

    def build_payload(self, text: str) -> dict[str, Any]:
        payload: dict[str, Any] = {"input": text, "model": self.model}
        # Only the v3 models accept a reduced output size
        if self._dimensions and self.model.startswith("text-embedding-3"):
            payload["dimensions"] = self._dimensions
        return payload


class VoyageProvider(RemoteAPIProvider):
    """Voyage AI embeddings API."""

    vendor = "VoyageAI"
    default_model = "voyage-3-large"
    default_base_url = "https://api.voyageai.com/v1"

    def __init__(self, *args, input_type: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._input_type = input_type

    def default_dimensions(self) -> int:
        return 1024

    def build_payload(self, text: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "input": [text],
            "model": self.model,
            "output_dimension": self.dimension,
        }
        if self._input_type:
            payload["input_type"] = self._input_type
        return payload
