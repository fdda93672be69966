"""
Embedding provider registry.

Maps the closed set of ``ProviderKind`` values to constructors and resolves
the configured provider exactly once. If the requested provider cannot be
built or fails its availability probe, the registry logs a warning and
settles on ``NoneProvider``. The write and search paths never see an error
for that; they see a provider named "None".

    UNCONFIGURED -> PROBING -> READY | FALLBACK

READY and FALLBACK are terminal. To pick a provider again, build a new
registry.
"""

from __future__ import annotations

import enum
import logging
import threading
from typing import Callable, Optional

from ..config import EmbeddingConfig, ProviderKind
from .base import EmbeddingProvider
from .local import LocalModelProvider
from .none import NoneProvider
from .remote import OpenAIProvider, VoyageProvider

logger = logging.getLogger(__name__)


class RegistryState(str, enum.Enum):
    UNCONFIGURED = "unconfigured"
    PROBING = "probing"
    READY = "ready"
    FALLBACK = "fallback"


def _build_openai(config: EmbeddingConfig) -> EmbeddingProvider:
    return OpenAIProvider(
        config.api_key, config.model, config.dimensions,
        base_url=config.base_url, timeout=config.timeout,
    )


def _build_voyage(config: EmbeddingConfig) -> EmbeddingProvider:
    return VoyageProvider(
        config.api_key, config.model, config.dimensions,
        base_url=config.base_url, timeout=config.timeout,
    )


def _build_local(config: EmbeddingConfig) -> EmbeddingProvider:
    return LocalModelProvider(config.model)


def _build_none(config: EmbeddingConfig) -> EmbeddingProvider:
    return NoneProvider()


PROVIDER_CONSTRUCTORS: dict[ProviderKind, Callable[[EmbeddingConfig], EmbeddingProvider]] = {
    ProviderKind.NONE: _build_none,
    ProviderKind.OPENAI: _build_openai,
    ProviderKind.VOYAGE: _build_voyage,
    ProviderKind.LOCAL: _build_local,
}


class EmbeddingRegistry:
    """
    Holds the process-wide embedding provider for one journal.

    Resolution is lazy (first use) and thread-safe. After that every call
    goes to the same provider.

    Args:
        config: Embedding section of the journal config
        constructors: Override the kind -> constructor map (tests)
    """

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        constructors: Optional[dict[ProviderKind, Callable[[EmbeddingConfig], EmbeddingProvider]]] = None,
    ):
        self._config = config or EmbeddingConfig()
        self._constructors = constructors or PROVIDER_CONSTRUCTORS
        self._provider: Optional[EmbeddingProvider] = None
        self._state = RegistryState.UNCONFIGURED
        self._fallback_reason: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def requested(self) -> Optional[ProviderKind]:
        """The provider kind asked for in configuration."""
        return self._config.provider

    @property
    def state(self) -> RegistryState:
        return self._state

    @property
    def fallback_reason(self) -> Optional[str]:
        return self._fallback_reason

    @property
    def provider(self) -> EmbeddingProvider:
        if self._provider is None:
            with self._lock:
                # Re-check under the lock; another thread may have resolved it
                if self._provider is None:
                    self._provider = self._resolve()
        return self._provider

    @property
    def is_fallback(self) -> bool:
        """True when the active provider is the no-op sentinel, configured or fallen back to."""
        return isinstance(self.provider, NoneProvider)

    @property
    def name(self) -> str:
        return self.provider.name

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    def generate_embedding(self, text: str) -> list[float]:
        return self.provider.generate_embedding(text)

    def _resolve(self) -> EmbeddingProvider:
        kind = self._config.provider
        if kind is None or kind == ProviderKind.NONE:
            # Zero-config default; nothing to probe
            self._state = RegistryState.READY
            logger.debug("No embedding provider configured, semantic search disabled")
            return NoneProvider()

        self._state = RegistryState.PROBING
        try:
            provider = self._constructors[kind](self._config)
            available = provider.is_available()
            reason = "availability probe failed"
            if available:
                provider.initialize()
        except Exception as e:
            available = False
            reason = f"construction failed: {e}"

        if not available:
            self._state = RegistryState.FALLBACK
            self._fallback_reason = f"{kind.value}: {reason}"
            logger.warning(
                "Embedding provider '%s' unavailable (%s), falling back to None",
                kind.value, reason,
            )
            return NoneProvider()

        self._state = RegistryState.READY
        logger.info("Embedding provider ready: %s", provider.name)
        return provider

    def close(self) -> None:
        closer = getattr(self._provider, "close", None)
        if callable(closer):
            closer()
