"""Embedding providers and the registry that selects one."""

from .base import EmbeddingProvider
from .none import NoneProvider
from .registry import EmbeddingRegistry, RegistryState

__all__ = ["EmbeddingProvider", "NoneProvider", "EmbeddingRegistry", "RegistryState"]
