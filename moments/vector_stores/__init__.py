"""Vector stores: a local flat file store and a remote Qdrant store."""

from .base import VectorMatch, VectorStore, cosine_similarity
from .flat import FlatVectorStore

__all__ = ["VectorMatch", "VectorStore", "cosine_similarity", "FlatVectorStore"]
