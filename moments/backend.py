"""
Storage backend factory.

Creates the record store and the vector store from configuration. The
record store is always the local JSON document; the vector store is
selected by ``VectorStoreKind``:

- ``flat``: a JSON file next to the records
- ``qdrant``: a remote Qdrant collection
"""

from typing import Callable, NamedTuple

from .config import JournalConfig, VectorStoreKind
from .record_store import RecordStore
from .vector_stores.base import VectorStore


class StoreBundle(NamedTuple):
    """Collection of storage backends returned by the factory."""
    record_store: RecordStore
    vector_store: VectorStore
    is_local: bool  # True when vectors stay on the filesystem


def _create_flat(config: JournalConfig) -> VectorStore:
    from .vector_stores.flat import FlatVectorStore
    return FlatVectorStore(config.vectors_path)


def _create_qdrant(config: JournalConfig) -> VectorStore:
    # qdrant_client is heavy; only import it when configured
    from .vector_stores.qdrant import QdrantVectorStore
    vec = config.vector_store
    return QdrantVectorStore(
        url=vec.url,
        api_key=vec.api_key,
        collection=vec.collection,
        timeout=vec.timeout,
    )


VECTOR_STORE_CONSTRUCTORS: dict[VectorStoreKind, Callable[[JournalConfig], VectorStore]] = {
    VectorStoreKind.FLAT: _create_flat,
    VectorStoreKind.QDRANT: _create_qdrant,
}


def create_vector_store(config: JournalConfig) -> VectorStore:
    """Build the configured vector store."""
    return VECTOR_STORE_CONSTRUCTORS[config.vector_store.kind](config)


def create_stores(config: JournalConfig) -> StoreBundle:
    """Create storage backends from configuration."""
    config.path.mkdir(parents=True, exist_ok=True)
    return StoreBundle(
        record_store=RecordStore(config.data_path),
        vector_store=create_vector_store(config),
        is_local=config.vector_store.kind == VectorStoreKind.FLAT,
    )
