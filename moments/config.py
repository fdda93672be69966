"""
Configuration management for moments journals.

The configuration lives as a TOML file in the store directory and can be
overridden from the environment. It selects the embedding provider and the
vector store, with their parameters. A loaded ``JournalConfig`` is passed
into each component's constructor; nothing reads configuration from module
globals.
"""

import enum
import os
import tomllib
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

import tomli_w


CONFIG_FILENAME = "moments.toml"
CONFIG_VERSION = 1

DATA_FILENAME = "moments.json"
VECTORS_FILENAME = "vectors.json"

DEFAULT_TIMEOUT = 30.0
DEFAULT_BATCH_DELAY = 0.1  # seconds between provider calls in a batch
DEFAULT_QDRANT_URL = "http://localhost:6333"
DEFAULT_QDRANT_COLLECTION = "moments"


class ProviderKind(str, enum.Enum):
    """Embedding provider selector."""
    NONE = "none"
    OPENAI = "openai"
    VOYAGE = "voyage"
    LOCAL = "local"


class VectorStoreKind(str, enum.Enum):
    """Vector store selector."""
    FLAT = "flat"
    QDRANT = "qdrant"


def get_default_store_path() -> Path:
    """Store directory: MOMENTS_STORE_PATH if set, else ~/.moments."""
    env_path = os.environ.get("MOMENTS_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / ".moments"


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding provider."""
    provider: Optional[ProviderKind] = None  # None: zero-config, no semantic search
    api_key: Optional[str] = None
    model: Optional[str] = None
    dimensions: Optional[int] = None
    base_url: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT


@dataclass
class VectorStoreConfig:
    """Configuration for the vector store."""
    kind: VectorStoreKind = VectorStoreKind.FLAT
    path: Optional[Path] = None  # flat store file; defaults into the store dir
    url: str = DEFAULT_QDRANT_URL
    api_key: Optional[str] = None
    collection: str = DEFAULT_QDRANT_COLLECTION
    timeout: float = DEFAULT_TIMEOUT


@dataclass
class JournalConfig:
    """Complete journal configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    vector_store: VectorStoreConfig = field(default_factory=VectorStoreConfig)

    batch_delay: float = DEFAULT_BATCH_DELAY
    snippet_length: int = 120
    ops_log: bool = True

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def data_path(self) -> Path:
        """Path to the JSON document holding records and embeddings."""
        return self.path / DATA_FILENAME

    @property
    def vectors_path(self) -> Path:
        """Path to the flat vector store file."""
        return self.vector_store.path or (self.path / VECTORS_FILENAME)

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def _parse_provider(value: Any) -> Optional[ProviderKind]:
    if value in (None, ""):
        return None
    try:
        return ProviderKind(str(value).lower())
    except ValueError:
        valid = ", ".join(k.value for k in ProviderKind)
        raise ValueError(f"Unknown embedding provider '{value}'. Valid: {valid}") from None


def _parse_store_kind(value: Any) -> VectorStoreKind:
    if value in (None, ""):
        return VectorStoreKind.FLAT
    try:
        return VectorStoreKind(str(value).lower())
    except ValueError:
        valid = ", ".join(k.value for k in VectorStoreKind)
        raise ValueError(f"Unknown vector store '{value}'. Valid: {valid}") from None


def load_config(store_path: Path) -> JournalConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    emb = data.get("embedding", {})
    vec = data.get("vector_store", {})
    return JournalConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        embedding=EmbeddingConfig(
            provider=_parse_provider(emb.get("provider")),
            api_key=emb.get("api_key"),
            model=emb.get("model"),
            dimensions=emb.get("dimensions"),
            base_url=emb.get("base_url"),
            timeout=float(emb.get("timeout", DEFAULT_TIMEOUT)),
        ),
        vector_store=VectorStoreConfig(
            kind=_parse_store_kind(vec.get("kind")),
            path=Path(vec["path"]) if vec.get("path") else None,
            url=vec.get("url", DEFAULT_QDRANT_URL),
            api_key=vec.get("api_key"),
            collection=vec.get("collection", DEFAULT_QDRANT_COLLECTION),
            timeout=float(vec.get("timeout", DEFAULT_TIMEOUT)),
        ),
        batch_delay=float(store.get("batch_delay", DEFAULT_BATCH_DELAY)),
        snippet_length=int(store.get("snippet_length", 120)),
        ops_log=bool(store.get("ops_log", True)),
    )


def save_config(config: JournalConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist. API keys are not written;
    they belong in the environment.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    # TOML has no null; drop unset values
    def compact(d: dict) -> dict:
        return {k: v for k, v in d.items() if v is not None}

    emb = config.embedding
    vec = config.vector_store
    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "batch_delay": config.batch_delay,
            "snippet_length": config.snippet_length,
            "ops_log": config.ops_log,
        },
        "embedding": compact({
            "provider": emb.provider.value if emb.provider else None,
            "model": emb.model,
            "dimensions": emb.dimensions,
            "base_url": emb.base_url,
            "timeout": emb.timeout,
        }),
        "vector_store": compact({
            "kind": vec.kind.value,
            "path": str(vec.path) if vec.path else None,
            "url": vec.url,
            "collection": vec.collection,
            "timeout": vec.timeout,
        }),
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def apply_env_overrides(config: JournalConfig, environ: Optional[Mapping[str, str]] = None) -> JournalConfig:
    """
    Return a copy of ``config`` with MOMENTS_* environment values applied.

    ``environ`` defaults to ``os.environ``; tests pass a plain dict.
    """
    env = os.environ if environ is None else environ
    emb = replace(config.embedding)
    vec = replace(config.vector_store)

    if "MOMENTS_EMBEDDING_PROVIDER" in env:
        emb.provider = _parse_provider(env["MOMENTS_EMBEDDING_PROVIDER"])
    if env.get("MOMENTS_EMBEDDING_MODEL"):
        emb.model = env["MOMENTS_EMBEDDING_MODEL"]
    if env.get("MOMENTS_EMBEDDING_DIMENSIONS"):
        try:
            emb.dimensions = int(env["MOMENTS_EMBEDDING_DIMENSIONS"])
        except ValueError:
            raise ValueError(
                f"MOMENTS_EMBEDDING_DIMENSIONS must be an integer, "
                f"got '{env['MOMENTS_EMBEDDING_DIMENSIONS']}'"
            ) from None
    if env.get("MOMENTS_EMBEDDING_BASE_URL"):
        emb.base_url = env["MOMENTS_EMBEDDING_BASE_URL"]

    # Provider-specific key variables are fallbacks for the generic one
    api_key = env.get("MOMENTS_EMBEDDING_API_KEY")
    if not api_key and emb.provider == ProviderKind.OPENAI:
        api_key = env.get("OPENAI_API_KEY")
    elif not api_key and emb.provider == ProviderKind.VOYAGE:
        api_key = env.get("VOYAGE_API_KEY")
    if api_key:
        emb.api_key = api_key

    if "MOMENTS_VECTOR_STORE" in env:
        vec.kind = _parse_store_kind(env["MOMENTS_VECTOR_STORE"])
    if env.get("MOMENTS_QDRANT_URL"):
        vec.url = env["MOMENTS_QDRANT_URL"]
    if env.get("MOMENTS_QDRANT_API_KEY"):
        vec.api_key = env["MOMENTS_QDRANT_API_KEY"]
    if env.get("MOMENTS_QDRANT_COLLECTION"):
        vec.collection = env["MOMENTS_QDRANT_COLLECTION"]

    if env.get("MOMENTS_TIMEOUT"):
        emb.timeout = vec.timeout = float(env["MOMENTS_TIMEOUT"])

    batch_delay = config.batch_delay
    if env.get("MOMENTS_BATCH_DELAY"):
        batch_delay = float(env["MOMENTS_BATCH_DELAY"])

    return replace(config, embedding=emb, vector_store=vec, batch_delay=batch_delay)


def load_or_create_config(store_path: Path) -> JournalConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management. Environment
    overrides are applied to the result but never written back.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        config = load_config(store_path)
    else:
        config = JournalConfig(path=store_path)
        save_config(config)
    return apply_env_overrides(config)
