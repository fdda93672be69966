"""Tests for configuration loading, saving and environment overrides."""

import pytest

from moments.config import (
    CONFIG_FILENAME,
    JournalConfig,
    ProviderKind,
    VectorStoreKind,
    apply_env_overrides,
    get_default_store_path,
    load_config,
    load_or_create_config,
    save_config,
)


class TestDefaults:

    def test_defaults(self, tmp_path):
        config = JournalConfig(path=tmp_path)
        assert config.embedding.provider is None
        assert config.vector_store.kind == VectorStoreKind.FLAT
        assert config.batch_delay == 0.1
        assert config.data_path == tmp_path / "moments.json"
        assert config.vectors_path == tmp_path / "vectors.json"

    def test_default_store_path_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MOMENTS_STORE_PATH", str(tmp_path / "journal"))
        assert get_default_store_path() == (tmp_path / "journal").resolve()


class TestSaveLoad:

    def test_round_trip_keeps_settings_but_not_keys(self, tmp_path):
        config = JournalConfig(path=tmp_path)
        config.embedding.provider = ProviderKind.VOYAGE
        config.embedding.api_key = "pa-secret"
        config.embedding.dimensions = 512
        config.vector_store.kind = VectorStoreKind.QDRANT
        config.vector_store.collection = "diary"
        config.batch_delay = 0.5
        save_config(config)

        assert "pa-secret" not in (tmp_path / CONFIG_FILENAME).read_text()
        loaded = load_config(tmp_path)
        assert loaded.embedding.provider == ProviderKind.VOYAGE
        assert loaded.embedding.api_key is None
        assert loaded.embedding.dimensions == 512
        assert loaded.vector_store.kind == VectorStoreKind.QDRANT
        assert loaded.vector_store.collection == "diary"
        assert loaded.batch_delay == 0.5

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_newer_version_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[store]\nversion = 99\n")
        with pytest.raises(ValueError, match="newer"):
            load_config(tmp_path)

    def test_unknown_provider_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('[embedding]\nprovider = "magic"\n')
        with pytest.raises(ValueError, match="magic"):
            load_config(tmp_path)

    def test_load_or_create(self, tmp_path):
        path = tmp_path / "new"
        config = load_or_create_config(path)
        assert (path / CONFIG_FILENAME).exists()
        assert config.path == path
        again = load_or_create_config(path)
        assert again.created == config.created


class TestEnvOverrides:

    def test_provider_and_generic_key(self, tmp_path):
        config = apply_env_overrides(JournalConfig(path=tmp_path), {
            "MOMENTS_EMBEDDING_PROVIDER": "OpenAI",
            "MOMENTS_EMBEDDING_API_KEY": "sk-generic",
            "OPENAI_API_KEY": "sk-vendor",
            "MOMENTS_EMBEDDING_MODEL": "text-embedding-3-small",
            "MOMENTS_EMBEDDING_DIMENSIONS": "256",
        })
        assert config.embedding.provider == ProviderKind.OPENAI
        assert config.embedding.api_key == "sk-generic"
        assert config.embedding.model == "text-embedding-3-small"
        assert config.embedding.dimensions == 256

    def test_vendor_key_fallback(self, tmp_path):
        config = apply_env_overrides(JournalConfig(path=tmp_path), {
            "MOMENTS_EMBEDDING_PROVIDER": "voyage",
            "OPENAI_API_KEY": "sk-vendor",
            "VOYAGE_API_KEY": "pa-vendor",
        })
        assert config.embedding.api_key == "pa-vendor"

    def test_vector_store_and_timing(self, tmp_path):
        config = apply_env_overrides(JournalConfig(path=tmp_path), {
            "MOMENTS_VECTOR_STORE": "qdrant",
            "MOMENTS_QDRANT_URL": "http://qdrant:6333",
            "MOMENTS_QDRANT_COLLECTION": "diary",
            "MOMENTS_TIMEOUT": "5",
            "MOMENTS_BATCH_DELAY": "0.2",
        })
        assert config.vector_store.kind == VectorStoreKind.QDRANT
        assert config.vector_store.url == "http://qdrant:6333"
        assert config.vector_store.collection == "diary"
        assert config.embedding.timeout == 5.0
        assert config.vector_store.timeout == 5.0
        assert config.batch_delay == 0.2

    def test_original_untouched(self, tmp_path):
        original = JournalConfig(path=tmp_path)
        apply_env_overrides(original, {"MOMENTS_EMBEDDING_PROVIDER": "local"})
        assert original.embedding.provider is None

    @pytest.mark.parametrize("env", [
        {"MOMENTS_EMBEDDING_PROVIDER": "magic"},
        {"MOMENTS_VECTOR_STORE": "faiss"},
        {"MOMENTS_EMBEDDING_DIMENSIONS": "many"},
    ])
    def test_invalid_values(self, tmp_path, env):
        with pytest.raises(ValueError):
            apply_env_overrides(JournalConfig(path=tmp_path), env)

    def test_empty_provider_means_none(self, tmp_path):
        config = apply_env_overrides(JournalConfig(path=tmp_path), {"MOMENTS_EMBEDDING_PROVIDER": ""})
        assert config.embedding.provider is None

    def test_reads_os_environ(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MOMENTS_EMBEDDING_PROVIDER", "local")
        assert apply_env_overrides(JournalConfig(path=tmp_path)).embedding.provider == ProviderKind.LOCAL
