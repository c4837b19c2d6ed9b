"""Tests for config module."""

import os
from pathlib import Path

import pytest

from latent_mcp.config import SETTINGS_KEYS, Config, validate_setting
from latent_mcp.indexer import ContentStore


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Start every test without LATENT_* or OpenAI variables."""
    for name in list(os.environ):
        if name.startswith("LATENT_") or name == "OPENAI_API_KEY":
            monkeypatch.delenv(name, raising=False)


def test_config_defaults():
    """Test config loads with defaults when no env vars set."""
    config = Config.from_env()
    assert config.vault_root == Path.home() / "Latent"
    assert config.db_path == Path.home() / ".latent" / "latent.db"
    assert config.port == 8080
    assert config.provider == "none"
    assert config.chunk_size == 500
    assert config.chunk_overlap == 50
    assert config.debounce_seconds == 1.0
    assert config.poll_interval == 0.5
    assert config.read_only is False


def test_config_from_env(monkeypatch):
    """Test config loads from environment variables."""
    monkeypatch.setenv("LATENT_VAULT", "/custom/vault")
    monkeypatch.setenv("LATENT_PORT", "9000")
    monkeypatch.setenv("LATENT_DB", "/custom/db.sqlite")
    monkeypatch.setenv("LATENT_CHUNK_SIZE", "300")
    monkeypatch.setenv("LATENT_CHUNK_OVERLAP", "30")
    monkeypatch.setenv("LATENT_CHUNK_STRATEGY", "Semantic")
    monkeypatch.setenv("LATENT_DEBOUNCE_MS", "250")
    monkeypatch.setenv("LATENT_MIN_SCORE", "0.2")

    config = Config.from_env()
    assert config.vault_root == Path("/custom/vault")
    assert config.port == 9000
    assert config.db_path == Path("/custom/db.sqlite")
    assert config.chunk_size == 300
    assert config.chunk_overlap == 30
    assert config.chunk_strategy == "semantic"
    assert config.debounce_seconds == 0.25
    assert config.min_score == 0.2


def test_config_from_env_creates_new_instances():
    """Test Config.from_env() creates new instances each time."""
    config1 = Config.from_env()
    config2 = Config.from_env()
    assert config1 is not config2


def test_config_tilde_expansion(monkeypatch):
    """Test config expands tilde in paths."""
    monkeypatch.setenv("LATENT_VAULT", "~/custom/vault")
    config = Config.from_env()
    assert "~" not in str(config.vault_root)
    assert config.vault_root.is_absolute()


def test_config_invalid_port_non_numeric(monkeypatch):
    """Test config raises error for non-numeric port."""
    monkeypatch.setenv("LATENT_PORT", "not_a_number")
    with pytest.raises(ValueError, match="Invalid LATENT_PORT"):
        Config.from_env()


def test_config_invalid_port_out_of_range(monkeypatch):
    """Test config raises error for port out of valid range."""
    monkeypatch.setenv("LATENT_PORT", "70000")
    with pytest.raises(ValueError, match="Port must be between 1 and 65535"):
        Config.from_env()


def test_config_invalid_integer(monkeypatch):
    """Test config raises error for a non-numeric chunk size."""
    monkeypatch.setenv("LATENT_CHUNK_SIZE", "large")
    with pytest.raises(ValueError, match="Invalid LATENT_CHUNK_SIZE"):
        Config.from_env()


def test_config_integer_below_minimum(monkeypatch):
    """Test config enforces minimums on numeric settings."""
    monkeypatch.setenv("LATENT_EMBED_BATCH_SIZE", "0")
    with pytest.raises(ValueError, match="must be >= 1"):
        Config.from_env()


def test_config_overlap_must_be_below_chunk_size(monkeypatch):
    """Test chunk overlap must stay below the chunk size."""
    monkeypatch.setenv("LATENT_CHUNK_SIZE", "100")
    monkeypatch.setenv("LATENT_CHUNK_OVERLAP", "100")
    with pytest.raises(ValueError, match="Chunk overlap"):
        Config.from_env()


def test_config_unknown_provider(monkeypatch):
    """Test an unknown provider name is rejected."""
    monkeypatch.setenv("LATENT_PROVIDER", "llamafile")
    with pytest.raises(ValueError, match="Unknown provider"):
        Config.from_env()


def test_config_unknown_chunk_strategy(monkeypatch):
    monkeypatch.setenv("LATENT_CHUNK_STRATEGY", "sentences")
    with pytest.raises(ValueError, match="Unknown chunk strategy"):
        Config.from_env()


def test_config_api_key_enables_openai(monkeypatch):
    """Test an OpenAI key alone switches the provider on."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    config = Config.from_env()
    assert config.provider == "openai"
    assert config.api_key == "sk-test"


def test_config_explicit_provider_wins(monkeypatch):
    """Test an explicit provider is kept even when a key is present."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("LATENT_PROVIDER", "NONE")
    assert Config.from_env().provider == "none"


def test_config_read_only_from_env(monkeypatch):
    monkeypatch.setenv("LATENT_READ_ONLY", "true")
    assert Config.from_env().read_only is True


def test_config_read_only_override(monkeypatch):
    """Test the CLI override takes precedence over the env var."""
    monkeypatch.setenv("LATENT_READ_ONLY", "yes")
    assert Config.from_env(read_only_override=False).read_only is False


class TestApplySettings:
    @pytest.fixture
    def config(self, tmp_path: Path) -> Config:
        return Config(vault_root=tmp_path / "vault", db_path=tmp_path / "latent.db")

    def test_no_settings_returns_same_config(self, config: Config, store: ContentStore):
        assert config.apply_settings(store) is config

    def test_settings_override_environment(self, config: Config, store: ContentStore, tmp_path: Path):
        store.set_setting(SETTINGS_KEYS["VAULT_PATH"], str(tmp_path / "other"))
        store.set_setting(SETTINGS_KEYS["INDEXER_CHUNK_SIZE"], 300)
        store.set_setting(SETTINGS_KEYS["INDEXER_AUTO_INDEX"], False)
        store.set_setting(
            SETTINGS_KEYS["AI_PROVIDER"],
            {"type": "ollama", "model": "llama3.2", "baseURL": "http://gpu-box:11434"},
        )
        store.set_setting(SETTINGS_KEYS["AI_EMBEDDING"], {"model": "nomic-embed-text"})

        result = config.apply_settings(store)

        assert result.vault_root == tmp_path / "other"
        assert result.chunk_size == 300
        assert result.auto_index is False
        assert result.provider == "ollama"
        assert result.chat_model == "llama3.2"
        assert result.base_url == "http://gpu-box:11434"
        assert result.embedding_model == "nomic-embed-text"
        # The original is untouched
        assert config.chunk_size == 500

    def test_ignores_values_of_the_wrong_type(self, config: Config, store: ContentStore):
        store.set_setting(SETTINGS_KEYS["INDEXER_CHUNK_SIZE"], "big")
        store.set_setting(SETTINGS_KEYS["AI_PROVIDER"], "ollama")

        result = config.apply_settings(store)

        assert result.chunk_size == 500
        assert result.provider == "none"

    def test_invalid_persisted_values_are_rejected(self, config: Config, store: ContentStore):
        store.set_setting(SETTINGS_KEYS["INDEXER_CHUNK_OVERLAP"], 900)
        with pytest.raises(ValueError, match="Chunk overlap"):
            config.apply_settings(store)


class TestValidateSetting:
    @pytest.mark.parametrize(
        ("key", "value"),
        [
            (SETTINGS_KEYS["INDEXER_CHUNK_SIZE"], 800),
            (SETTINGS_KEYS["INDEXER_AUTO_INDEX"], False),
            (SETTINGS_KEYS["VAULT_PATH"], "/notes"),
            (SETTINGS_KEYS["AI_PROVIDER"], {"type": "ollama", "model": "llama3.2"}),
            (SETTINGS_KEYS["AI_EMBEDDING"], {"model": "nomic-embed-text"}),
        ],
    )
    def test_accepts_well_formed_values(self, key, value):
        validate_setting(key, value)

    @pytest.mark.parametrize(
        ("key", "value", "message"),
        [
            ("indexer.colour", 1, "Unknown setting"),
            (SETTINGS_KEYS["INDEXER_CHUNK_SIZE"], "big", "must be a JSON int"),
            (SETTINGS_KEYS["INDEXER_CHUNK_SIZE"], True, "must be a JSON int"),
            (SETTINGS_KEYS["INDEXER_AUTO_INDEX"], 1, "must be a JSON bool"),
            (SETTINGS_KEYS["VAULT_PATH"], "  ", "must not be empty"),
            (SETTINGS_KEYS["AI_PROVIDER"], {"apiKey": "sk-1"}, "Unknown field 'apiKey'"),
            (SETTINGS_KEYS["AI_EMBEDDING"], {"model": 3}, "must be a string"),
        ],
    )
    def test_rejects_malformed_values(self, key, value, message):
        with pytest.raises(ValueError, match=message):
            validate_setting(key, value)
