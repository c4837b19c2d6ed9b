"""Configuration module for latent-mcp.

Loads configuration from environment variables with sensible defaults, then
lets persisted settings (written by `set_setting` and `set_vault_path`) override them.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from latent_mcp.indexer.store import ContentStore

logger = logging.getLogger(__name__)

DB_FILE_NAME = "latent.db"

# Keys of the settings table
SETTINGS_KEYS = {
    "AI_PROVIDER": "ai.provider",
    "AI_EMBEDDING": "ai.embedding",
    "VAULT_PATH": "vault.path",
    "INDEXER_CHUNK_SIZE": "indexer.chunkSize",
    "INDEXER_CHUNK_OVERLAP": "indexer.chunkOverlap",
    "INDEXER_AUTO_INDEX": "indexer.autoIndex",
}

PROVIDER_TYPES = ("openai", "ollama", "none")
CHUNK_STRATEGIES = ("token", "semantic")

# JSON type of each setting, and the string fields allowed in object settings
SETTING_TYPES: dict[str, type] = {
    SETTINGS_KEYS["AI_PROVIDER"]: dict,
    SETTINGS_KEYS["AI_EMBEDDING"]: dict,
    SETTINGS_KEYS["VAULT_PATH"]: str,
    SETTINGS_KEYS["INDEXER_CHUNK_SIZE"]: int,
    SETTINGS_KEYS["INDEXER_CHUNK_OVERLAP"]: int,
    SETTINGS_KEYS["INDEXER_AUTO_INDEX"]: bool,
}
SETTING_FIELDS = {
    SETTINGS_KEYS["AI_PROVIDER"]: ("type", "model", "baseURL"),
    SETTINGS_KEYS["AI_EMBEDDING"]: ("model",),
}


def validate_setting(key: str, value: Any) -> None:
    """Check a setting's shape before it is persisted.

    Range checks (chunk sizes, provider names) are left to Config itself.

    Raises:
        ValueError: Unknown key or a value of the wrong type
    """
    expected = SETTING_TYPES.get(key)
    if expected is None:
        raise ValueError(f"Unknown setting '{key}'. Must be one of: {', '.join(SETTING_TYPES)}")
    # bool is an int subclass
    if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
        raise ValueError(f"Setting '{key}' must be a JSON {expected.__name__}")
    if expected is str and not value.strip():
        raise ValueError(f"Setting '{key}' must not be empty")
    if expected is dict:
        allowed = SETTING_FIELDS[key]
        for field_name, field_value in value.items():
            if field_name not in allowed:
                raise ValueError(
                    f"Unknown field '{field_name}' in '{key}'. Allowed: {', '.join(allowed)}"
                )
            if not isinstance(field_value, str):
                raise ValueError(f"Field '{field_name}' in '{key}' must be a string")


def _env_int(name: str, default: int, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
        if minimum is not None and value < minimum:
            raise ValueError(f"must be >= {minimum}, got {value}")
    except ValueError as e:
        raise ValueError(f"Invalid {name} value '{raw}': {e}") from e
    return value


def _env_float(name: str, default: float, minimum: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
        if minimum is not None and value < minimum:
            raise ValueError(f"must be >= {minimum}, got {value}")
    except ValueError as e:
        raise ValueError(f"Invalid {name} value '{raw}': {e}") from e
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes")


@dataclass
class Config:
    """Application configuration."""

    vault_root: Path
    db_path: Path
    port: int = 8080
    read_only: bool = False

    # Indexer tuning
    chunk_size: int = 500
    chunk_overlap: int = 50
    chunk_strategy: str = "token"
    debounce_seconds: float = 1.0
    poll_interval: float = 0.5
    native_events: bool = True
    auto_index: bool = True

    # Providers
    provider: str = "none"
    api_key: str | None = None
    base_url: str | None = None
    chat_model: str = "gpt-4o"
    embedding_model: str = "text-embedding-3-small"
    embed_batch_size: int = 10
    embed_concurrency: int = 4
    embed_max_attempts: int = 3

    # Retrieval and agent
    top_k: int = 10
    min_score: float = 0.5
    agent_max_turns: int = 10
    agent_allow_destructive: bool = False

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.chunk_size}")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError(
                f"Chunk overlap must be in [0, {self.chunk_size}), got {self.chunk_overlap}"
            )
        if self.chunk_strategy not in CHUNK_STRATEGIES:
            raise ValueError(f"Unknown chunk strategy: {self.chunk_strategy}")
        if self.provider not in PROVIDER_TYPES:
            raise ValueError(
                f"Unknown provider '{self.provider}'. Must be one of: {', '.join(PROVIDER_TYPES)}"
            )
        if not 1 <= self.port <= 65535:
            raise ValueError(f"Port must be between 1 and 65535, got {self.port}")

    @classmethod
    def from_env(cls, read_only_override: bool | None = None) -> "Config":
        """Load configuration from environment variables.

        Args:
            read_only_override: If provided, overrides the LATENT_READ_ONLY env var.
        """
        default_vault = str(Path.home() / "Latent")
        vault_root = Path(os.getenv("LATENT_VAULT", default_vault)).expanduser()

        default_db = str(Path.home() / ".latent" / DB_FILE_NAME)
        db_path = Path(os.getenv("LATENT_DB", default_db)).expanduser()

        port_str = os.getenv("LATENT_PORT", "8080")
        try:
            port = int(port_str)
            if not 1 <= port <= 65535:
                raise ValueError(f"Port must be between 1 and 65535, got {port}")
        except ValueError as e:
            raise ValueError(f"Invalid LATENT_PORT value '{port_str}': {e}") from e

        # CLI flag takes precedence over env var
        if read_only_override is not None:
            read_only = read_only_override
        else:
            read_only = _env_bool("LATENT_READ_ONLY", False)

        provider = os.getenv("LATENT_PROVIDER", "").lower()
        api_key = os.getenv("LATENT_API_KEY") or os.getenv("OPENAI_API_KEY")
        if not provider:
            # An OpenAI key alone is enough to switch providers on
            provider = "openai" if api_key else "none"

        return cls(
            vault_root=vault_root,
            db_path=db_path,
            port=port,
            read_only=read_only,
            chunk_size=_env_int("LATENT_CHUNK_SIZE", 500, minimum=1),
            chunk_overlap=_env_int("LATENT_CHUNK_OVERLAP", 50, minimum=0),
            chunk_strategy=os.getenv("LATENT_CHUNK_STRATEGY", "token").lower(),
            debounce_seconds=_env_int("LATENT_DEBOUNCE_MS", 1000, minimum=0) / 1000,
            poll_interval=_env_int("LATENT_POLL_INTERVAL_MS", 500, minimum=10) / 1000,
            native_events=_env_bool("LATENT_NATIVE_EVENTS", True),
            auto_index=_env_bool("LATENT_AUTO_INDEX", True),
            provider=provider,
            api_key=api_key,
            base_url=os.getenv("LATENT_BASE_URL") or None,
            chat_model=os.getenv("LATENT_CHAT_MODEL", "gpt-4o"),
            embedding_model=os.getenv("LATENT_EMBEDDING_MODEL", "text-embedding-3-small"),
            embed_batch_size=_env_int("LATENT_EMBED_BATCH_SIZE", 10, minimum=1),
            embed_concurrency=_env_int("LATENT_EMBED_CONCURRENCY", 4, minimum=1),
            embed_max_attempts=_env_int("LATENT_EMBED_MAX_ATTEMPTS", 3, minimum=1),
            top_k=_env_int("LATENT_TOP_K", 10, minimum=1),
            min_score=_env_float("LATENT_MIN_SCORE", 0.5),
            agent_max_turns=_env_int("LATENT_AGENT_MAX_TURNS", 10, minimum=1),
            agent_allow_destructive=_env_bool("LATENT_AGENT_ALLOW_DESTRUCTIVE", False),
        )

    def apply_settings(self, store: "ContentStore") -> "Config":
        """Return a copy with persisted settings layered on top.

        Settings are written by the control operations (`set_setting`, `set_vault_path`),
        so they represent the most recent explicit choice and win over the
        environment.
        """
        settings = store.get_all_settings()
        overrides: dict[str, Any] = {}

        vault_path = settings.get(SETTINGS_KEYS["VAULT_PATH"])
        if isinstance(vault_path, str) and vault_path:
            overrides["vault_root"] = Path(vault_path).expanduser()

        chunk_size = settings.get(SETTINGS_KEYS["INDEXER_CHUNK_SIZE"])
        if isinstance(chunk_size, int):
            overrides["chunk_size"] = chunk_size
        chunk_overlap = settings.get(SETTINGS_KEYS["INDEXER_CHUNK_OVERLAP"])
        if isinstance(chunk_overlap, int):
            overrides["chunk_overlap"] = chunk_overlap
        auto_index = settings.get(SETTINGS_KEYS["INDEXER_AUTO_INDEX"])
        if isinstance(auto_index, bool):
            overrides["auto_index"] = auto_index

        ai_provider = settings.get(SETTINGS_KEYS["AI_PROVIDER"])
        if isinstance(ai_provider, dict):
            if ai_provider.get("type"):
                overrides["provider"] = ai_provider["type"]
            if ai_provider.get("model"):
                overrides["chat_model"] = ai_provider["model"]
            if ai_provider.get("baseURL"):
                overrides["base_url"] = ai_provider["baseURL"]
        ai_embedding = settings.get(SETTINGS_KEYS["AI_EMBEDDING"])
        if isinstance(ai_embedding, dict) and ai_embedding.get("model"):
            overrides["embedding_model"] = ai_embedding["model"]

        if not overrides:
            return self
        logger.debug("Applying persisted settings: %s", json.dumps(sorted(overrides)))
        return dataclasses.replace(self, **overrides)
