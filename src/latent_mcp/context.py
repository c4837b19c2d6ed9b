"""Application context: builds and owns every component of a running server."""

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from latent_mcp.agent import AgentLoop
from latent_mcp.config import SETTINGS_KEYS, Config, validate_setting
from latent_mcp.embedding import EmbeddingGateway
from latent_mcp.errors import ValidationError
from latent_mcp.indexer import ContentStore, Indexer
from latent_mcp.indexer.chunker import Tokenizer
from latent_mcp.providers import ChatProvider, EmbeddingProvider, create_provider
from latent_mcp.search import SearchEngine
from latent_mcp.sync import SyncManager
from latent_mcp.tools import ToolExecutor

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Config], Any]

# Config fields that need a new provider, or an index rebuilt from scratch
PROVIDER_FIELDS = ("provider", "chat_model", "base_url", "embedding_model")
INDEX_FIELDS = ("chunk_size", "chunk_overlap", "embedding_model")


class AppContext:
    """
    Explicit wiring of store, providers, indexer, search, tools and agent.

    Components receive what they need through their constructors; nothing
    is read from module globals. Changing the vault path or a setting
    rebuilds the affected components in place.
    """

    def __init__(
        self,
        config: Config,
        store: ContentStore,
        provider: Any = None,
        tokenizer: Tokenizer | None = None,
        provider_factory: ProviderFactory = create_provider,
    ):
        """
        Args:
            config: Effective configuration (environment plus settings)
            store: Initialized content store
            provider: Chat/embedding backend, or None to run without one
            tokenizer: Tokenizer override for chunking
            provider_factory: Builds a new backend when provider settings change
        """
        self.config = config
        self.store = store
        self.provider = provider
        self.tokenizer = tokenizer
        self._provider_factory = provider_factory
        self.gateway = self._build_gateway()
        self._wire()

    @classmethod
    def create(
        cls,
        config: Config,
        provider: Any = None,
        tokenizer: Tokenizer | None = None,
        provider_factory: ProviderFactory = create_provider,
    ) -> "AppContext":
        """
        Open the store, layer persisted settings on the config and build
        everything.

        Args:
            config: Configuration loaded from the environment
            provider: Backend override; by default one is built from the config
            tokenizer: Tokenizer override for chunking
            provider_factory: Backend factory, also used when settings change
        """
        logger.info("Initializing content store at %s", config.db_path)
        store = ContentStore(config.db_path)
        store.initialize()
        config = config.apply_settings(store)
        if provider is None:
            provider = provider_factory(config)
        return cls(
            config, store, provider=provider, tokenizer=tokenizer, provider_factory=provider_factory
        )

    def _build_gateway(self) -> EmbeddingGateway | None:
        if not isinstance(self.provider, EmbeddingProvider):
            return None
        return EmbeddingGateway(
            self.provider,
            batch_size=self.config.embed_batch_size,
            max_concurrency=self.config.embed_concurrency,
            max_attempts=self.config.embed_max_attempts,
        )

    def _wire(self) -> None:
        """(Re)build every component bound to the vault root."""
        config = self.config
        self.indexer = Indexer(
            config.vault_root,
            self.store,
            gateway=self.gateway,
            chunk_size=config.chunk_size,
            chunk_overlap=config.chunk_overlap,
            chunk_strategy=config.chunk_strategy,
            tokenizer=self.tokenizer,
        )
        self.search = SearchEngine(
            self.store, self.gateway, min_score=config.min_score, top_k=config.top_k
        )
        self.sync = SyncManager(
            self.indexer,
            debounce_seconds=config.debounce_seconds,
            poll_interval=config.poll_interval,
            native_events=config.native_events,
        )
        self.executor = ToolExecutor(
            config.vault_root,
            self.store,
            self.search,
            on_note_written=self.sync.request_reindex,
            read_only=config.read_only,
            allow_destructive=config.agent_allow_destructive,
        )
        self.agent: AgentLoop | None = None
        if isinstance(self.provider, ChatProvider):
            self.agent = AgentLoop(
                self.provider, self.executor, max_turns=config.agent_max_turns
            )

    @property
    def vault_root(self) -> Path:
        return self.config.vault_root

    async def set_vault_path(self, path: str) -> Path:
        """
        Point the server at another vault.

        The index belongs to the previous vault, so it is cleared. Syncing
        restarts on the new vault if it was running.
        """
        root = Path(path).expanduser().resolve()
        if not root.is_dir():
            raise ValidationError(f"Vault path is not a directory: {path}", {"path": path})

        was_running = self.sync.is_running
        await self.sync.stop()

        await asyncio.to_thread(self.store.set_setting, SETTINGS_KEYS["VAULT_PATH"], str(root))
        if root != self.config.vault_root.expanduser().resolve():
            await asyncio.to_thread(self.store.clear)
        self.config = dataclasses.replace(self.config, vault_root=root)
        self._wire()
        logger.info("Vault path set to %s", root)

        if was_running:
            await self.sync.start()
        return root

    def get_settings(self) -> dict[str, Any]:
        """Every persisted setting, key -> decoded value."""
        return self.store.get_all_settings()

    async def set_setting(self, key: str, value: Any) -> Config:
        """
        Persist one setting and apply it to the running server.

        The value is checked against the effective Config before the change
        sticks; an invalid one is rolled back. A new provider is built when
        provider settings change. Chunking or embedding model changes clear
        the index, since stored chunks no longer match. Syncing restarts if
        it was running.

        Raises:
            ValidationError: Unknown key, wrong type or a rejected value
        """
        try:
            validate_setting(key, value)
        except ValueError as e:
            raise ValidationError(str(e), {"key": key}) from e
        if key == SETTINGS_KEYS["VAULT_PATH"]:
            await self.set_vault_path(value)
            return self.config

        previous = await asyncio.to_thread(self.store.get_setting, key)
        await asyncio.to_thread(self.store.set_setting, key, value)
        try:
            candidate = self.config.apply_settings(self.store)
            provider = self.provider
            if _fields(candidate, PROVIDER_FIELDS) != _fields(self.config, PROVIDER_FIELDS):
                provider = self._provider_factory(candidate)
        except ValueError as e:
            await asyncio.to_thread(self._restore_setting, key, previous)
            raise ValidationError(f"Invalid value for {key}: {e}", {"key": key}) from e

        was_running = self.sync.is_running
        await self.sync.stop()

        rebuild = _fields(candidate, INDEX_FIELDS) != _fields(self.config, INDEX_FIELDS)
        if provider is not self.provider:
            await self._close_provider()
            self.provider = provider
        self.config = candidate
        self.gateway = self._build_gateway()
        if rebuild:
            await asyncio.to_thread(self.store.clear)
            logger.info("Index cleared, notes are re-chunked on the next reindex")
        self._wire()
        logger.info("Setting %s updated", key)

        if was_running:
            await self.sync.start()
        return self.config

    def _restore_setting(self, key: str, previous: Any) -> None:
        if previous is None:
            self.store.delete_setting(key)
        else:
            self.store.set_setting(key, previous)

    def list_documents(self) -> list[dict[str, Any]]:
        """Summaries of every indexed note, ordered by path."""
        return [
            {
                "path": doc.path,
                "title": doc.title,
                "word_count": doc.word_count,
                "modified_at": doc.modified_at,
                "last_indexed_at": doc.last_indexed_at,
                "tags": doc.frontmatter.get("tags"),
            }
            for doc in self.store.list_documents()
        ]

    def status(self) -> dict[str, Any]:
        """Index and sync status for reporting."""
        return {
            "vault_path": str(self.config.vault_root),
            "provider": self.config.provider if self.provider is not None else "none",
            "embedding_model": self.gateway.model if self.gateway is not None else None,
            "index": self.store.stats(),
            "sync": self.sync.status(),
        }

    async def close(self) -> None:
        """Stop syncing and release connections."""
        await self.sync.stop()
        await self._close_provider()
        self.store.close()

    async def _close_provider(self) -> None:
        aclose = getattr(self.provider, "aclose", None)
        if aclose is not None:
            await aclose()


def _fields(config: Config, names: tuple[str, ...]) -> tuple:
    return tuple(getattr(config, name) for name in names)
