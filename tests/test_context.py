"""Tests for the application context."""

from pathlib import Path

import pytest
import pytest_asyncio

from latent_mcp.config import SETTINGS_KEYS, Config
from latent_mcp.context import AppContext
from latent_mcp.errors import ValidationError
from latent_mcp.indexer import ContentStore


@pytest.fixture
def config(tmp_path: Path, vault: Path) -> Config:
    return Config(
        vault_root=vault,
        db_path=tmp_path / "index" / "latent.db",
        chunk_size=20,
        chunk_overlap=5,
        debounce_seconds=0.05,
        poll_interval=0.05,
        native_events=False,
        min_score=0.1,
    )


@pytest_asyncio.fixture
async def ctx(config: Config, provider, tokenizer):
    context = AppContext.create(config, provider=provider, tokenizer=tokenizer)
    yield context
    await context.close()


class TestCreate:
    @pytest.mark.asyncio
    async def test_wires_components(self, ctx: AppContext, vault: Path):
        assert ctx.vault_root == vault
        assert ctx.gateway is not None
        assert ctx.agent is not None
        assert ctx.executor.vault_root == vault.resolve()
        assert ctx.search.min_score == 0.1

    @pytest.mark.asyncio
    async def test_without_provider(self, config: Config, tokenizer):
        context = AppContext.create(config, tokenizer=tokenizer)
        try:
            assert context.provider is None
            assert context.gateway is None
            assert context.agent is None
            assert context.status()["embedding_model"] is None
        finally:
            await context.close()

    @pytest.mark.asyncio
    async def test_persisted_settings_win(self, config: Config, provider, tokenizer):
        seeded = ContentStore(config.db_path)
        seeded.initialize()
        seeded.set_setting(SETTINGS_KEYS["INDEXER_CHUNK_SIZE"], 40)
        seeded.close()

        context = AppContext.create(config, provider=provider, tokenizer=tokenizer)
        try:
            assert context.config.chunk_size == 40
        finally:
            await context.close()


class TestSetVaultPath:
    @pytest.mark.asyncio
    async def test_switches_vault_and_clears_index(
        self, ctx: AppContext, write_note, tmp_path: Path
    ):
        write_note("a.md", "# A")
        await ctx.sync.reindex_all()
        other = tmp_path / "other"
        other.mkdir()

        root = await ctx.set_vault_path(str(other))

        assert root == other.resolve()
        assert ctx.vault_root == other.resolve()
        assert ctx.store.stats()["documents"] == 0
        assert ctx.store.get_setting(SETTINGS_KEYS["VAULT_PATH"]) == str(other.resolve())
        assert ctx.indexer.vault_root == other.resolve()
        assert ctx.executor.vault_root == other.resolve()

    @pytest.mark.asyncio
    async def test_same_vault_keeps_index(self, ctx: AppContext, vault: Path, write_note):
        write_note("a.md", "# A")
        await ctx.sync.reindex_all()

        await ctx.set_vault_path(str(vault))

        assert ctx.store.list_paths() == {"a.md"}

    @pytest.mark.asyncio
    async def test_restarts_sync(self, ctx: AppContext, tmp_path: Path):
        await ctx.sync.start(initial_scan=False)
        other = tmp_path / "other"
        other.mkdir()

        await ctx.set_vault_path(str(other))

        assert ctx.sync.is_running
        assert ctx.sync.watcher.vault_root == other.resolve()

    @pytest.mark.asyncio
    async def test_rejects_missing_directory(self, ctx: AppContext, tmp_path: Path, vault: Path):
        with pytest.raises(ValidationError, match="not a directory"):
            await ctx.set_vault_path(str(tmp_path / "missing"))
        assert ctx.vault_root == vault


class TestStatus:
    @pytest.mark.asyncio
    async def test_reports_index_and_sync(self, ctx: AppContext, vault: Path, write_note):
        write_note("a.md", "# A\n\nText.")
        await ctx.sync.reindex_all()

        status = ctx.status()

        assert status["vault_path"] == str(vault)
        assert status["embedding_model"] == "fake-embed"
        assert status["index"]["documents"] == 1
        assert status["index"]["embedded_chunks"] == status["index"]["chunks"]
        assert status["sync"]["running"] is False


class TestSetSetting:
    @pytest.mark.asyncio
    async def test_chunk_size_applies_and_clears_index(self, ctx: AppContext, write_note):
        write_note("a.md", "# A")
        await ctx.sync.reindex_all()

        config = await ctx.set_setting(SETTINGS_KEYS["INDEXER_CHUNK_SIZE"], 40)

        assert config.chunk_size == 40
        assert ctx.indexer.chunk_size == 40
        assert ctx.store.get_setting(SETTINGS_KEYS["INDEXER_CHUNK_SIZE"]) == 40
        assert ctx.store.stats()["documents"] == 0

    @pytest.mark.asyncio
    async def test_auto_index_keeps_index(self, ctx: AppContext, write_note):
        write_note("a.md", "# A")
        await ctx.sync.reindex_all()

        await ctx.set_setting(SETTINGS_KEYS["INDEXER_AUTO_INDEX"], False)

        assert ctx.config.auto_index is False
        assert ctx.store.list_paths() == {"a.md"}

    @pytest.mark.asyncio
    async def test_rejected_value_is_rolled_back(self, ctx: AppContext):
        await ctx.set_setting(SETTINGS_KEYS["INDEXER_CHUNK_SIZE"], 40)

        with pytest.raises(ValidationError, match="Chunk overlap"):
            await ctx.set_setting(SETTINGS_KEYS["INDEXER_CHUNK_SIZE"], 3)

        assert ctx.store.get_setting(SETTINGS_KEYS["INDEXER_CHUNK_SIZE"]) == 40
        assert ctx.config.chunk_size == 40

    @pytest.mark.asyncio
    async def test_new_key_is_removed_on_rejection(self, ctx: AppContext):
        with pytest.raises(ValidationError, match="Chunk overlap"):
            await ctx.set_setting(SETTINGS_KEYS["INDEXER_CHUNK_OVERLAP"], 900)

        assert SETTINGS_KEYS["INDEXER_CHUNK_OVERLAP"] not in ctx.get_settings()

    @pytest.mark.asyncio
    async def test_malformed_value(self, ctx: AppContext):
        with pytest.raises(ValidationError, match="must be a JSON int"):
            await ctx.set_setting(SETTINGS_KEYS["INDEXER_CHUNK_SIZE"], "big")
        assert ctx.get_settings() == {}

    @pytest.mark.asyncio
    async def test_provider_change_builds_a_new_provider(self, config: Config, provider, tokenizer):
        built: list[Config] = []

        def factory(new_config: Config):
            built.append(new_config)
            return None

        context = AppContext.create(config, provider=provider, tokenizer=tokenizer, provider_factory=factory)
        try:
            await context.set_setting(SETTINGS_KEYS["AI_EMBEDDING"], {"model": "nomic-embed-text"})

            assert [c.embedding_model for c in built] == ["nomic-embed-text"]
            assert context.provider is None
            assert context.gateway is None
            assert context.agent is None
            assert context.indexer.gateway is None
        finally:
            await context.close()

    @pytest.mark.asyncio
    async def test_provider_that_cannot_be_built_is_rolled_back(self, ctx: AppContext, provider):
        # openai without an API key or base URL
        with pytest.raises(ValidationError, match="needs LATENT_API_KEY"):
            await ctx.set_setting(SETTINGS_KEYS["AI_PROVIDER"], {"type": "openai"})

        assert ctx.provider is provider
        assert ctx.get_settings() == {}

    @pytest.mark.asyncio
    async def test_vault_path_switches_vault(self, ctx: AppContext, tmp_path: Path):
        other = tmp_path / "other"
        other.mkdir()

        await ctx.set_setting(SETTINGS_KEYS["VAULT_PATH"], str(other))

        assert ctx.vault_root == other.resolve()

    @pytest.mark.asyncio
    async def test_restarts_sync(self, ctx: AppContext):
        await ctx.sync.start(initial_scan=False)

        await ctx.set_setting(SETTINGS_KEYS["INDEXER_CHUNK_SIZE"], 40)

        assert ctx.sync.is_running
        assert ctx.sync.indexer is ctx.indexer


class TestListDocuments:
    @pytest.mark.asyncio
    async def test_summarizes_indexed_notes(self, ctx: AppContext, write_note):
        write_note("b.md", "---\ntags: [physics]\n---\n# Bee\n\nThree words here.")
        write_note("a.md", "# A")
        await ctx.sync.reindex_all()

        documents = ctx.list_documents()

        assert [d["path"] for d in documents] == ["a.md", "b.md"]
        assert documents[1]["title"] == "Bee"
        assert documents[1]["tags"] == ["physics"]
        assert documents[1]["last_indexed_at"] is not None
