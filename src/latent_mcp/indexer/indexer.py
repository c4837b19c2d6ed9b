"""Indexer that runs vault changes through parse, chunk, embed and store."""

import asyncio
import logging
import sqlite3
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from latent_mcp.embedding import EmbeddingGateway
from latent_mcp.errors import CorruptedContentError, ProviderError
from latent_mcp.indexer.chunker import Tokenizer, chunk_body
from latent_mcp.indexer.models import (
    Chunk,
    Document,
    FileEvent,
    IndexOutcome,
    IndexProgress,
    IndexResult,
    Link,
)
from latent_mcp.indexer.parser import count_words, parse_markdown
from latent_mcp.indexer.store import ContentStore
from latent_mcp.indexer.walker import compute_checksum, walk_vault

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[IndexProgress], None]

# Chunks fetched per round of the embedding backfill
BACKFILL_BATCH = 100


@dataclass
class _FileSnapshot:
    content: bytes
    created_at: float
    modified_at: float


def _read_snapshot(path: Path) -> _FileSnapshot | None:
    """Read bytes and timestamps, or None if the file is gone."""
    try:
        stat = path.stat()
        content = path.read_bytes()
    except FileNotFoundError:
        return None
    created_at = getattr(stat, "st_birthtime", None) or stat.st_ctime
    return _FileSnapshot(content=content, created_at=created_at, modified_at=stat.st_mtime)


class Indexer:
    """
    Keeps the ContentStore in step with the vault.

    The filesystem is always the source of truth. The store is a derived
    index that can be regenerated at any time with reindex_all().

    Concurrency:
        Work on one path is serialized by a per-path asyncio.Lock, so the
        checksum check and the write that follows cannot interleave with
        another event for the same note. Different paths proceed
        independently. Blocking work (file reads, SQLite, tokenizing) runs in
        worker threads.
    """

    def __init__(
        self,
        vault_root: Path,
        store: ContentStore,
        gateway: EmbeddingGateway | None = None,
        chunk_size: int = 500,
        chunk_overlap: int = 50,
        chunk_strategy: str = "token",
        tokenizer: Tokenizer | None = None,
    ):
        """
        Initialize the indexer.

        Args:
            vault_root: Root directory of the vault
            store: Initialized content store
            gateway: Embedding gateway, or None to store chunks without vectors
            chunk_size: Maximum tokens per chunk
            chunk_overlap: Tokens shared by consecutive chunks
            chunk_strategy: "token" or "semantic"
            tokenizer: Tokenizer override (defaults to tiktoken cl100k_base)
        """
        self.vault_root = vault_root.expanduser().resolve()
        self.store = store
        self.gateway = gateway
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.chunk_strategy = chunk_strategy
        self.tokenizer = tokenizer
        # Per-path lock plus the number of tasks holding or waiting for it
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _path_lock(self, path: str) -> AsyncIterator[None]:
        """Serialize work on one path. The entry is dropped once nobody needs it."""
        lock, users = self._locks.get(path, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[path] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[path]
            if users == 1:
                del self._locks[path]
            else:
                self._locks[path] = (lock, users - 1)

    def _absolute(self, path: str) -> Path | None:
        """Resolve a relative path, or None if it lands outside the vault."""
        resolved = (self.vault_root / path).resolve()
        if not resolved.is_relative_to(self.vault_root):
            return None
        return resolved

    # Event handling

    async def handle_event(self, event: FileEvent) -> IndexResult:
        """Apply one add/change/unlink event."""
        if event.type == "unlink":
            return await self.delete_file(event.path)
        return await self.index_file(event.path)

    async def handle_events(
        self, events: list[FileEvent], progress: ProgressCallback | None = None
    ) -> list[IndexResult]:
        """Apply a debounced batch in order. A failing file never stops the batch."""
        results: list[IndexResult] = []
        total = len(events)
        for position, event in enumerate(events, start=1):
            _report(progress, IndexProgress("indexing", position, total, event.path))
            result = await self.handle_event(event)
            if result.outcome is IndexOutcome.FAILED:
                _report(
                    progress,
                    IndexProgress("error", position, total, event.path, error=result.error),
                )
            results.append(result)
        _report(progress, IndexProgress("complete", total, total))
        return results

    async def index_file(self, path: str) -> IndexResult:
        """
        Index one note by relative path.

        Unchanged content (same checksum) is skipped without touching the
        store or the embedding provider. A missing file is treated as a delete.
        """
        async with self._path_lock(path):
            try:
                return await self._index_file(path)
            except CorruptedContentError as e:
                logger.error("Skipping unreadable note %s: %s", path, e.message)
                return IndexResult(path, IndexOutcome.FAILED, error=e.message)
            except (OSError, sqlite3.Error) as e:
                logger.exception("Failed to index %s", path)
                return IndexResult(path, IndexOutcome.FAILED, error=str(e))

    async def delete_file(self, path: str) -> IndexResult:
        """Remove a note, its chunks and its outgoing links from the store."""
        async with self._path_lock(path):
            try:
                return await self._delete_file(path)
            except sqlite3.Error as e:
                logger.exception("Failed to delete %s", path)
                return IndexResult(path, IndexOutcome.FAILED, error=str(e))

    async def _delete_file(self, path: str) -> IndexResult:
        existed = await asyncio.to_thread(self.store.delete_document, path)
        if existed:
            logger.info("Removed %s from index", path)
        return IndexResult(path, IndexOutcome.DELETED)

    async def _index_file(self, path: str) -> IndexResult:
        absolute = self._absolute(path)
        if absolute is None:
            logger.warning("Skipping file outside vault root: %s", path)
            return IndexResult(path, IndexOutcome.FAILED, error="Path escapes the vault root")

        snapshot = await asyncio.to_thread(_read_snapshot, absolute)
        if snapshot is None:
            logger.debug("%s vanished before indexing, treating as delete", path)
            return await self._delete_file(path)

        checksum = compute_checksum(snapshot.content)
        existing = await asyncio.to_thread(self.store.get_checksum, path)
        if existing == checksum:
            logger.debug("Unchanged, skipping %s", path)
            return IndexResult(path, IndexOutcome.SKIPPED)

        try:
            content = snapshot.content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptedContentError(path, f"invalid UTF-8 ({e.reason})") from e

        parsed = parse_markdown(content, path)
        text_chunks = await asyncio.to_thread(
            chunk_body,
            parsed.body,
            self.chunk_size,
            self.chunk_overlap,
            self.chunk_strategy,
            self.tokenizer,
        )

        vectors, model, degraded = await self._embed(path, [c.content for c in text_chunks])

        doc = Document(
            path=path,
            checksum=checksum,
            title=parsed.title,
            word_count=count_words(parsed.body),
            created_at=snapshot.created_at,
            modified_at=snapshot.modified_at,
            last_indexed_at=time.time(),
            frontmatter=parsed.frontmatter,
        )
        chunks = [
            Chunk(
                content=text_chunk.content,
                chunk_index=text_chunk.index,
                token_count=text_chunk.token_count,
                embedding=vectors[i] if vectors is not None else None,
                embedding_model=model if vectors is not None else None,
            )
            for i, text_chunk in enumerate(text_chunks)
        ]
        links = [
            Link(
                source_path=path,
                target_path=link.target,
                link_type=link.type,
                link_text=link.text,
            )
            for link in parsed.links
        ]

        await asyncio.to_thread(self.store.index_document, doc, chunks, links)

        outcome = IndexOutcome.DEGRADED if degraded else IndexOutcome.INDEXED
        logger.info("Indexed %s (%d chunks, %s)", path, len(chunks), outcome.value)
        return IndexResult(path, outcome, chunk_count=len(chunks))

    async def _embed(
        self, path: str, texts: list[str]
    ) -> tuple[list[list[float]] | None, str | None, bool]:
        """
        Best-effort embedding.

        Returns (vectors, model, degraded). A provider failure yields no
        vectors at all and marks the result degraded.
        """
        if self.gateway is None or not texts:
            return None, None, False
        try:
            batch = await self.gateway.embed_batch(texts)
        except ProviderError as e:
            logger.warning("Embedding failed for %s, storing chunks without vectors: %s", path, e)
            return None, None, True
        return batch.vectors, batch.model, False

    # Bulk operations

    async def reindex_all(self, progress: ProgressCallback | None = None) -> list[IndexResult]:
        """
        Replay every note in the vault as an ``add`` event.

        Safe to run while the watcher is active: unchanged notes are skipped
        by checksum. Documents whose files disappeared are removed.
        """
        logger.info("Starting full reindex of %s", self.vault_root)
        _report(progress, IndexProgress("scanning", 0, 0))
        files = await asyncio.to_thread(lambda: list(walk_vault(self.vault_root)))
        seen = {info.relative_path for info in files}
        stale = sorted(await asyncio.to_thread(self.store.list_paths) - seen)

        total = len(files) + len(stale)
        results: list[IndexResult] = []
        for position, info in enumerate(files, start=1):
            _report(progress, IndexProgress("indexing", position, total, info.relative_path))
            result = await self.index_file(info.relative_path)
            if result.outcome is IndexOutcome.FAILED:
                _report(
                    progress,
                    IndexProgress("error", position, total, info.relative_path, result.error),
                )
            results.append(result)
        for position, path in enumerate(stale, start=len(files) + 1):
            _report(progress, IndexProgress("indexing", position, total, path))
            results.append(await self.delete_file(path))

        _report(progress, IndexProgress("complete", total, total))
        counts = summarize(results)
        logger.info(
            "Reindex complete: %d indexed, %d skipped, %d deleted, %d degraded, %d failed",
            counts[IndexOutcome.INDEXED],
            counts[IndexOutcome.SKIPPED],
            counts[IndexOutcome.DELETED],
            counts[IndexOutcome.DEGRADED],
            counts[IndexOutcome.FAILED],
        )
        return results

    async def embed_missing(self, batch_limit: int = BACKFILL_BATCH) -> int:
        """
        Backfill embeddings for chunks stored without one.

        Covers notes indexed before a provider was configured or while it was
        failing. Stops at the first provider error. Returns the number of
        chunks embedded.
        """
        if self.gateway is None:
            return 0

        embedded = 0
        while True:
            chunks = await asyncio.to_thread(self.store.get_chunks_missing_embeddings, batch_limit)
            if not chunks:
                break
            try:
                batch = await self.gateway.embed_batch([chunk.content for chunk in chunks])
            except ProviderError as e:
                logger.warning("Embedding backfill stopped: %s", e)
                break
            updated = await asyncio.to_thread(
                self.store.set_chunk_embeddings,
                [(chunk.id, vector) for chunk, vector in zip(chunks, batch.vectors)],
                batch.model,
            )
            embedded += updated
            if updated == 0:
                break

        if embedded:
            logger.info("Backfilled embeddings for %d chunks", embedded)
        return embedded


def summarize(results: list[IndexResult]) -> dict[IndexOutcome, int]:
    """Count results per outcome."""
    counts = {outcome: 0 for outcome in IndexOutcome}
    for result in results:
        counts[result.outcome] += 1
    return counts


def _report(progress: ProgressCallback | None, update: IndexProgress) -> None:
    if progress is not None:
        progress(update)
