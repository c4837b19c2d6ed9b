"""Background sync manager for automatic index updates.

Owns the channel between the VaultWatcher and the Indexer: the watcher puts
debounced batches of file events on a bounded queue, a consumer task applies
them. Also runs the initial full scan and the embedding backfill.
"""

import asyncio
import logging

from latent_mcp.indexer import Indexer
from latent_mcp.indexer.indexer import summarize
from latent_mcp.indexer.models import FileEvent, IndexOutcome, IndexProgress, IndexResult
from latent_mcp.indexer.walker import is_markdown_path
from latent_mcp.indexer.watcher import DEFAULT_DEBOUNCE_SECONDS, DEFAULT_POLL_INTERVAL, VaultWatcher

logger = logging.getLogger(__name__)

# Debounced batches waiting for the indexer; the watcher blocks when full
QUEUE_SIZE = 16


class SyncManager:
    """Keeps the index in sync with changes made to the vault.

    Changes made through the tools go through request_reindex(), which uses
    the watcher's debounced channel while syncing and indexes inline
    otherwise.
    """

    def __init__(
        self,
        indexer: Indexer,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        native_events: bool = True,
        queue_size: int = QUEUE_SIZE,
    ):
        """Initialize the sync manager.

        Args:
            indexer: The indexer that applies file events.
            debounce_seconds: Quiet period before a batch is flushed.
            poll_interval: Seconds between reconciliation scans. Must be > 0.
            native_events: Subscribe to OS file events besides polling.
            queue_size: Maximum batches waiting for the indexer.
        """
        if poll_interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {poll_interval}")

        self.indexer = indexer
        self.queue: asyncio.Queue[list[FileEvent]] = asyncio.Queue(maxsize=queue_size)
        self.watcher = VaultWatcher(
            indexer.vault_root,
            self.queue,
            debounce_seconds=debounce_seconds,
            poll_interval=poll_interval,
            native_events=native_events,
        )
        self.last_progress: IndexProgress | None = None
        self.last_error: str | None = None
        self._consumer: asyncio.Task | None = None
        self._initial_sync: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def start(self, initial_scan: bool = True) -> None:
        """Start watching the vault.

        Args:
            initial_scan: Run a full reindex (checksum-skipping unchanged
                notes) and an embedding backfill in the background.
        """
        if self.is_running:
            logger.warning("Sync already running")
            return

        await self.watcher.start()
        self._consumer = asyncio.create_task(self._consume(), name="latent-sync")
        if initial_scan:
            self._initial_sync = asyncio.create_task(self.reindex_all(), name="latent-initial-sync")
        logger.info(
            "Sync manager started (debounce: %.2fs, poll: %.2fs)",
            self.watcher.debounce_seconds,
            self.watcher.poll_interval,
        )

    async def stop(self) -> None:
        """Stop watching. Safe to call when not running.

        An index write already handed to a worker thread still commits or
        rolls back as a whole.
        """
        await self.watcher.stop()
        tasks = [task for task in (self._initial_sync, self._consumer) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._consumer is not None:
            logger.info("Sync manager stopped")
        self._consumer = None
        self._initial_sync = None

    async def request_reindex(self, path: str) -> None:
        """Bring one note's index entry up to date after a tool changed it."""
        if not is_markdown_path(path):
            logger.debug("Ignoring non-note path %s", path)
            return
        if self.is_running:
            self.watcher.enqueue("change", path)
        else:
            result = await self.indexer.index_file(path)
            self._record(result)

    async def reindex_all(self) -> list[IndexResult]:
        """Full reindex followed by an embedding backfill."""
        results = await self.indexer.reindex_all(progress=self._on_progress)
        for result in results:
            self._record(result)
        await self.indexer.embed_missing()
        return results

    async def drain(self) -> None:
        """Flush pending watcher events and wait until the indexer applied them."""
        await self.watcher.flush()
        await self.queue.join()

    def status(self) -> dict:
        """Snapshot of the sync state for status reporting."""
        progress = None
        if self.last_progress is not None:
            progress = {
                "phase": self.last_progress.phase,
                "current": self.last_progress.current,
                "total": self.last_progress.total,
                "current_file": self.last_progress.current_file,
            }
        return {
            "running": self.is_running,
            "watcher": self.watcher.state.value,
            "pending_events": len(self.watcher.pending),
            "queued_batches": self.queue.qsize(),
            "progress": progress,
            "last_error": self.last_error,
        }

    def _on_progress(self, progress: IndexProgress) -> None:
        self.last_progress = progress
        if progress.phase == "error":
            logger.error("Indexing error for %s: %s", progress.current_file, progress.error)

    def _record(self, result: IndexResult) -> None:
        if result.outcome is IndexOutcome.FAILED:
            self.last_error = f"{result.path}: {result.error}"

    async def _consume(self) -> None:
        """Main sync loop - applies batches until cancelled."""
        logger.debug("Sync loop started")
        while True:
            batch = await self.queue.get()
            try:
                results = await self.indexer.handle_events(batch, progress=self._on_progress)
                for result in results:
                    self._record(result)
                counts = summarize(results)
                changed = len(results) - counts[IndexOutcome.SKIPPED]
                if changed:
                    logger.info(
                        "Auto-sync: %d indexed, %d deleted, %d degraded, %d failed",
                        counts[IndexOutcome.INDEXED],
                        counts[IndexOutcome.DELETED],
                        counts[IndexOutcome.DEGRADED],
                        counts[IndexOutcome.FAILED],
                    )
                else:
                    logger.debug("Auto-sync: no changes detected")
            except Exception:
                logger.exception("Error during auto-sync")
            finally:
                self.queue.task_done()
