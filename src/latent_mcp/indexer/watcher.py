"""Vault watcher: native file events plus a reconciliation scan, debounced."""

import asyncio
import logging
from enum import Enum
from pathlib import Path

from watchfiles import Change, DefaultFilter, awatch

from latent_mcp.indexer.models import FileEvent, FileEventType
from latent_mcp.indexer.walker import is_markdown_path, snapshot_mtimes, to_relative

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 1.0
DEFAULT_POLL_INTERVAL = 0.5

# watchfiles groups raw notifications itself; keep that short, we debounce below
NATIVE_DEBOUNCE_MS = 50

CHANGE_TYPES: dict[Change, FileEventType] = {
    Change.added: "add",
    Change.modified: "change",
    Change.deleted: "unlink",
}


class WatcherState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    WATCHING = "watching"


class MarkdownFilter(DefaultFilter):
    """Only let through ``.md`` files with no hidden path component."""

    def __init__(self, vault_root: Path):
        super().__init__()
        self._vault_root = vault_root

    def __call__(self, change: Change, path: str) -> bool:
        relative = to_relative(self._vault_root, Path(path))
        if relative is None or not is_markdown_path(relative):
            return False
        return super().__call__(change, path)


class VaultWatcher:
    """
    Detects note changes and hands them over as debounced batches.

    Two sources feed the same pending map:
    - native filesystem events (watchfiles)
    - a reconciliation scan every ``poll_interval`` seconds comparing a
      ``path -> mtime`` snapshot with the tree, for events the OS dropped

    The pending map keeps one event per path (the latest wins). Once
    ``debounce_seconds`` pass without a new event, the map is flushed as an
    ordered list of FileEvent onto ``queue``.

    All timers are tasks owned by the watcher and cancelled by stop().
    """

    def __init__(
        self,
        vault_root: Path,
        queue: "asyncio.Queue[list[FileEvent]]",
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        native_events: bool = True,
    ):
        self.vault_root = vault_root.expanduser().resolve()
        self.queue = queue
        self.debounce_seconds = debounce_seconds
        self.poll_interval = poll_interval
        self.native_events = native_events

        self._state = WatcherState.STOPPED
        self._mtimes: dict[str, float] = {}
        self._pending: dict[str, FileEventType] = {}
        self._stop_event: asyncio.Event | None = None
        self._debounce_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is not WatcherState.STOPPED

    @property
    def pending(self) -> dict[str, FileEventType]:
        """Events waiting for the debounce delay (copy)."""
        return dict(self._pending)

    async def start(self) -> None:
        """Take the initial snapshot and start both change sources."""
        if self._state is not WatcherState.STOPPED:
            logger.warning("Watcher already running for %s", self.vault_root)
            return

        self._state = WatcherState.STARTING
        self._stop_event = asyncio.Event()
        self._mtimes = await asyncio.to_thread(snapshot_mtimes, self.vault_root)
        logger.info("Watching %s (%d notes)", self.vault_root, len(self._mtimes))

        self._spawn(self._reconcile_loop(), "reconcile")
        if self.native_events:
            self._spawn(self._native_loop(), "native-events")
        self._state = WatcherState.WATCHING

    async def stop(self) -> None:
        """Cancel every watcher task. Safe to call repeatedly."""
        if self._state is WatcherState.STOPPED:
            return

        if self._stop_event is not None:
            self._stop_event.set()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._pending:
            logger.debug("Dropping %d pending events on stop", len(self._pending))
        self._tasks.clear()
        self._pending.clear()
        self._debounce_task = None
        self._state = WatcherState.STOPPED
        logger.info("Watcher stopped for %s", self.vault_root)

    def enqueue(self, event_type: FileEventType, path: str) -> None:
        """Feed an event through the same coalescing and debounce path."""
        if not is_markdown_path(path):
            logger.debug("Ignoring non-note path %s", path)
            return
        self._record(event_type, path)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"watcher-{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _record(self, event_type: FileEventType, path: str) -> None:
        """Remember the latest event for a path and restart the debounce timer."""
        # Re-insert so batch order follows the most recent event per path
        self._pending.pop(path, None)
        self._pending[path] = event_type

        if not self.is_running:
            return
        if self._debounce_task is not None:
            self._debounce_task.cancel()
        self._debounce_task = self._spawn(self._flush_after_delay(), "debounce")

    async def _flush_after_delay(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        # From here on a new event starts a fresh timer instead of cancelling this flush
        self._debounce_task = None
        await self.flush()

    async def flush(self) -> list[FileEvent]:
        """Hand every pending event to the queue now, as one ordered batch."""
        if not self._pending:
            return []
        batch = [FileEvent(type=event_type, path=path) for path, event_type in self._pending.items()]
        self._pending.clear()
        logger.debug("Flushing %d file events", len(batch))
        await self.queue.put(batch)
        return batch

    def reconcile(self, current: dict[str, float]) -> int:
        """
        Diff a fresh ``path -> mtime`` snapshot against the remembered one.

        Records an event for every difference and returns how many were found.
        """
        found = 0
        for path, mtime in current.items():
            previous = self._mtimes.get(path)
            if previous is None:
                self._record("add", path)
                found += 1
            elif previous != mtime:
                self._record("change", path)
                found += 1
        for path in self._mtimes.keys() - current.keys():
            self._record("unlink", path)
            found += 1
        self._mtimes = current
        return found

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                current = await asyncio.to_thread(snapshot_mtimes, self.vault_root)
            except OSError as e:
                logger.warning("Reconciliation scan of %s failed: %s", self.vault_root, e)
                continue
            found = self.reconcile(current)
            if found:
                logger.debug("Reconciliation scan found %d changes", found)

    async def _native_loop(self) -> None:
        try:
            async for changes in awatch(
                self.vault_root,
                watch_filter=MarkdownFilter(self.vault_root),
                stop_event=self._stop_event,
                debounce=NATIVE_DEBOUNCE_MS,
                recursive=True,
            ):
                for change, raw_path in changes:
                    self._handle_native(change, Path(raw_path))
        except asyncio.CancelledError:
            raise
        except Exception:
            # The reconciliation scan keeps covering the vault
            logger.exception("Native file events unavailable for %s", self.vault_root)

    def _handle_native(self, change: Change, path: Path) -> None:
        relative = to_relative(self.vault_root, path)
        if relative is None:
            return
        event_type = CHANGE_TYPES[change]
        if event_type == "unlink":
            self._mtimes.pop(relative, None)
        else:
            try:
                self._mtimes[relative] = path.stat().st_mtime
            except OSError:
                # Gone again before we could stat it
                event_type = "unlink"
                self._mtimes.pop(relative, None)
        self._record(event_type, relative)
