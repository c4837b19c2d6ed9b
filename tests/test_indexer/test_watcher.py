"""Tests for the vault watcher."""

import asyncio
from pathlib import Path

import pytest
from watchfiles import Change

from latent_mcp.indexer.models import FileEvent
from latent_mcp.indexer.watcher import MarkdownFilter, VaultWatcher, WatcherState


def make_watcher(vault: Path, debounce: float = 0.05, poll: float = 60.0) -> VaultWatcher:
    """Watcher without native events; a long poll keeps the scan out of the way."""
    return VaultWatcher(
        vault,
        asyncio.Queue(),
        debounce_seconds=debounce,
        poll_interval=poll,
        native_events=False,
    )


class TestMarkdownFilter:
    def test_accepts_notes(self, vault: Path):
        watch_filter = MarkdownFilter(vault)
        assert watch_filter(Change.added, str(vault / "research" / "quantum.md"))

    def test_rejects_other_files(self, vault: Path):
        watch_filter = MarkdownFilter(vault)
        assert not watch_filter(Change.added, str(vault / "image.png"))
        assert not watch_filter(Change.modified, str(vault / ".obsidian" / "workspace.md"))
        assert not watch_filter(Change.added, str(vault.parent / "outside.md"))


class TestReconcile:
    @pytest.mark.asyncio
    async def test_detects_add_change_and_unlink(self, vault: Path):
        watcher = make_watcher(vault)

        assert watcher.reconcile({"a.md": 1.0, "b.md": 1.0}) == 2
        assert watcher.pending == {"a.md": "add", "b.md": "add"}
        await watcher.flush()

        assert watcher.reconcile({"a.md": 2.0}) == 2
        batch = await watcher.flush()

        assert batch == [FileEvent("change", "a.md"), FileEvent("unlink", "b.md")]
        assert watcher.queue.qsize() == 2

    def test_no_differences(self, vault: Path):
        watcher = make_watcher(vault)
        watcher.reconcile({"a.md": 1.0})
        watcher._pending.clear()

        assert watcher.reconcile({"a.md": 1.0}) == 0
        assert watcher.pending == {}


class TestCoalescing:
    def test_last_event_per_path_wins(self, vault: Path):
        watcher = make_watcher(vault)

        watcher.enqueue("add", "a.md")
        watcher.enqueue("change", "b.md")
        watcher.enqueue("unlink", "a.md")

        # Order follows the most recent event of each path
        assert list(watcher.pending.items()) == [("b.md", "change"), ("a.md", "unlink")]

    def test_ignores_non_notes(self, vault: Path):
        watcher = make_watcher(vault)

        watcher.enqueue("add", "image.png")
        watcher.enqueue("add", ".obsidian/app.md")

        assert watcher.pending == {}

    @pytest.mark.asyncio
    async def test_flush_without_pending_events(self, vault: Path):
        watcher = make_watcher(vault)

        assert await watcher.flush() == []
        assert watcher.queue.empty()


class TestNativeEvents:
    def test_added_file(self, vault: Path, write_note):
        path = write_note("a.md", "# A")
        watcher = make_watcher(vault)

        watcher._handle_native(Change.added, path)

        assert watcher.pending == {"a.md": "add"}
        assert watcher._mtimes["a.md"] == path.stat().st_mtime

    def test_deleted_file(self, vault: Path):
        watcher = make_watcher(vault)
        watcher._mtimes["a.md"] = 1.0

        watcher._handle_native(Change.deleted, vault / "a.md")

        assert watcher.pending == {"a.md": "unlink"}
        assert "a.md" not in watcher._mtimes

    def test_vanished_before_stat(self, vault: Path):
        watcher = make_watcher(vault)

        watcher._handle_native(Change.modified, vault / "gone.md")

        assert watcher.pending == {"gone.md": "unlink"}

    def test_outside_vault(self, vault: Path):
        watcher = make_watcher(vault)

        watcher._handle_native(Change.added, vault.parent / "outside.md")

        assert watcher.pending == {}


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, vault: Path, write_note):
        write_note("a.md", "# A")
        watcher = make_watcher(vault)
        assert watcher.state is WatcherState.STOPPED

        await watcher.start()
        try:
            assert watcher.state is WatcherState.WATCHING
            assert watcher.is_running
            assert watcher._mtimes == {"a.md": (vault / "a.md").stat().st_mtime}
        finally:
            await watcher.stop()

        assert watcher.state is WatcherState.STOPPED
        assert watcher._tasks == set()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, vault: Path):
        watcher = make_watcher(vault)
        await watcher.stop()

        await watcher.start()
        await watcher.stop()
        await watcher.stop()

        assert watcher.state is WatcherState.STOPPED

    @pytest.mark.asyncio
    async def test_start_twice_is_ignored(self, vault: Path):
        watcher = make_watcher(vault)
        await watcher.start()
        try:
            tasks = set(watcher._tasks)
            await watcher.start()
            assert watcher._tasks == tasks
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_stop_drops_pending_events(self, vault: Path):
        watcher = make_watcher(vault, debounce=30.0)
        await watcher.start()

        watcher.enqueue("change", "a.md")
        await watcher.stop()

        assert watcher.pending == {}
        assert watcher.queue.empty()


class TestDebounce:
    @pytest.mark.asyncio
    async def test_burst_becomes_one_batch(self, vault: Path):
        watcher = make_watcher(vault, debounce=0.1)
        await watcher.start()
        try:
            watcher.enqueue("add", "a.md")
            watcher.enqueue("change", "b.md")
            watcher.enqueue("change", "a.md")

            batch = await asyncio.wait_for(watcher.queue.get(), timeout=5)

            assert batch == [FileEvent("change", "b.md"), FileEvent("change", "a.md")]
            assert watcher.queue.empty()
            assert watcher.pending == {}
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_new_event_restarts_timer(self, vault: Path):
        watcher = make_watcher(vault, debounce=0.5)
        await watcher.start()
        try:
            watcher.enqueue("add", "a.md")
            await asyncio.sleep(0.3)
            watcher.enqueue("add", "b.md")
            await asyncio.sleep(0.3)

            # 0.6s after the first event, but only 0.3s after the last one
            assert watcher.queue.empty()

            batch = await asyncio.wait_for(watcher.queue.get(), timeout=5)
            assert [event.path for event in batch] == ["a.md", "b.md"]
        finally:
            await watcher.stop()


class TestReconciliationLoop:
    @pytest.mark.asyncio
    async def test_picks_up_new_and_deleted_notes(self, vault: Path, write_note):
        old = write_note("old.md", "# Old")
        watcher = make_watcher(vault, debounce=0.05, poll=0.05)
        await watcher.start()
        try:
            write_note("new.md", "# New")
            old.unlink()

            events: set[FileEvent] = set()
            while len(events) < 2:
                batch = await asyncio.wait_for(watcher.queue.get(), timeout=5)
                events.update(batch)

            assert events == {FileEvent("add", "new.md"), FileEvent("unlink", "old.md")}
        finally:
            await watcher.stop()
