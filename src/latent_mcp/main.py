"""Main entry point for the latent-mcp MCP server."""

import argparse
import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastmcp import FastMCP

from latent_mcp.config import Config
from latent_mcp.context import AppContext
from latent_mcp.errors import LatentError
from latent_mcp.indexer.indexer import summarize
from latent_mcp.indexer.models import IndexOutcome
from latent_mcp.tools import SearchNotes, UpdateFrontmatter, WriteNote, parse_date, parse_top_k

logger = logging.getLogger(__name__)


def _control(success: bool, message: str) -> dict[str, Any]:
    """Result shape shared by every control operation."""
    return {"success": success, "message": message}


def register_tools(mcp: FastMCP, ctx: AppContext) -> None:
    """Register the note tools and ``ask`` with the FastMCP server.

    Tools look up ``ctx.executor`` on every call, so they keep working after
    the vault path changes.

    Args:
        mcp: FastMCP server instance
        ctx: Application context
    """

    @mcp.tool()
    async def read_note(path: str) -> str:
        """Read the full text of a note.

        Args:
            path: Note path relative to the vault root (".md" may be omitted)
        """
        return await ctx.executor.read_note(path)

    @mcp.tool()
    async def search_notes(
        query: str,
        top_k: int | None = None,
        tags: list[str] | None = None,
        date_after: str | None = None,
        date_before: str | None = None,
    ) -> list[dict]:
        """Semantic search across the vault.

        Falls back to plain substring matching when no embedding provider
        is configured.

        Args:
            query: What to look for
            top_k: Maximum number of results (default: LATENT_TOP_K, at most 50)
            tags: Only notes carrying any of these frontmatter tags
            date_after: Only notes modified on or after this ISO date
            date_before: Only notes modified on or before this ISO date

        Returns:
            List of results with path, title, chunk and score (highest first)
        """
        call = SearchNotes(
            query=query,
            top_k=parse_top_k(top_k),
            tags=tuple(tags) if tags else None,
            date_after=parse_date(date_after, "date_after"),
            date_before=parse_date(date_before, "date_before", end_of_day=True),
        )
        return await ctx.executor.execute(call)

    @mcp.tool()
    async def write_note(path: str, content: str) -> str:
        """Create or overwrite a note. Parent folders are created as needed.

        Args:
            path: Note path relative to the vault root
            content: Full Markdown text
        """
        return await ctx.executor.execute(WriteNote(path=path, content=content))

    @mcp.tool()
    async def update_frontmatter(path: str, updates: dict[str, Any]) -> str:
        """Merge keys into a note's YAML frontmatter, leaving the body untouched.

        Args:
            path: Note path relative to the vault root
            updates: Keys to set
        """
        return await ctx.executor.execute(UpdateFrontmatter(path=path, updates=dict(updates)))

    @mcp.tool()
    async def list_backlinks(path: str) -> list[dict]:
        """List the notes linking to a note.

        Args:
            path: Note path relative to the vault root

        Returns:
            List of backlinks with source_path, source_title, link_text, link_type
        """
        return await ctx.executor.list_backlinks(path)

    @mcp.tool()
    async def ask(question: str) -> dict:
        """Ask the vault agent. It searches and reads notes before answering.

        Args:
            question: The question to answer

        Returns:
            Dict with the answer and the number of turns and tool calls used
        """
        if ctx.agent is None:
            raise ValueError("No chat provider configured (set LATENT_PROVIDER)")
        result = await ctx.agent.run(question)
        return {"answer": result.answer, "turns": result.turns, "tool_calls": result.tool_calls}


def register_control(mcp: FastMCP, ctx: AppContext) -> None:
    """Register the indexer control operations.

    Operations that change state return ``{"success": bool, "message": str}``.
    """

    @mcp.tool()
    def index_status() -> dict:
        """Report index size, sync state and the configured vault."""
        return ctx.status()

    @mcp.tool()
    async def start_indexing() -> dict:
        """Start watching the vault and indexing changes."""
        if ctx.sync.is_running:
            return _control(False, "Indexing is already running")
        await ctx.sync.start()
        return _control(True, f"Watching {ctx.vault_root}")

    @mcp.tool()
    async def stop_indexing() -> dict:
        """Stop watching the vault."""
        if not ctx.sync.is_running:
            return _control(False, "Indexing is not running")
        await ctx.sync.stop()
        return _control(True, "Indexing stopped")

    @mcp.tool()
    async def reindex_all() -> dict:
        """Re-index every note in the vault (unchanged notes are skipped)."""
        results = await ctx.sync.reindex_all()
        counts = summarize(results)
        failed = counts[IndexOutcome.FAILED]
        message = (
            f"{counts[IndexOutcome.INDEXED]} indexed, {counts[IndexOutcome.SKIPPED]} unchanged, "
            f"{counts[IndexOutcome.DELETED]} removed, {counts[IndexOutcome.DEGRADED]} without "
            f"embeddings, {failed} failed"
        )
        return _control(failed == 0, message)

    @mcp.tool()
    def get_vault_path() -> dict:
        """Get the vault directory being indexed."""
        return _control(True, str(ctx.vault_root))

    @mcp.tool()
    async def set_vault_path(path: str) -> dict:
        """Point the server at another vault directory. Clears the index.

        Args:
            path: Absolute path of the vault directory
        """
        if ctx.config.read_only:
            return _control(False, "Server is in read-only mode")
        try:
            root = await ctx.set_vault_path(path)
        except LatentError as e:
            return _control(False, e.message)
        return _control(True, f"Vault path set to {root}")

    @mcp.tool()
    def get_settings() -> dict:
        """Get every persisted setting (ai.provider, indexer.chunkSize, ...)."""
        return ctx.get_settings()

    @mcp.tool()
    async def set_setting(key: str, value: Any) -> dict:
        """Persist a setting and apply it to the running server.

        Changing indexer.chunkSize, indexer.chunkOverlap or ai.embedding
        clears the index; run reindex_all afterwards.

        Args:
            key: One of ai.provider, ai.embedding, vault.path,
                indexer.chunkSize, indexer.chunkOverlap, indexer.autoIndex
            value: JSON value, e.g. 800 or {"type": "ollama", "model": "llama3"}
        """
        if ctx.config.read_only:
            return _control(False, "Server is in read-only mode")
        try:
            await ctx.set_setting(key, value)
        except LatentError as e:
            return _control(False, e.message)
        return _control(True, f"Setting {key} updated")

    @mcp.tool()
    def list_documents() -> list[dict]:
        """List every indexed note with its title, word count and tags."""
        return ctx.list_documents()


def build_lifespan(ctx: AppContext, reindex: bool = False):
    """Build the server lifespan: start syncing on entry, close the context on exit.

    Args:
        ctx: Application context with all components built.
        reindex: Run a full reindex in the background once serving starts,
            even when auto-indexing is off.
    """
    background: set[asyncio.Task] = set()
    started = False

    @asynccontextmanager
    async def lifespan(server: FastMCP | None) -> AsyncIterator[None]:
        nonlocal started
        # May be entered once per client session; only the first one owns the work
        if started:
            yield
            return
        started = True
        if ctx.config.auto_index:
            await ctx.sync.start()
        elif reindex:
            task = asyncio.create_task(ctx.sync.reindex_all(), name="latent-reindex")
            background.add(task)
            task.add_done_callback(background.discard)
        try:
            yield
        finally:
            logger.info("Shutting down...")
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            await ctx.close()

    return lifespan


def create_server(ctx: AppContext, reindex: bool = False) -> FastMCP:
    """Create and configure the MCP server.

    Args:
        ctx: Application context with all components built.
        reindex: Run a full reindex in the background once serving starts,
            even when auto-indexing is off.
    """
    mcp = FastMCP(
        name="latent-mcp",
        instructions=(
            "latent-mcp gives access to a vault of Markdown notes. Use search_notes to "
            "find relevant passages, read_note to read a note, list_backlinks to follow "
            "the link graph, and ask to let the vault agent answer a question."
        ),
        lifespan=build_lifespan(ctx, reindex),
    )

    logger.info("Registering note tools...")
    register_tools(mcp, ctx)

    logger.info("Registering control operations...")
    register_control(mcp, ctx)

    logger.info("Server configured successfully")
    return mcp


def main() -> None:
    """Main function - starts the MCP server."""
    # Configure logging here to avoid side effects on import
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(
        description="latent-mcp - MCP server for Markdown vault search"
    )
    parser.add_argument(
        "--reindex",
        action="store_true",
        help="Force a full reindex of the vault before serving",
    )
    parser.add_argument(
        "--read-only",
        action="store_true",
        help="Run in read-only mode (disable write tools)",
    )
    parser.add_argument(
        "--index-only",
        action="store_true",
        help="Reindex the vault, backfill embeddings and exit",
    )
    args = parser.parse_args()

    # CLI flag overrides env var
    try:
        config = Config.from_env(read_only_override=args.read_only if args.read_only else None)
        ctx = AppContext.create(config)
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        sys.exit(2)
    config = ctx.config

    # Print startup banner
    logger.info("=" * 50)
    logger.info("latent-mcp starting...")
    logger.info("  VAULT:     %s", config.vault_root)
    logger.info("  DB:        %s", config.db_path)
    logger.info("  PORT:      %s", config.port)
    logger.info("  PROVIDER:  %s", config.provider)
    logger.info("  READ_ONLY: %s", config.read_only)
    logger.info("=" * 50)

    if args.reindex:
        logger.info("Force reindex requested, clearing the index...")
        ctx.store.clear()

    if args.index_only:
        asyncio.run(_index_only(ctx))
        return

    # Create and run server with the same context
    try:
        mcp = create_server(ctx, reindex=args.reindex)
        logger.info("Starting MCP server on port %s...", config.port)
        mcp.run(transport="sse", host="0.0.0.0", port=config.port)
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        sys.exit(0)
    except Exception:
        logger.exception("Server error")
        sys.exit(1)


async def _index_only(ctx: AppContext) -> None:
    try:
        results = await ctx.sync.reindex_all()
        counts = summarize(results)
        logger.info(
            "Index complete: %d indexed, %d unchanged, %d removed, %d failed",
            counts[IndexOutcome.INDEXED] + counts[IndexOutcome.DEGRADED],
            counts[IndexOutcome.SKIPPED],
            counts[IndexOutcome.DELETED],
            counts[IndexOutcome.FAILED],
        )
    finally:
        await ctx.close()


if __name__ == "__main__":
    main()
