"""
Indexer module for latent-mcp.

This module keeps the SQLite index in step with the Markdown vault: it watches
for changes, parses and chunks notes, embeds the chunks and stores documents,
chunks and links.
"""

from latent_mcp.indexer.chunker import TextChunk, chunk_body, chunk_document, chunk_document_semantic
from latent_mcp.indexer.indexer import Indexer
from latent_mcp.indexer.models import (
    Backlink,
    Chunk,
    Document,
    FileEvent,
    IndexOutcome,
    IndexProgress,
    IndexResult,
    Link,
    SearchFilter,
    SearchResult,
    Setting,
)
from latent_mcp.indexer.parser import ParsedDocument, ParsedLink, parse_markdown
from latent_mcp.indexer.store import ContentStore
from latent_mcp.indexer.walker import FileInfo, walk_vault
from latent_mcp.indexer.watcher import VaultWatcher, WatcherState

__all__ = [
    "Backlink",
    "Chunk",
    "ContentStore",
    "Document",
    "FileEvent",
    "FileInfo",
    "IndexOutcome",
    "IndexProgress",
    "IndexResult",
    "Indexer",
    "Link",
    "ParsedDocument",
    "ParsedLink",
    "SearchFilter",
    "SearchResult",
    "Setting",
    "TextChunk",
    "VaultWatcher",
    "WatcherState",
    "chunk_body",
    "chunk_document",
    "chunk_document_semantic",
    "parse_markdown",
    "walk_vault",
]
