"""SQLite content store for documents, chunks, links and settings."""

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from latent_mcp.indexer.models import (
    Backlink,
    Chunk,
    Document,
    Link,
    SearchFilter,
    SearchResult,
    Setting,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"

# Vectors are stored as little-endian float32 arrays
VECTOR_DTYPE = np.dtype("<f4")

SCHEMA_SQL = """
-- latent-mcp index schema v1
-- Derived from the vault: safe to delete and rebuild with a full reindex.

PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS documents (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    path            TEXT NOT NULL UNIQUE,
    checksum        TEXT NOT NULL,
    title           TEXT,
    word_count      INTEGER NOT NULL DEFAULT 0,
    created_at      REAL NOT NULL,
    modified_at     REAL NOT NULL,
    last_indexed_at REAL,
    frontmatter     TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_documents_modified ON documents(modified_at DESC);

CREATE TABLE IF NOT EXISTS chunks (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id     INTEGER NOT NULL,
    content         TEXT NOT NULL,
    embedding       BLOB,
    embedding_model TEXT,
    chunk_index     INTEGER NOT NULL,
    token_count     INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (document_id) REFERENCES documents(id) ON DELETE CASCADE,
    UNIQUE (document_id, chunk_index),
    CHECK ((embedding IS NULL) = (embedding_model IS NULL))
);

CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks(document_id);
CREATE INDEX IF NOT EXISTS idx_chunks_missing ON chunks(id) WHERE embedding IS NULL;

-- Links are keyed by path, not by document id: targets may not exist yet
CREATE TABLE IF NOT EXISTS links (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    source_path TEXT NOT NULL,
    target_path TEXT NOT NULL,
    link_type   TEXT NOT NULL CHECK (link_type IN ('wikilink', 'markdown', 'embed')),
    link_text   TEXT,
    UNIQUE (source_path, target_path, link_type)
);

CREATE INDEX IF NOT EXISTS idx_links_source ON links(source_path);
CREATE INDEX IF NOT EXISTS idx_links_target ON links(target_path);

CREATE TABLE IF NOT EXISTS settings (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at REAL NOT NULL
);

-- Metadata table for index versioning
CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);

INSERT OR REPLACE INTO meta (key, value) VALUES ('schema_version', '1');
INSERT OR IGNORE INTO meta (key, value) VALUES ('created_at', datetime('now'));
"""


def encode_vector(vector: Sequence[float] | np.ndarray) -> bytes:
    """Serialize a vector as a little-endian float32 blob."""
    return np.asarray(vector, dtype=VECTOR_DTYPE).tobytes()


def decode_vector(blob: bytes) -> np.ndarray:
    """Deserialize a float32 blob written by encode_vector."""
    return np.frombuffer(blob, dtype=VECTOR_DTYPE)


def _dump_json(value: Any) -> str:
    # YAML frontmatter may hold dates, which json cannot encode natively
    return json.dumps(value, default=str, ensure_ascii=False)


@dataclass
class ChunkCandidate:
    """An embedded chunk joined with its document, ready for scoring."""

    chunk_id: int
    path: str
    title: str | None
    content: str
    chunk_index: int
    embedding: np.ndarray


class ContentStore:
    """
    SQLite store for the vault index.

    Thread Safety:
        Each thread gets its own connection (the indexer runs statements via
        ``asyncio.to_thread``). Writes are serialized by a lock and every
        structural mutation commits as a single transaction, so readers on
        other connections never observe a half-written document.
    """

    def __init__(self, db_path: Path):
        """Initialize the store. Call initialize() before use."""
        self.db_path = db_path
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # close() may run on a different thread than the one that opened it
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _read_cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor for read operations."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    @contextmanager
    def _write_cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor for write operations with locking."""
        with self._write_lock:
            conn = self._get_connection()
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def initialize(self) -> None:
        """Create the schema if it does not exist."""
        with self._write_cursor() as cursor:
            cursor.executescript(SCHEMA_SQL)
        logger.debug("Content store ready at %s", self.db_path)

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning("Error closing connection: %s", e)
        self._local = threading.local()

    def clear(self) -> None:
        """Delete all indexed content (settings are kept)."""
        with self._write_cursor() as cursor:
            cursor.execute("DELETE FROM chunks")
            cursor.execute("DELETE FROM documents")
            cursor.execute("DELETE FROM links")

    def schema_version(self) -> str | None:
        with self._read_cursor() as cursor:
            cursor.execute("SELECT value FROM meta WHERE key = 'schema_version'")
            row = cursor.fetchone()
            return row["value"] if row else None

    # Document operations

    def get_document(self, path: str) -> Document | None:
        """Get a document by its relative path."""
        with self._read_cursor() as cursor:
            cursor.execute("SELECT * FROM documents WHERE path = ?", (path,))
            row = cursor.fetchone()
            return self._row_to_document(row) if row else None

    def get_checksum(self, path: str) -> str | None:
        """Get the checksum of a document for change detection."""
        with self._read_cursor() as cursor:
            cursor.execute("SELECT checksum FROM documents WHERE path = ?", (path,))
            row = cursor.fetchone()
            return row["checksum"] if row else None

    def index_document(self, doc: Document, chunks: list[Chunk], links: list[Link]) -> int:
        """
        Replace everything stored for ``doc.path`` in one transaction.

        Deletes the existing document (its chunks cascade) and every link
        sourced from the path, then inserts the new document, chunks and links.
        Duplicate links collapse to one row; the last display text wins.

        Returns:
            The new document id.
        """
        with self._write_cursor() as cursor:
            cursor.execute("DELETE FROM documents WHERE path = ?", (doc.path,))
            cursor.execute("DELETE FROM links WHERE source_path = ?", (doc.path,))

            cursor.execute(
                """INSERT INTO documents
                (path, checksum, title, word_count, created_at, modified_at,
                 last_indexed_at, frontmatter)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    doc.path,
                    doc.checksum,
                    doc.title,
                    doc.word_count,
                    doc.created_at,
                    doc.modified_at,
                    doc.last_indexed_at if doc.last_indexed_at is not None else time.time(),
                    _dump_json(doc.frontmatter or {}),
                ),
            )
            document_id: int = cursor.lastrowid  # type: ignore[assignment]

            cursor.executemany(
                """INSERT INTO chunks
                (document_id, content, embedding, embedding_model, chunk_index, token_count)
                VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (
                        document_id,
                        chunk.content,
                        encode_vector(chunk.embedding) if chunk.embedding is not None else None,
                        chunk.embedding_model if chunk.embedding is not None else None,
                        chunk.chunk_index,
                        chunk.token_count,
                    )
                    for chunk in chunks
                ],
            )

            cursor.executemany(
                """INSERT INTO links (source_path, target_path, link_type, link_text)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(source_path, target_path, link_type) DO UPDATE SET
                    link_text = excluded.link_text""",
                [(doc.path, link.target_path, link.link_type, link.link_text) for link in links],
            )

        return document_id

    def delete_document(self, path: str) -> bool:
        """
        Delete a document, its chunks and the links it sources.

        Links pointing *to* the path are kept. Returns True if a document
        row existed.
        """
        with self._write_cursor() as cursor:
            cursor.execute("DELETE FROM documents WHERE path = ?", (path,))
            deleted = cursor.rowcount > 0
            cursor.execute("DELETE FROM links WHERE source_path = ?", (path,))
        return deleted

    def list_documents(self) -> list[Document]:
        """List all documents ordered by path."""
        with self._read_cursor() as cursor:
            cursor.execute("SELECT * FROM documents ORDER BY path")
            return [self._row_to_document(row) for row in cursor.fetchall()]

    def list_paths(self) -> set[str]:
        """Get every indexed path."""
        with self._read_cursor() as cursor:
            cursor.execute("SELECT path FROM documents")
            return {row["path"] for row in cursor.fetchall()}

    def _row_to_document(self, row: sqlite3.Row) -> Document:
        """Convert a database row to a Document."""
        try:
            frontmatter = json.loads(row["frontmatter"]) if row["frontmatter"] else {}
        except json.JSONDecodeError:
            frontmatter = {}
        return Document(
            id=row["id"],
            path=row["path"],
            checksum=row["checksum"],
            title=row["title"],
            word_count=row["word_count"],
            created_at=row["created_at"],
            modified_at=row["modified_at"],
            last_indexed_at=row["last_indexed_at"],
            frontmatter=frontmatter if isinstance(frontmatter, dict) else {},
        )

    # Chunk operations

    def get_chunks(self, document_id: int) -> list[Chunk]:
        """Get all chunks for a document, in order."""
        with self._read_cursor() as cursor:
            cursor.execute(
                """SELECT * FROM chunks
                WHERE document_id = ?
                ORDER BY chunk_index""",
                (document_id,),
            )
            return [self._row_to_chunk(row) for row in cursor.fetchall()]

    def get_chunks_for_path(self, path: str) -> list[Chunk]:
        """Get all chunks for the document at ``path``."""
        with self._read_cursor() as cursor:
            cursor.execute(
                """SELECT c.* FROM chunks c
                JOIN documents d ON c.document_id = d.id
                WHERE d.path = ?
                ORDER BY c.chunk_index""",
                (path,),
            )
            return [self._row_to_chunk(row) for row in cursor.fetchall()]

    def get_chunks_missing_embeddings(self, limit: int = 100) -> list[Chunk]:
        """Get chunks stored without an embedding, oldest first."""
        with self._read_cursor() as cursor:
            cursor.execute(
                "SELECT * FROM chunks WHERE embedding IS NULL ORDER BY id LIMIT ?",
                (limit,),
            )
            return [self._row_to_chunk(row) for row in cursor.fetchall()]

    def set_chunk_embeddings(
        self, embeddings: Sequence[tuple[int, Sequence[float]]], model: str
    ) -> int:
        """
        Attach embeddings to existing chunks.

        Only chunks still missing an embedding are updated, so a document
        re-indexed in the meantime is left alone. Returns the number of rows
        updated.
        """
        with self._write_cursor() as cursor:
            cursor.executemany(
                """UPDATE chunks SET embedding = ?, embedding_model = ?
                WHERE id = ? AND embedding IS NULL""",
                [(encode_vector(vector), model, chunk_id) for chunk_id, vector in embeddings],
            )
            return cursor.rowcount

    def _row_to_chunk(self, row: sqlite3.Row) -> Chunk:
        blob = row["embedding"]
        return Chunk(
            id=row["id"],
            document_id=row["document_id"],
            content=row["content"],
            chunk_index=row["chunk_index"],
            token_count=row["token_count"],
            embedding=decode_vector(blob).tolist() if blob is not None else None,
            embedding_model=row["embedding_model"],
        )

    # Link operations

    def get_links_from(self, path: str) -> list[Link]:
        """Get the outgoing links of a document."""
        with self._read_cursor() as cursor:
            cursor.execute(
                """SELECT * FROM links
                WHERE source_path = ?
                ORDER BY target_path, link_type""",
                (path,),
            )
            return [
                Link(
                    source_path=row["source_path"],
                    target_path=row["target_path"],
                    link_type=row["link_type"],
                    link_text=row["link_text"],
                )
                for row in cursor.fetchall()
            ]

    def get_backlinks(self, path: str) -> list[Backlink]:
        """Get the links targeting ``path``, joined with their source titles."""
        with self._read_cursor() as cursor:
            cursor.execute(
                """SELECT l.source_path, l.link_text, l.link_type, d.title AS source_title
                FROM links l
                LEFT JOIN documents d ON d.path = l.source_path
                WHERE l.target_path = ?
                ORDER BY l.source_path, l.link_type""",
                (path,),
            )
            return [
                Backlink(
                    source_path=row["source_path"],
                    source_title=row["source_title"],
                    link_text=row["link_text"],
                    link_type=row["link_type"],
                )
                for row in cursor.fetchall()
            ]

    # Search operations

    @staticmethod
    def _filter_clause(filters: SearchFilter | None) -> tuple[str, list[Any]]:
        """Build the SQL conditions for metadata filters."""
        if filters is None:
            return "", []

        clause = ""
        params: list[Any] = []
        tags = [tag.lstrip("#") for tag in (filters.tags or []) if tag.strip("#")]
        if tags:
            placeholders = ", ".join("?" for _ in tags)
            # A tag filter matches notes carrying any of the requested tags
            clause += f"""
                AND EXISTS (
                    SELECT 1 FROM json_each(d.frontmatter, '$.tags') t
                    WHERE t.value IN ({placeholders})
                )"""
            params.extend(tags)
        if filters.date_after is not None:
            clause += " AND d.modified_at >= ?"
            params.append(filters.date_after)
        if filters.date_before is not None:
            clause += " AND d.modified_at <= ?"
            params.append(filters.date_before)
        return clause, params

    def get_embedded_chunks(self, filters: SearchFilter | None = None) -> list[ChunkCandidate]:
        """Load every embedded chunk that passes the filters, in insertion order."""
        clause, params = self._filter_clause(filters)
        query = f"""
            SELECT c.id, c.content, c.chunk_index, c.embedding, d.path, d.title
            FROM chunks c
            JOIN documents d ON c.document_id = d.id
            WHERE c.embedding IS NOT NULL
            {clause}
            ORDER BY c.id
        """
        with self._read_cursor() as cursor:
            cursor.execute(query, params)
            return [
                ChunkCandidate(
                    chunk_id=row["id"],
                    path=row["path"],
                    title=row["title"],
                    content=row["content"],
                    chunk_index=row["chunk_index"],
                    embedding=decode_vector(row["embedding"]),
                )
                for row in cursor.fetchall()
            ]

    def search_text(
        self, query: str, limit: int = 10, filters: SearchFilter | None = None
    ) -> list[SearchResult]:
        """
        Case-insensitive substring match over chunk content and document titles.

        Every match gets the same fixed score of 1.0; this is an availability
        fallback, not a ranking.
        """
        needle = query.strip()
        if not needle:
            return []
        escaped = needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        clause, params = self._filter_clause(filters)
        sql = f"""
            SELECT c.content, c.chunk_index, d.path, d.title
            FROM chunks c
            JOIN documents d ON c.document_id = d.id
            WHERE (c.content LIKE ? ESCAPE '\\' OR d.title LIKE ? ESCAPE '\\')
            {clause}
            ORDER BY c.id
            LIMIT ?
        """
        with self._read_cursor() as cursor:
            cursor.execute(sql, [pattern, pattern, *params, limit])
            return [
                SearchResult(
                    path=row["path"],
                    title=row["title"] or Path(row["path"]).stem,
                    chunk=row["content"],
                    score=1.0,
                    chunk_index=row["chunk_index"],
                )
                for row in cursor.fetchall()
            ]

    # Settings

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a decoded setting value."""
        with self._read_cursor() as cursor:
            cursor.execute("SELECT value FROM settings WHERE key = ?", (key,))
            row = cursor.fetchone()
        if row is None:
            return default
        return self._decode_setting(key, row["value"])

    def set_setting(self, key: str, value: Any) -> None:
        """Insert or replace a setting; the value is stored as JSON."""
        with self._write_cursor() as cursor:
            cursor.execute(
                """INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at""",
                (key, _dump_json(value), time.time()),
            )

    def delete_setting(self, key: str) -> bool:
        with self._write_cursor() as cursor:
            cursor.execute("DELETE FROM settings WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def list_settings(self) -> list[Setting]:
        with self._read_cursor() as cursor:
            cursor.execute("SELECT * FROM settings ORDER BY key")
            rows = cursor.fetchall()
        return [
            Setting(
                key=row["key"],
                value=self._decode_setting(row["key"], row["value"]),
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def get_all_settings(self) -> dict[str, Any]:
        """Get every setting as a key -> decoded value mapping."""
        return {setting.key: setting.value for setting in self.list_settings()}

    @staticmethod
    def _decode_setting(key: str, raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Setting %s is not valid JSON, returning raw text", key)
            return raw

    # Stats

    def stats(self) -> dict[str, int]:
        """Count rows per table."""
        with self._read_cursor() as cursor:
            cursor.execute(
                """SELECT
                    (SELECT COUNT(*) FROM documents) AS documents,
                    (SELECT COUNT(*) FROM chunks) AS chunks,
                    (SELECT COUNT(*) FROM chunks WHERE embedding IS NOT NULL) AS embedded_chunks,
                    (SELECT COUNT(*) FROM links) AS links"""
            )
            row = cursor.fetchone()
            return {key: row[key] for key in row.keys()}
