"""Data models for the indexer."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

FileEventType = Literal["add", "change", "unlink"]
LinkType = Literal["wikilink", "markdown", "embed"]


@dataclass
class Document:
    """Represents one indexed Markdown file."""

    id: int | None = None
    path: str = ""  # Relative from the vault root
    checksum: str = ""
    title: str | None = None
    word_count: int = 0
    created_at: float = 0.0
    modified_at: float = 0.0
    last_indexed_at: float | None = None
    frontmatter: dict[str, Any] = field(default_factory=dict)


@dataclass
class Chunk:
    """A token-bounded slice of a document body."""

    id: int | None = None
    document_id: int = 0
    content: str = ""
    chunk_index: int = 0
    token_count: int = 0
    embedding: list[float] | None = None
    embedding_model: str | None = None


@dataclass
class Link:
    """A directed edge extracted from a document body."""

    source_path: str
    target_path: str
    link_type: LinkType = "wikilink"
    link_text: str | None = None


@dataclass
class Backlink:
    """An inbound link, joined with the title of its source document."""

    source_path: str
    source_title: str | None
    link_text: str | None
    link_type: LinkType


@dataclass
class Setting:
    """A persisted key/value pair."""

    key: str
    value: Any
    updated_at: float = 0.0


@dataclass
class SearchResult:
    """A ranked chunk returned by search."""

    path: str
    title: str
    chunk: str
    score: float
    chunk_index: int = 0


@dataclass
class SearchFilter:
    """Optional metadata filters applied before scoring."""

    tags: list[str] | None = None
    date_after: float | None = None  # epoch seconds, inclusive
    date_before: float | None = None  # epoch seconds, inclusive


@dataclass(frozen=True)
class FileEvent:
    """A change detected in the vault."""

    type: FileEventType
    path: str


class IndexOutcome(str, Enum):
    """What happened to a path when the indexer handled it."""

    INDEXED = "indexed"
    DEGRADED = "degraded"  # stored, but without embeddings
    SKIPPED = "skipped"  # checksum unchanged
    DELETED = "deleted"
    FAILED = "failed"


@dataclass
class IndexResult:
    """Outcome of handling one file event."""

    path: str
    outcome: IndexOutcome
    chunk_count: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is not IndexOutcome.FAILED


@dataclass
class IndexProgress:
    """Progress report emitted while processing a batch of events."""

    phase: Literal["scanning", "indexing", "complete", "error"]
    current: int
    total: int
    current_file: str | None = None
    error: str | None = None
