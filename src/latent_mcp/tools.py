"""Agent tools: catalogue, typed call variants and the executor.

Tools exposed to the model:
- read_note: Read a note's full text
- search_notes: Semantic search with optional tag/date filters
- write_note: Create or overwrite a note, then re-index it
- update_frontmatter: Merge keys into a note's frontmatter, body untouched
- list_backlinks: Notes linking to a given note
- rename_note / delete_note: Only offered when destructive tools are allowed

Every path is resolved inside the vault root. Anything that escapes it is
rejected before the filesystem is touched.
"""

import asyncio
import json
import logging
import posixpath
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path, PureWindowsPath
from typing import Any, Union

from latent_mcp.errors import CorruptedContentError, NotFoundError, ValidationError
from latent_mcp.indexer.models import SearchFilter
from latent_mcp.indexer.parser import (
    EXTENSION_PATTERN,
    FRONTMATTER_PATTERN,
    normalize_link_target,
    render_frontmatter,
    split_frontmatter,
)
from latent_mcp.indexer.store import ContentStore
from latent_mcp.search import SearchEngine

logger = logging.getLogger(__name__)

NoteWrittenHook = Callable[[str], Awaitable[None]]

# Larger requests are clamped down to this
MAX_TOP_K = 50


# Tool-call variants


@dataclass(frozen=True)
class ReadNote:
    path: str


@dataclass(frozen=True)
class SearchNotes:
    query: str
    # None uses the search engine default
    top_k: int | None = None
    tags: tuple[str, ...] | None = None
    date_after: float | None = None
    date_before: float | None = None


@dataclass(frozen=True)
class WriteNote:
    path: str
    content: str


@dataclass(frozen=True)
class UpdateFrontmatter:
    path: str
    updates: dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class ListBacklinks:
    path: str


@dataclass(frozen=True)
class RenameNote:
    old_path: str
    new_path: str


@dataclass(frozen=True)
class DeleteNote:
    path: str


ToolCallArgs = Union[
    ReadNote, SearchNotes, WriteNote, UpdateFrontmatter, ListBacklinks, RenameNote, DeleteNote
]

WRITE_TOOLS = frozenset({"write_note", "update_frontmatter", "rename_note", "delete_note"})
DESTRUCTIVE_TOOLS = frozenset({"rename_note", "delete_note"})


def _function(name: str, description: str, properties: dict[str, Any], required: list[str]):
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
                "additionalProperties": False,
            },
        },
    }


_PATH = {"type": "string", "description": "Note path relative to the vault root, e.g. 'research/quantum.md'"}

TOOL_CATALOGUE: dict[str, dict[str, Any]] = {
    "read_note": _function(
        "read_note",
        "Read the full text of a note.",
        {"path": _PATH},
        ["path"],
    ),
    "search_notes": _function(
        "search_notes",
        "Semantic search over the vault. Returns the best matching passages.",
        {
            "query": {"type": "string", "description": "What to look for"},
            "top_k": {
                "type": "integer",
                "description": f"Maximum number of results (at most {MAX_TOP_K})",
                "minimum": 1,
            },
            "filter": {
                "type": "object",
                "properties": {
                    "tags": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Only notes carrying any of these frontmatter tags",
                    },
                    "date_after": {"type": "string", "description": "ISO date, inclusive"},
                    "date_before": {"type": "string", "description": "ISO date, inclusive"},
                },
                "additionalProperties": False,
            },
        },
        ["query"],
    ),
    "write_note": _function(
        "write_note",
        "Create or overwrite a note. Parent folders are created as needed.",
        {"path": _PATH, "content": {"type": "string", "description": "Full Markdown text"}},
        ["path", "content"],
    ),
    "update_frontmatter": _function(
        "update_frontmatter",
        "Merge keys into a note's YAML frontmatter without touching its body.",
        {
            "path": _PATH,
            "updates": {"type": "object", "description": "Keys to set in the frontmatter"},
        },
        ["path", "updates"],
    ),
    "list_backlinks": _function(
        "list_backlinks",
        "List the notes that link to a note.",
        {"path": _PATH},
        ["path"],
    ),
    "rename_note": _function(
        "rename_note",
        "Move a note to a new path.",
        {"old_path": _PATH, "new_path": _PATH},
        ["old_path", "new_path"],
    ),
    "delete_note": _function(
        "delete_note",
        "Delete a note.",
        {"path": _PATH},
        ["path"],
    ),
}


# Argument parsing


def _require_str(args: dict[str, Any], key: str, allow_empty: bool = False) -> str:
    value = args.get(key)
    if not isinstance(value, str):
        raise ValidationError(f"'{key}' must be a string", {"argument": key})
    if not allow_empty and not value.strip():
        raise ValidationError(f"'{key}' must not be empty", {"argument": key})
    return value


def parse_date(raw: Any, key: str, end_of_day: bool = False) -> float | None:
    """Parse an ISO date or datetime into epoch seconds (naive values are UTC)."""
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise ValidationError(f"'{key}' must be an ISO date string", {"argument": key})
    try:
        parsed = datetime.fromisoformat(raw.strip())
    except ValueError as e:
        raise ValidationError(f"'{key}' is not an ISO date: {raw}", {"argument": key}) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    # A bare date as an upper bound covers the whole day
    if end_of_day and len(raw.strip()) == 10:
        parsed += timedelta(days=1) - timedelta(microseconds=1)
    return parsed.timestamp()


def parse_top_k(raw: Any, key: str = "top_k") -> int | None:
    """Validate a result limit. Whole floats are accepted, large values clamped."""
    if raw is None:
        return None
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
        raise ValidationError(f"'{key}' must be a positive integer", {"argument": key})
    if raw > MAX_TOP_K:
        logger.debug("Clamping %s from %d to %d", key, raw, MAX_TOP_K)
        return MAX_TOP_K
    return raw


def parse_tool_call(name: str, arguments: str | dict[str, Any] | None) -> ToolCallArgs:
    """
    Turn a raw tool call into its typed variant.

    Raises:
        ValidationError: Unknown tool, invalid JSON or malformed arguments
    """
    if isinstance(arguments, str):
        try:
            args = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError as e:
            raise ValidationError(f"Arguments for {name} are not valid JSON: {e}") from e
    else:
        args = arguments or {}
    if not isinstance(args, dict):
        raise ValidationError(f"Arguments for {name} must be a JSON object")

    if name == "read_note":
        return ReadNote(path=_require_str(args, "path"))

    if name == "search_notes":
        top_k = parse_top_k(args.get("top_k"))
        filters = args.get("filter") or {}
        if not isinstance(filters, dict):
            raise ValidationError("'filter' must be an object")
        tags = filters.get("tags")
        if tags is not None:
            if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
                raise ValidationError("'filter.tags' must be a list of strings")
            tags = tuple(tags)
        return SearchNotes(
            query=_require_str(args, "query"),
            top_k=top_k,
            tags=tags,
            date_after=parse_date(filters.get("date_after"), "filter.date_after"),
            date_before=parse_date(filters.get("date_before"), "filter.date_before", end_of_day=True),
        )

    if name == "write_note":
        return WriteNote(path=_require_str(args, "path"), content=_require_str(args, "content", allow_empty=True))

    if name == "update_frontmatter":
        updates = args.get("updates")
        if not isinstance(updates, dict):
            raise ValidationError("'updates' must be an object", {"argument": "updates"})
        return UpdateFrontmatter(path=_require_str(args, "path"), updates=dict(updates))

    if name == "list_backlinks":
        return ListBacklinks(path=_require_str(args, "path"))

    if name == "rename_note":
        return RenameNote(old_path=_require_str(args, "old_path"), new_path=_require_str(args, "new_path"))

    if name == "delete_note":
        return DeleteNote(path=_require_str(args, "path"))

    raise ValidationError(f"Unknown tool: {name}", {"tool": name})


# Path sandbox


def normalize_note_path(raw: str) -> str:
    """
    Lexically normalize a vault-relative path.

    Rejects absolute paths and anything that climbs above the vault root.
    Pure string work: no filesystem access happens here.
    """
    candidate = raw.strip().replace("\\", "/")
    if not candidate or "\x00" in candidate:
        raise ValidationError(f"Invalid path: {raw!r}")
    if candidate.startswith("/") or PureWindowsPath(candidate).drive:
        raise ValidationError(f"Absolute paths are not allowed: {raw}", {"path": raw})

    normalized = posixpath.normpath(candidate)
    if normalized in (".", "..") or normalized.startswith("../"):
        raise ValidationError(f"Path escapes the vault root: {raw}", {"path": raw})
    return normalized


@dataclass
class ToolResult:
    """Outcome of one tool call, ready to be sent back to the model."""

    name: str
    ok: bool
    content: Any = None
    error: str | None = None

    def to_text(self) -> str:
        if not self.ok:
            return json.dumps({"error": self.error})
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, default=str, ensure_ascii=False)

    def to_message(self, call_id: str) -> dict[str, Any]:
        return {"role": "tool", "tool_call_id": call_id, "name": self.name, "content": self.to_text()}


class ToolExecutor:
    """
    Validates and runs tool calls against the vault and the content store.

    Validation and not-found errors become error results for the model to
    read. Provider errors (from search) propagate to the caller.
    """

    def __init__(
        self,
        vault_root: Path,
        store: ContentStore,
        search_engine: SearchEngine,
        on_note_written: NoteWrittenHook | None = None,
        read_only: bool = False,
        allow_destructive: bool = False,
    ):
        """
        Args:
            vault_root: Root directory of the vault
            store: Content store (backlinks)
            search_engine: Engine behind search_notes
            on_note_written: Awaited with the relative path after every write,
                rename or delete so the index catches up
            read_only: Reject every write tool
            allow_destructive: Offer rename_note and delete_note
        """
        self.vault_root = vault_root.expanduser().resolve()
        self.store = store
        self.search_engine = search_engine
        self.on_note_written = on_note_written
        self.read_only = read_only
        self.allow_destructive = allow_destructive

    def tool_names(self) -> list[str]:
        names = []
        for name in TOOL_CATALOGUE:
            if name in DESTRUCTIVE_TOOLS and not self.allow_destructive:
                continue
            if name in WRITE_TOOLS and self.read_only:
                continue
            names.append(name)
        return names

    def catalogue(self) -> list[dict[str, Any]]:
        """Function-call schemas for the tools currently offered."""
        return [TOOL_CATALOGUE[name] for name in self.tool_names()]

    def resolve_path(self, raw: str, note: bool = False) -> tuple[str, Path]:
        """
        Map a requested path to (relative, absolute) inside the vault.

        Args:
            raw: Path as given by the caller
            note: Append ".md" when the path has no extension

        Raises:
            ValidationError: The path is absolute, climbs out of the vault or
                resolves (through a symlink) outside of it
        """
        relative = normalize_note_path(raw)
        if note and not EXTENSION_PATTERN.search(posixpath.basename(relative)):
            relative += ".md"

        absolute = (self.vault_root / relative).resolve()
        if not absolute.is_relative_to(self.vault_root):
            logger.warning("Rejected path resolving outside the vault: %s", raw)
            raise ValidationError(f"Path escapes the vault root: {raw}", {"path": raw})
        return relative, absolute

    async def dispatch(self, name: str, arguments: str | dict[str, Any] | None) -> ToolResult:
        """Parse and execute a raw tool call, converting expected failures to results."""
        try:
            call = parse_tool_call(name, arguments)
            content = await self.execute(call)
        except (ValidationError, NotFoundError, CorruptedContentError) as e:
            logger.info("Tool %s rejected: %s", name, e.message)
            return ToolResult(name=name, ok=False, error=e.message)
        return ToolResult(name=name, ok=True, content=content)

    async def execute(self, call: ToolCallArgs) -> Any:
        """Run a typed tool call and return its JSON-serializable result."""
        name = _tool_name(call)
        if name in DESTRUCTIVE_TOOLS and not self.allow_destructive:
            raise ValidationError(f"Tool {name} is disabled")
        if name in WRITE_TOOLS and self.read_only:
            logger.warning("Write operation rejected: server is in read-only mode")
            raise ValidationError("Server is in read-only mode")

        if isinstance(call, ReadNote):
            return await self.read_note(call.path)
        if isinstance(call, SearchNotes):
            return await self.search_notes(call)
        if isinstance(call, WriteNote):
            return await self.write_note(call.path, call.content)
        if isinstance(call, UpdateFrontmatter):
            return await self.update_frontmatter(call.path, call.updates)
        if isinstance(call, ListBacklinks):
            return await self.list_backlinks(call.path)
        if isinstance(call, RenameNote):
            return await self.rename_note(call.old_path, call.new_path)
        if isinstance(call, DeleteNote):
            return await self.delete_note(call.path)
        raise ValidationError(f"Unsupported tool call: {call!r}")

    # Tools

    async def read_note(self, path: str) -> str:
        relative, absolute = self.resolve_path(path, note=True)
        if not absolute.is_file():
            raise NotFoundError(f"Note not found: {relative}", {"path": relative})
        return await asyncio.to_thread(self._read_text, relative, absolute)

    async def search_notes(self, call: SearchNotes) -> list[dict[str, Any]]:
        filters = None
        if call.tags or call.date_after is not None or call.date_before is not None:
            filters = SearchFilter(
                tags=list(call.tags) if call.tags else None,
                date_after=call.date_after,
                date_before=call.date_before,
            )
        results = await self.search_engine.search(call.query, call.top_k, filters)
        return [
            {"path": r.path, "title": r.title, "chunk": r.chunk, "score": round(r.score, 4)}
            for r in results
        ]

    async def write_note(self, path: str, content: str) -> str:
        relative, absolute = self.resolve_path(path, note=True)
        if not relative.lower().endswith(".md"):
            raise ValidationError(f"Only Markdown notes can be written: {relative}")

        await asyncio.to_thread(self._write_text, absolute, content)
        logger.info("Wrote note: %s", relative)
        await self._notify(relative)
        return f"Wrote {relative} ({len(content)} characters)"

    async def update_frontmatter(self, path: str, updates: dict[str, Any]) -> str:
        relative, absolute = self.resolve_path(path, note=True)
        if not absolute.is_file():
            raise NotFoundError(f"Note not found: {relative}", {"path": relative})

        content = await asyncio.to_thread(self._read_text, relative, absolute)
        frontmatter, body = split_frontmatter(content, relative)
        if body == content and FRONTMATTER_PATTERN.match(content):
            raise ValidationError(f"Existing frontmatter of {relative} is not valid YAML")

        merged = {**frontmatter, **updates}
        await asyncio.to_thread(self._write_text, absolute, render_frontmatter(merged, body))
        logger.info("Updated frontmatter of %s: %s", relative, ", ".join(sorted(updates)))
        await self._notify(relative)
        return f"Updated frontmatter of {relative} ({len(updates)} keys)"

    async def list_backlinks(self, path: str) -> list[dict[str, Any]]:
        relative = normalize_note_path(path)
        target = normalize_link_target(relative) or relative
        backlinks = await asyncio.to_thread(self.store.get_backlinks, target)
        return [
            {
                "source_path": b.source_path,
                "source_title": b.source_title,
                "link_text": b.link_text,
                "link_type": b.link_type,
            }
            for b in backlinks
        ]

    async def rename_note(self, old_path: str, new_path: str) -> str:
        old_relative, old_absolute = self.resolve_path(old_path, note=True)
        new_relative, new_absolute = self.resolve_path(new_path, note=True)
        if not old_absolute.is_file():
            raise NotFoundError(f"Note not found: {old_relative}", {"path": old_relative})
        if new_absolute.exists():
            raise ValidationError(f"Target already exists: {new_relative}")

        def _move() -> None:
            new_absolute.parent.mkdir(parents=True, exist_ok=True)
            old_absolute.rename(new_absolute)

        await asyncio.to_thread(_move)
        logger.info("Renamed note: %s -> %s", old_relative, new_relative)
        await self._notify(old_relative)
        await self._notify(new_relative)
        return f"Renamed {old_relative} to {new_relative}"

    async def delete_note(self, path: str) -> str:
        relative, absolute = self.resolve_path(path, note=True)
        if not absolute.is_file():
            raise NotFoundError(f"Note not found: {relative}", {"path": relative})
        await asyncio.to_thread(absolute.unlink)
        logger.info("Deleted note: %s", relative)
        await self._notify(relative)
        return f"Deleted {relative}"

    # Helpers

    async def _notify(self, relative: str) -> None:
        if self.on_note_written is not None:
            await self.on_note_written(relative)

    @staticmethod
    def _read_text(relative: str, absolute: Path) -> str:
        try:
            return absolute.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise CorruptedContentError(relative, f"invalid UTF-8 ({e.reason})") from e

    @staticmethod
    def _write_text(absolute: Path, content: str) -> None:
        absolute.parent.mkdir(parents=True, exist_ok=True)
        absolute.write_text(content, encoding="utf-8")


def _tool_name(call: ToolCallArgs) -> str:
    return {
        ReadNote: "read_note",
        SearchNotes: "search_notes",
        WriteNote: "write_note",
        UpdateFrontmatter: "update_frontmatter",
        ListBacklinks: "list_backlinks",
        RenameNote: "rename_note",
        DeleteNote: "delete_note",
    }[type(call)]
