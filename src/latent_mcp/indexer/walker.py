"""File walker for discovering Markdown notes in the vault."""

import hashlib
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

MARKDOWN_SUFFIX = ".md"


@dataclass
class FileInfo:
    """Information about a discovered note."""

    path: Path  # Absolute path
    relative_path: str  # Relative to the vault root, "/" separated
    mtime: float


def compute_checksum(content: bytes) -> str:
    """Compute SHA-256 hex digest of content."""
    return hashlib.sha256(content).hexdigest()


def is_markdown_path(relative_path: str) -> bool:
    """True for ``.md`` files with no hidden component in their path."""
    parts = Path(relative_path).parts
    if not parts or any(part.startswith(".") for part in parts):
        return False
    return relative_path.lower().endswith(MARKDOWN_SUFFIX)


def to_relative(vault_root: Path, path: Path) -> str | None:
    """Express an absolute path relative to the vault, or None if it is outside."""
    try:
        relative = path.relative_to(vault_root)
    except ValueError:
        return None
    return relative.as_posix()


def walk_vault(vault_root: Path) -> Iterator[FileInfo]:
    """
    Walk the vault and yield FileInfo for each Markdown note.

    Hidden files and directories (``.obsidian/``, ``.trash/``, ...) are
    skipped. Results are sorted by relative path.
    """
    if not vault_root.is_dir():
        return

    for file_path in sorted(vault_root.rglob("*")):
        relative_path = to_relative(vault_root, file_path)
        if relative_path is None or not is_markdown_path(relative_path):
            continue
        try:
            if not file_path.is_file():
                continue
            mtime = file_path.stat().st_mtime
        except OSError:
            # Removed between listing and stat
            continue

        yield FileInfo(path=file_path, relative_path=relative_path, mtime=mtime)


def snapshot_mtimes(vault_root: Path) -> dict[str, float]:
    """Map every note's relative path to its modification time."""
    return {info.relative_path: info.mtime for info in walk_vault(vault_root)}
