"""Chunking logic for splitting note bodies into token-bounded windows."""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

import tiktoken

from latent_mcp.errors import ValidationError

ENCODING_NAME = "cl100k_base"

# Trailing windows shorter than this are folded into the previous chunk
MIN_TAIL_TOKENS = 50

PARAGRAPH_SPLIT = re.compile(r"\n[ \t]*\n+")


class Tokenizer(Protocol):
    """Anything that turns text into token ids and back."""

    def encode(self, text: str) -> list[int]: ...

    def decode(self, tokens: list[int]) -> str: ...


class TiktokenTokenizer:
    """Tokenizer backed by a tiktoken encoding."""

    def __init__(self, encoding_name: str = ENCODING_NAME):
        self._encoding = tiktoken.get_encoding(encoding_name)

    def encode(self, text: str) -> list[int]:
        # Notes may legitimately contain strings like "<|endoftext|>"
        return self._encoding.encode(text, disallowed_special=())

    def decode(self, tokens: list[int]) -> str:
        return self._encoding.decode(tokens)


@lru_cache(maxsize=1)
def get_tokenizer() -> Tokenizer:
    """Return the shared cl100k_base tokenizer (loaded once)."""
    return TiktokenTokenizer()


@dataclass
class TextChunk:
    """A window of a note body."""

    content: str
    index: int
    token_count: int


def _validate(max_tokens: int, overlap_tokens: int) -> None:
    if max_tokens <= 0:
        raise ValidationError(f"max_tokens must be positive, got {max_tokens}")
    if overlap_tokens < 0 or overlap_tokens >= max_tokens:
        raise ValidationError(
            f"overlap_tokens must be in [0, {max_tokens}), got {overlap_tokens}",
            {"max_tokens": max_tokens, "overlap_tokens": overlap_tokens},
        )


def min_tail_tokens(max_tokens: int) -> int:
    """Smallest trailing chunk worth keeping on its own."""
    return max(1, min(MIN_TAIL_TOKENS, max_tokens // 2))


def window_spans(total: int, max_tokens: int, overlap_tokens: int) -> list[tuple[int, int]]:
    """
    Compute ``[start, end)`` token spans for a sliding window.

    The window advances by ``max_tokens - overlap_tokens``. A trailing window
    shorter than ``min_tail_tokens(max_tokens)`` is folded into the previous
    span. If the folded span would exceed ``max_tokens`` it is split in two
    halves instead, so every span stays within ``max_tokens``.
    """
    _validate(max_tokens, overlap_tokens)
    if total <= 0:
        return []

    step = max_tokens - overlap_tokens
    spans: list[tuple[int, int]] = []
    start = 0
    while True:
        end = min(start + max_tokens, total)
        spans.append((start, end))
        if end >= total:
            break
        start += step

    if len(spans) < 2:
        return spans

    tail_start, tail_end = spans[-1]
    if tail_end - tail_start >= min_tail_tokens(max_tokens):
        return spans

    prev_start, _ = spans[-2]
    merged = tail_end - prev_start
    spans = spans[:-2]
    if merged <= max_tokens:
        spans.append((prev_start, tail_end))
    else:
        middle = prev_start + merged // 2
        spans.append((prev_start, middle))
        spans.append((middle, tail_end))
    return spans


def chunk_document(
    body: str,
    max_tokens: int = 500,
    overlap_tokens: int = 50,
    tokenizer: Tokenizer | None = None,
) -> list[TextChunk]:
    """
    Split a note body into overlapping token windows.

    Rules:
    1. Empty or whitespace-only bodies yield no chunks
    2. Bodies shorter than ``max_tokens`` yield exactly one chunk
    3. Otherwise a window of ``max_tokens`` slides forward by
       ``max_tokens - overlap_tokens`` tokens
    4. A too-short trailing window is folded into the previous chunk

    Deterministic for identical inputs.
    """
    _validate(max_tokens, overlap_tokens)
    text = body.strip()
    if not text:
        return []

    tokenizer = tokenizer or get_tokenizer()
    tokens = tokenizer.encode(text)
    if len(tokens) <= max_tokens:
        return [TextChunk(content=text, index=0, token_count=len(tokens))]

    chunks: list[TextChunk] = []
    for index, (start, end) in enumerate(window_spans(len(tokens), max_tokens, overlap_tokens)):
        window = tokens[start:end]
        chunks.append(
            TextChunk(content=tokenizer.decode(window).strip(), index=index, token_count=len(window))
        )
    return chunks


def chunk_document_semantic(
    body: str,
    max_tokens: int = 500,
    overlap_tokens: int = 0,
    tokenizer: Tokenizer | None = None,
) -> list[TextChunk]:
    """
    Split a note body on paragraph boundaries.

    Consecutive paragraphs are packed while the joined text fits in
    ``max_tokens``. A single paragraph larger than that falls back to the
    token window. A short trailing chunk is folded into the previous one
    when the result still fits.
    """
    _validate(max_tokens, overlap_tokens)
    text = body.strip()
    if not text:
        return []

    tokenizer = tokenizer or get_tokenizer()

    def count(value: str) -> int:
        return len(tokenizer.encode(value))

    pieces: list[tuple[str, int]] = []
    current: list[str] = []
    current_tokens = 0

    def flush() -> None:
        nonlocal current, current_tokens
        if current:
            pieces.append(("\n\n".join(current), current_tokens))
        current = []
        current_tokens = 0

    for paragraph in PARAGRAPH_SPLIT.split(text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue

        paragraph_tokens = count(paragraph)
        if paragraph_tokens > max_tokens:
            flush()
            for window in chunk_document(paragraph, max_tokens, overlap_tokens, tokenizer):
                pieces.append((window.content, window.token_count))
            continue

        if current:
            candidate = "\n\n".join([*current, paragraph])
            candidate_tokens = count(candidate)
            if candidate_tokens <= max_tokens:
                current.append(paragraph)
                current_tokens = candidate_tokens
                continue
            flush()

        current = [paragraph]
        current_tokens = paragraph_tokens

    flush()

    if len(pieces) > 1 and pieces[-1][1] < min_tail_tokens(max_tokens):
        merged = f"{pieces[-2][0]}\n\n{pieces[-1][0]}"
        merged_tokens = count(merged)
        if merged_tokens <= max_tokens:
            pieces[-2:] = [(merged, merged_tokens)]

    return [
        TextChunk(content=content, index=index, token_count=token_count)
        for index, (content, token_count) in enumerate(pieces)
    ]


def chunk_body(
    body: str,
    max_tokens: int,
    overlap_tokens: int,
    strategy: str = "token",
    tokenizer: Tokenizer | None = None,
) -> list[TextChunk]:
    """Chunk with the configured strategy ("token" or "semantic")."""
    if strategy == "semantic":
        return chunk_document_semantic(body, max_tokens, overlap_tokens, tokenizer)
    if strategy == "token":
        return chunk_document(body, max_tokens, overlap_tokens, tokenizer)
    raise ValidationError(f"Unknown chunk strategy: {strategy}")
