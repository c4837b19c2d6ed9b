"""Shared fixtures: a temporary vault, a store and deterministic fake backends."""

import re
import zlib
from pathlib import Path

import pytest

from latent_mcp.embedding import EmbeddingGateway
from latent_mcp.indexer import ContentStore, Indexer
from latent_mcp.providers.base import ChatResponse

WORD_PATTERN = re.compile(r"[a-z0-9]+")


class WordTokenizer:
    """One token per whitespace-separated word, so token counts are easy to reason about."""

    def __init__(self):
        self._ids: dict[str, int] = {}
        self._words: list[str] = []

    def encode(self, text: str) -> list[int]:
        tokens = []
        for word in text.split():
            if word not in self._ids:
                self._ids[word] = len(self._words)
                self._words.append(word)
            tokens.append(self._ids[word])
        return tokens

    def decode(self, tokens: list[int]) -> str:
        return " ".join(self._words[token] for token in tokens)


def bag_of_words(text: str, dimensions: int = 64) -> list[float]:
    """Hash lower-cased words into a fixed-size count vector."""
    vector = [0.0] * dimensions
    for word in WORD_PATTERN.findall(text.lower()):
        vector[zlib.crc32(word.encode()) % dimensions] += 1.0
    return vector


class FakeProvider:
    """Embedding + chat backend with deterministic vectors and scripted replies."""

    name = "fake"
    embedding_model = "fake-embed"

    def __init__(self, responses: list[ChatResponse] | None = None, dimensions: int = 64):
        self.responses = list(responses or [])
        self.dimensions = dimensions
        self.embed_calls: list[list[str]] = []
        self.chat_calls: list[dict] = []
        self._embed_error: Exception | None = None
        self._failures_left: int | None = None

    def fail_embeddings(self, error: Exception, times: int | None = None) -> None:
        """Raise ``error`` from the next ``times`` embed calls (every call if None)."""
        self._embed_error = error
        self._failures_left = times

    def recover(self) -> None:
        self._embed_error = None
        self._failures_left = None

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.embed_calls.append(list(texts))
        if self._embed_error is not None:
            if self._failures_left is None:
                raise self._embed_error
            if self._failures_left > 0:
                self._failures_left -= 1
                raise self._embed_error
        return [bag_of_words(text, self.dimensions) for text in texts]

    async def chat(self, messages, tools=None) -> ChatResponse:
        self.chat_calls.append({"messages": list(messages), "tools": tools})
        if not self.responses:
            return ChatResponse(content="")
        # The last scripted reply repeats once the script runs out
        index = min(len(self.chat_calls), len(self.responses)) - 1
        return self.responses[index]


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def vault(tmp_path: Path) -> Path:
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def store(tmp_path: Path):
    """Create a temporary content store."""
    content_store = ContentStore(tmp_path / "index" / "latent.db")
    content_store.initialize()
    yield content_store
    content_store.close()


@pytest.fixture
def tokenizer() -> WordTokenizer:
    return WordTokenizer()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def gateway(provider: FakeProvider) -> EmbeddingGateway:
    return EmbeddingGateway(provider, batch_size=4, sleep=no_sleep)


@pytest.fixture
def indexer(vault: Path, store: ContentStore, gateway: EmbeddingGateway, tokenizer) -> Indexer:
    """Indexer with 20-word chunks overlapping by 5 words."""
    return Indexer(vault, store, gateway=gateway, chunk_size=20, chunk_overlap=5, tokenizer=tokenizer)


@pytest.fixture
def write_note(vault: Path):
    """Write a note into the vault and return its absolute path."""

    def _write(relative: str, content: str | bytes) -> Path:
        path = vault / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
        return path

    return _write
