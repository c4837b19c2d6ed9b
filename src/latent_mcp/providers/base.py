"""Capability interfaces shared by every provider backend."""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from latent_mcp.errors import PersistentProviderError, ProviderError, TransientProviderError

logger = logging.getLogger(__name__)

# Timeout for provider calls
REQUEST_TIMEOUT = 60.0  # seconds

Message = dict[str, Any]


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: str  # Raw JSON text, validated by the tool executor


@dataclass
class ChatResponse:
    """One assistant turn."""

    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    def to_message(self) -> Message:
        """Render the turn as an assistant message for the transcript."""
        message: Message = {"role": "assistant", "content": self.content or ""}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ]
        return message


@runtime_checkable
class ChatProvider(Protocol):
    """Something that can answer a chat transcript, optionally calling tools."""

    name: str

    async def chat(
        self, messages: list[Message], tools: list[dict[str, Any]] | None = None
    ) -> ChatResponse: ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Something that turns texts into vectors, one per input, in order."""

    name: str
    embedding_model: str

    async def embed(self, texts: list[str]) -> list[list[float]]: ...


def classify_status(provider: str, status_code: int, message: str) -> ProviderError:
    """Map an HTTP status to a transient (retry) or persistent (give up) error."""
    if status_code == 429 or status_code >= 500:
        return TransientProviderError(message, provider=provider, status_code=status_code)
    return PersistentProviderError(message, provider=provider, status_code=status_code)


class HTTPProvider:
    """Shared plumbing for providers that talk JSON over HTTP."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers or {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON payload and return the decoded body, raising ProviderError."""
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.post(url, json=payload, headers=self._headers)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Timeout calling {url}", provider=self.name) from e
        except httpx.TransportError as e:
            raise TransientProviderError(
                f"Connection error calling {url}: {e}", provider=self.name
            ) from e

        if response.status_code >= 400:
            detail = response.text[:500]
            logger.debug("%s returned %d: %s", url, response.status_code, detail)
            raise classify_status(
                self.name, response.status_code, f"Request to {path} failed: {detail}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise PersistentProviderError(
                f"Invalid JSON from {path}", provider=self.name, status_code=response.status_code
            ) from e
        if not isinstance(data, dict):
            raise PersistentProviderError(
                f"Unexpected response shape from {path}", provider=self.name
            )
        return data
