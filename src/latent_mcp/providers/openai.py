"""OpenAI-compatible chat and embedding backend."""

import logging
from typing import Any

import httpx

from latent_mcp.errors import PersistentProviderError
from latent_mcp.providers.base import ChatResponse, HTTPProvider, Message, ToolCall

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class OpenAIProvider(HTTPProvider):
    """
    Talks to ``/chat/completions`` and ``/embeddings``.

    Works with any server exposing the same endpoints (LM Studio, vLLM, ...)
    by pointing ``base_url`` at it.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str | None,
        chat_model: str = "gpt-4o",
        embedding_model: str = "text-embedding-3-small",
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        super().__init__(base_url or DEFAULT_BASE_URL, headers=headers, client=client)
        self.chat_model = chat_model
        self.embedding_model = embedding_model

    async def chat(
        self, messages: list[Message], tools: list[dict[str, Any]] | None = None
    ) -> ChatResponse:
        payload: dict[str, Any] = {"model": self.chat_model, "messages": messages}
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        data = await self._post_json("/chat/completions", payload)
        try:
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise PersistentProviderError("Response has no choices", provider=self.name) from e

        tool_calls = [
            ToolCall(
                id=call.get("id") or f"call_{index}",
                name=call["function"]["name"],
                arguments=call["function"].get("arguments") or "{}",
            )
            for index, call in enumerate(message.get("tool_calls") or [])
        ]
        return ChatResponse(content=message.get("content"), tool_calls=tool_calls)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        data = await self._post_json(
            "/embeddings", {"model": self.embedding_model, "input": texts}
        )
        items = data.get("data")
        if not isinstance(items, list) or len(items) != len(texts):
            raise PersistentProviderError(
                f"Expected {len(texts)} embeddings, got {len(items) if isinstance(items, list) else 0}",
                provider=self.name,
            )
        # The API may return items out of order
        items = sorted(items, key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in items]
