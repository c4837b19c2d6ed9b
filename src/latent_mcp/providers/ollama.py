"""Ollama chat and embedding backend."""

import json
import logging
from typing import Any

import httpx

from latent_mcp.errors import PersistentProviderError
from latent_mcp.providers.base import ChatResponse, HTTPProvider, Message, ToolCall

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"


def _to_ollama_messages(messages: list[Message]) -> list[Message]:
    """Ollama expects tool-call arguments as objects, not JSON strings."""
    converted: list[Message] = []
    for message in messages:
        message = dict(message)
        calls = message.get("tool_calls")
        if calls:
            message["tool_calls"] = [
                {
                    "function": {
                        "name": call["function"]["name"],
                        "arguments": _loads_arguments(call["function"].get("arguments")),
                    }
                }
                for call in calls
            ]
        converted.append(message)
    return converted


def _loads_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        value = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


class OllamaProvider(HTTPProvider):
    """Talks to a local Ollama server via ``/api/chat`` and ``/api/embed``."""

    name = "ollama"

    def __init__(
        self,
        chat_model: str = "llama3.1",
        embedding_model: str = "nomic-embed-text",
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(base_url or DEFAULT_BASE_URL, client=client)
        self.chat_model = chat_model
        self.embedding_model = embedding_model

    async def chat(
        self, messages: list[Message], tools: list[dict[str, Any]] | None = None
    ) -> ChatResponse:
        payload: dict[str, Any] = {
            "model": self.chat_model,
            "messages": _to_ollama_messages(messages),
            "stream": False,
        }
        if tools:
            payload["tools"] = tools

        data = await self._post_json("/api/chat", payload)
        message = data.get("message")
        if not isinstance(message, dict):
            raise PersistentProviderError("Response has no message", provider=self.name)

        tool_calls = []
        for index, call in enumerate(message.get("tool_calls") or []):
            function = call.get("function", {})
            arguments = function.get("arguments", {})
            tool_calls.append(
                ToolCall(
                    id=call.get("id") or f"call_{index}",
                    name=function.get("name", ""),
                    arguments=arguments if isinstance(arguments, str) else json.dumps(arguments),
                )
            )
        return ChatResponse(content=message.get("content"), tool_calls=tool_calls)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        data = await self._post_json(
            "/api/embed", {"model": self.embedding_model, "input": texts}
        )
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise PersistentProviderError(
                f"Expected {len(texts)} embeddings from Ollama", provider=self.name
            )
        return embeddings
