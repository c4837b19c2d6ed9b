"""
Provider backends for chat and embeddings.

A backend is chosen once, from configuration, by create_provider(). Everything
else only sees the ChatProvider / EmbeddingProvider capabilities.
"""

import logging

import httpx

from latent_mcp.config import Config
from latent_mcp.providers.base import (
    ChatProvider,
    ChatResponse,
    EmbeddingProvider,
    Message,
    ToolCall,
    classify_status,
)
from latent_mcp.providers.ollama import OllamaProvider
from latent_mcp.providers.openai import OpenAIProvider

logger = logging.getLogger(__name__)

Provider = OpenAIProvider | OllamaProvider


def create_provider(config: Config, client: httpx.AsyncClient | None = None) -> Provider | None:
    """
    Build the backend named by ``config.provider``.

    Returns None for "none": the indexer then stores chunks without
    embeddings and search falls back to substring matching.
    """
    if config.provider == "none":
        return None
    if config.provider == "openai":
        if not config.api_key and not config.base_url:
            raise ValueError("The openai provider needs LATENT_API_KEY or LATENT_BASE_URL")
        logger.info("Using OpenAI-compatible provider (%s)", config.base_url or "api.openai.com")
        return OpenAIProvider(
            api_key=config.api_key,
            chat_model=config.chat_model,
            embedding_model=config.embedding_model,
            base_url=config.base_url,
            client=client,
        )
    if config.provider == "ollama":
        logger.info("Using Ollama provider (%s)", config.base_url or "localhost:11434")
        return OllamaProvider(
            chat_model=config.chat_model,
            embedding_model=config.embedding_model,
            base_url=config.base_url,
            client=client,
        )
    raise ValueError(f"Unknown provider: {config.provider}")


__all__ = [
    "ChatProvider",
    "ChatResponse",
    "EmbeddingProvider",
    "Message",
    "OllamaProvider",
    "OpenAIProvider",
    "Provider",
    "ToolCall",
    "classify_status",
    "create_provider",
]
