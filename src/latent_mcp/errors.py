"""Error types shared by the indexer, providers, tools and agent loop."""

from typing import Any


class LatentError(Exception):
    """Base class for all latent-mcp errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LatentError, ValueError):
    """Malformed input or a path that escapes the vault. Never retried."""


class NotFoundError(LatentError):
    """A note or document does not exist."""


class ProviderError(LatentError):
    """An embedding or chat provider call failed."""

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.provider = provider
        self.status_code = status_code

    def __str__(self) -> str:
        status = f" (status {self.status_code})" if self.status_code is not None else ""
        return f"[{self.provider}] {self.message}{status}"


class TransientProviderError(ProviderError):
    """Rate limiting, 5xx, refused connection or timeout. Safe to retry."""


class PersistentProviderError(ProviderError):
    """4xx other than rate limiting. Retrying will not help."""


class CorruptedContentError(LatentError):
    """A vault file could not be decoded."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot read {path}: {reason}", {"path": path})
        self.path = path


class AgentTurnLimitError(LatentError):
    """The agent loop hit its turn cap without producing a final answer."""

    def __init__(self, max_turns: int, messages: list[dict[str, Any]] | None = None):
        super().__init__(
            f"Agent did not finish within {max_turns} turns",
            {"max_turns": max_turns},
        )
        self.max_turns = max_turns
        self.messages = messages or []
