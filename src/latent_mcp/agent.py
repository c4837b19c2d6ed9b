"""Bounded tool-calling loop between a chat provider and the tool executor."""

import logging
from dataclasses import dataclass, field
from typing import Any

from latent_mcp.errors import AgentTurnLimitError, ValidationError
from latent_mcp.providers.base import ChatProvider, Message
from latent_mcp.tools import ToolExecutor

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 10

SYSTEM_PROMPT = (
    "You are an assistant with access to the user's Markdown notes. "
    "Use search_notes to find relevant passages and read_note to read whole notes "
    "before answering. Cite note paths when you rely on them. Only write or change "
    "notes when the user asks you to."
)


@dataclass
class AgentResult:
    """Final answer plus the full transcript that produced it."""

    answer: str
    messages: list[Message] = field(default_factory=list)
    turns: int = 0
    tool_calls: int = 0


class AgentLoop:
    """
    Drives a conversation until the model answers without calling tools.

    Each turn sends the transcript and the tool catalogue to the chat
    provider. Requested tools run through the executor and their results are
    appended as ``tool`` messages. Exceeding ``max_turns`` raises
    AgentTurnLimitError instead of returning a truncated answer.
    """

    def __init__(
        self,
        chat: ChatProvider,
        executor: ToolExecutor,
        max_turns: int = DEFAULT_MAX_TURNS,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        if max_turns <= 0:
            raise ValueError(f"Max turns must be positive, got {max_turns}")
        self.chat = chat
        self.executor = executor
        self.max_turns = max_turns
        self.system_prompt = system_prompt

    async def run(self, question: str, history: list[Message] | None = None) -> AgentResult:
        """
        Answer a question, calling tools as the model requests.

        Args:
            question: The user's message
            history: Earlier user/assistant messages of the conversation

        Raises:
            ValidationError: Empty question
            AgentTurnLimitError: No final answer within ``max_turns`` turns
            ProviderError: The chat provider failed
        """
        if not question or not question.strip():
            raise ValidationError("Question must not be empty")

        messages: list[Message] = [{"role": "system", "content": self.system_prompt}]
        messages.extend(history or [])
        messages.append({"role": "user", "content": question})
        tools: list[dict[str, Any]] = self.executor.catalogue()
        tool_calls = 0

        for turn in range(1, self.max_turns + 1):
            response = await self.chat.chat(messages, tools)
            messages.append(response.to_message())

            if not response.tool_calls:
                logger.info("Agent answered after %d turns (%d tool calls)", turn, tool_calls)
                return AgentResult(
                    answer=response.content or "",
                    messages=messages,
                    turns=turn,
                    tool_calls=tool_calls,
                )

            for call in response.tool_calls:
                logger.debug("Turn %d: calling %s(%s)", turn, call.name, call.arguments)
                result = await self.executor.dispatch(call.name, call.arguments)
                messages.append(result.to_message(call.id))
                tool_calls += 1

        logger.warning("Agent hit the turn limit (%d)", self.max_turns)
        raise AgentTurnLimitError(self.max_turns, messages)
