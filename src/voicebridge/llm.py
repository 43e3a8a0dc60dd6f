"""
Reply generation via an OpenAI-compatible chat completion API.

Provides:
- Fixed phone-companion persona
- Per-call rolling conversation history (in memory, dropped at call end)
- Bounded input length, response length and wait time
- A fixed fallback phrase on any failure; `reply()` never raises
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import structlog
from openai import AsyncOpenAI

from src.voicebridge.config import get_config

logger = structlog.get_logger(__name__)

FALLBACK_REPLY = "Sorry, I'm having trouble thinking right now."
NO_KEY_REPLY = "I hear you. How can I help?"
EMPTY_REPLY = "Okay."


@dataclass
class ConversationTurn:
    """A single turn in the conversation."""
    role: str  # "user" or "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)


class ConversationHistory:
    """Manages conversation history with a rolling window."""

    def __init__(self, max_turns: int = 6):
        self.max_turns = max_turns
        self._turns: List[ConversationTurn] = []

    def add_user_message(self, content: str) -> None:
        """Add a user message."""
        self._turns.append(ConversationTurn(role="user", content=content))
        self._trim()

    def add_assistant_message(self, content: str) -> None:
        """Add an assistant message."""
        self._turns.append(ConversationTurn(role="assistant", content=content))
        self._trim()

    def _trim(self) -> None:
        """Trim history to max turns."""
        # Keep pairs of turns (user + assistant)
        max_messages = max(0, self.max_turns) * 2
        if len(self._turns) > max_messages:
            self._turns = self._turns[-max_messages:] if max_messages else []

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format."""
        return [
            {"role": turn.role, "content": turn.content}
            for turn in self._turns
        ]

    def clear(self) -> None:
        """Clear conversation history."""
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)


def get_system_prompt(config: Optional[Any] = None) -> str:
    """Persona for the phone companion."""
    if config is None:
        config = get_config()

    return f"""You are {config.agent_name}, a warm, kind and patient phone companion.

GUIDELINES:
- Keep replies short: one or two sentences, natural spoken language.
- Acknowledge what the caller said, then answer directly.
- Prefer reflective listening and gentle encouragement.
- No emojis, lists or formatting; everything you write is read aloud."""


class ReplyGateway:
    """
    Text-in, text-out reply generation for one call.

    `reply()` suspends the caller until the completion returns or the
    configured timeout elapses.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_model
        self._client = client
        if self._client is None and config.openai_api_key:
            self._client = AsyncOpenAI(
                api_key=config.openai_api_key,
                timeout=httpx.Timeout(config.llm_timeout_seconds),
                max_retries=0,
            )

        self._history = ConversationHistory(max_turns=config.max_history_turns)
        self.last_latency_ms: float = 0.0

    @property
    def history(self) -> ConversationHistory:
        """Get conversation history."""
        return self._history

    def _build_messages(self, user_text: str) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": get_system_prompt(self.config)}]
        messages.extend(self._history.get_messages())
        messages.append({"role": "user", "content": user_text})
        return messages

    async def _complete(self, messages: List[Dict[str, str]]) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=self.config.llm_max_tokens,
            temperature=self.config.llm_temperature,
        )
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()

    async def reply(self, text: str) -> str:
        """
        Generate a spoken reply to `text`.

        Returns the fixed fallback phrase on timeout, network failure, bad status
        or malformed response.
        """
        user_text = str(text or "")[: self.config.llm_max_input_chars]

        if self._client is None:
            logger.warning("No OPENAI_API_KEY set - using fallback reply")
            return NO_KEY_REPLY

        messages = self._build_messages(user_text)
        start_time = time.time()

        try:
            reply_text = await asyncio.wait_for(
                self._complete(messages),
                timeout=self.config.llm_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.error("LLM reply timed out", timeout_s=self.config.llm_timeout_seconds)
            reply_text = None
        except Exception as e:
            logger.error("LLM generation failed", error_type=type(e).__name__, error=str(e))
            reply_text = None
        finally:
            self.last_latency_ms = (time.time() - start_time) * 1000

        if reply_text is None:
            return FALLBACK_REPLY

        reply_text = reply_text or EMPTY_REPLY
        self._history.add_user_message(user_text)
        self._history.add_assistant_message(reply_text)

        logger.info(
            "LLM reply",
            latency_ms=round(self.last_latency_ms, 2),
            chars=len(reply_text),
        )
        return reply_text

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.close()
            except Exception as e:
                logger.debug("Error closing LLM client", error=str(e))
