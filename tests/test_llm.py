"""
Tests for reply generation.
"""

import asyncio
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.voicebridge.config import get_config
from src.voicebridge.llm import (
    EMPTY_REPLY,
    FALLBACK_REPLY,
    NO_KEY_REPLY,
    ConversationHistory,
    ReplyGateway,
    get_system_prompt,
)


def _completion(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


def _client(create) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = create
    client.close = AsyncMock()
    return client


class TestConversationHistory:
    """Tests for the rolling history window."""

    def test_trims_to_max_turns(self):
        history = ConversationHistory(max_turns=2)
        for i in range(5):
            history.add_user_message(f"u{i}")
            history.add_assistant_message(f"a{i}")

        messages = history.get_messages()
        assert len(messages) == 4
        assert messages[0] == {"role": "user", "content": "u3"}

    def test_clear(self):
        history = ConversationHistory()
        history.add_user_message("hi")
        history.clear()
        assert len(history) == 0


class TestReplyGateway:
    """Tests for ReplyGateway.reply."""

    def test_system_prompt_uses_agent_name(self):
        assert "Companion" in get_system_prompt(get_config())

    @pytest.mark.asyncio
    async def test_reply_returns_completion_and_records_history(self):
        create = AsyncMock(return_value=_completion("  Nice to hear from you.  "))
        gateway = ReplyGateway(client=_client(create))

        reply = await gateway.reply("hello")

        assert reply == "Nice to hear from you."
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"][0]["role"] == "system"
        assert kwargs["messages"][-1] == {"role": "user", "content": "hello"}
        assert gateway.history.get_messages() == [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "Nice to hear from you."},
        ]

    @pytest.mark.asyncio
    async def test_history_is_sent_on_next_turn(self):
        create = AsyncMock(side_effect=[_completion("first"), _completion("second")])
        gateway = ReplyGateway(client=_client(create))

        await gateway.reply("one")
        await gateway.reply("two")

        messages = create.await_args.kwargs["messages"]
        assert [m["content"] for m in messages[1:]] == ["one", "first", "two"]

    @pytest.mark.asyncio
    async def test_input_is_truncated(self):
        config = replace(get_config(), llm_max_input_chars=10)
        create = AsyncMock(return_value=_completion("ok"))
        gateway = ReplyGateway(config=config, client=_client(create))

        await gateway.reply("x" * 50)

        assert create.await_args.kwargs["messages"][-1]["content"] == "x" * 10

    @pytest.mark.asyncio
    async def test_upstream_error_returns_fallback(self):
        create = AsyncMock(side_effect=RuntimeError("500 from upstream"))
        gateway = ReplyGateway(client=_client(create))

        reply = await gateway.reply("hello")

        assert reply == FALLBACK_REPLY
        assert len(gateway.history) == 0

    @pytest.mark.asyncio
    async def test_timeout_returns_fallback(self):
        config = replace(get_config(), llm_timeout_seconds=0.05)

        async def slow(**kwargs):
            await asyncio.sleep(5)
            return _completion("too late")

        gateway = ReplyGateway(config=config, client=_client(AsyncMock(side_effect=slow)))

        reply = await asyncio.wait_for(gateway.reply("hello"), timeout=2.0)

        assert reply == FALLBACK_REPLY

    @pytest.mark.asyncio
    async def test_malformed_response_returns_fallback(self):
        create = AsyncMock(return_value=SimpleNamespace(choices=[SimpleNamespace()]))
        gateway = ReplyGateway(client=_client(create))

        assert await gateway.reply("hello") == FALLBACK_REPLY

    @pytest.mark.asyncio
    async def test_empty_completion_gets_short_acknowledgement(self):
        gateway = ReplyGateway(client=_client(AsyncMock(return_value=_completion(""))))

        assert await gateway.reply("hello") == EMPTY_REPLY
        assert gateway.history.get_messages()[-1] == {"role": "assistant", "content": EMPTY_REPLY}

    @pytest.mark.asyncio
    async def test_no_key_returns_fixed_phrase(self):
        gateway = ReplyGateway(config=replace(get_config(), openai_api_key=""))
        assert await gateway.reply("hello") == NO_KEY_REPLY

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        client = _client(AsyncMock())
        gateway = ReplyGateway(client=client)

        await gateway.close()

        client.close.assert_awaited_once()
