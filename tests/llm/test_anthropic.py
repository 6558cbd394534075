"""Tests for AnthropicProvider with a stubbed client. No API calls."""

from types import SimpleNamespace

import pytest

from morphos.llm.anthropic import DEFAULT_MODEL, AnthropicProvider
from morphos.llm.base import LLMMessage


class StubMessages:
    def __init__(self, reply):
        self.reply = reply
        self.request = None

    async def create(self, **request):
        self.request = request
        return self.reply


def _reply(blocks, stop_reason="end_turn", tokens=(12, 7)):
    return SimpleNamespace(
        content=blocks,
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=tokens[0], output_tokens=tokens[1]),
    )


def _provider(reply, model="test-model"):
    messages = StubMessages(reply)
    provider = AnthropicProvider(api_key="test-key", model=model, client=SimpleNamespace(messages=messages))
    return provider, messages


@pytest.mark.asyncio
async def test_complete_joins_text_blocks():
    reply = _reply([
        SimpleNamespace(type="text", text='{"a": '),
        SimpleNamespace(type="thinking", text="ignored"),
        SimpleNamespace(type="text", text="1}"),
    ])
    provider, messages = _provider(reply)

    result = await provider.complete([LLMMessage(role="user", content="hi")], system="be brief", max_tokens=100)

    assert result.content == '{"a": 1}'
    assert result.total_tokens == 19
    assert messages.request == {
        "model": "test-model",
        "max_tokens": 100,
        "messages": [{"role": "user", "content": "hi"}],
        "system": "be brief",
    }


@pytest.mark.asyncio
async def test_ask_sends_a_single_user_message():
    provider, messages = _provider(_reply([SimpleNamespace(type="text", text="ok")], stop_reason="max_tokens"))

    result = await provider.ask("analyse this", max_tokens=50)

    assert result.truncated
    assert messages.request["messages"] == [{"role": "user", "content": "analyse this"}]
    assert "system" not in messages.request


@pytest.mark.asyncio
async def test_empty_reply_has_no_content():
    provider, _ = _provider(_reply([], stop_reason=None, tokens=(1, 0)))

    result = await provider.ask("hi")

    assert result.content is None
    assert result.stop_reason == ""
    assert not result.truncated


def test_default_model():
    provider = AnthropicProvider(api_key="test-key", client=SimpleNamespace())
    assert provider.model == DEFAULT_MODEL
