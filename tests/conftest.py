from __future__ import annotations

from types import SimpleNamespace
from typing import Iterable, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from core import tokens
from core.chat_client import ChatClient, ChatClientOptions
from core.conversation import ConversationStore
from core.storage import KeyValueStore


class WordEncoding:
    """Stand-in tiktoken encoding: one token per whitespace-separated word."""

    def encode(self, text: str, disallowed_special=()) -> List[str]:
        return text.split()


@pytest.fixture
def token_counter(monkeypatch) -> tokens.TokenCounter:
    monkeypatch.setattr(tokens.tiktoken, "encoding_for_model", lambda model: WordEncoding())
    return tokens.TokenCounter("gpt-test")


@pytest.fixture
def kv() -> KeyValueStore:
    store = KeyValueStore(":memory:", namespace="bot")
    yield store
    store.close()


@pytest.fixture
def conversation_store(kv) -> ConversationStore:
    return ConversationStore(kv.namespaced("chatgpt"))


def make_completion(content: str, *, finish_reason: str = "stop", role: str = "assistant", usage=None):
    return SimpleNamespace(
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(role=role, content=content),
                finish_reason=finish_reason,
            )
        ],
        usage=usage,
    )


def make_usage(prompt: int, completion: int, reasoning: Optional[int] = None):
    details = SimpleNamespace(reasoning_tokens=reasoning) if reasoning is not None else None
    return SimpleNamespace(prompt_tokens=prompt, completion_tokens=completion, completion_tokens_details=details)


def stream_chunk(content: Optional[str] = None, *, role: Optional[str] = None, finish_reason: Optional[str] = None):
    return SimpleNamespace(
        choices=[
            SimpleNamespace(
                delta=SimpleNamespace(role=role, content=content),
                finish_reason=finish_reason,
            )
        ],
        usage=None,
    )


def usage_chunk(usage):
    return SimpleNamespace(choices=[], usage=usage)


class FakeStream:
    def __init__(self, chunks: Iterable):
        self._chunks = list(chunks)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self._chunks:
            yield chunk


def text_stream(text: str, *, finish_reason: str = "stop", step: int = 1, usage=None) -> FakeStream:
    chunks = [stream_chunk("", role="assistant")]
    for start in range(0, len(text), step):
        chunks.append(stream_chunk(text[start:start + step]))
    chunks.append(stream_chunk(None, finish_reason=finish_reason))
    if usage is not None:
        chunks.append(usage_chunk(usage))
    return FakeStream(chunks)


def make_openai(*, completion=None, stream=None) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock()
    if completion is not None:
        client.chat.completions.create.return_value = completion
    if stream is not None:
        client.chat.completions.create.return_value = stream
    return client


@pytest.fixture
def make_chat(conversation_store, token_counter):
    def _make(openai_client, **option_overrides) -> ChatClient:
        options = ChatClientOptions(model="gpt-test", **option_overrides)
        return ChatClient(openai_client, options, conversation_store, token_counter=token_counter)

    return _make
