"""Tests for inbound event routing, prefixes, persistence and reply dispatch."""

from __future__ import annotations

import json
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest
from openai import OpenAIError

from conftest import make_completion, make_openai, make_usage, text_stream
from core.chat_client import ChatClientResult, CompletionUsage, UpstreamProducedNoOutput
from core.config import BotConfig
from core.conversation import ConversationRef
from core.handlers import (
    ConversationConfig,
    MessageEvent,
    MessageRouter,
    StoredConversation,
    decorate_reply,
    is_valid_image_url,
)
from core.tokens import PromptTooLong

NOW = 1_700_000_000.0
ROOM = "!room:example.org"
BOT = "@gpt:example.org"


def make_event(body="hello", *, event_id="$ev1", sender="@alice:example.org", msgtype="m.text", age_ms=1000, relates_to=None, **extra):
    content = {"msgtype": msgtype, "body": body}
    if relates_to is not None:
        content["m.relates_to"] = relates_to
    content.update(extra)
    return {
        "event_id": event_id,
        "type": "m.room.message",
        "sender": sender,
        "origin_server_ts": int(NOW * 1000) - age_ms,
        "content": content,
    }


def thread(root="$root"):
    return {"rel_type": "m.thread", "event_id": root}


def make_client(*, is_dm=False):
    client = MagicMock()
    client.whoami = AsyncMock(return_value=BOT)
    client.get_display_name = AsyncMock(return_value="GPT Bot")
    client.is_dm = AsyncMock(return_value=is_dm)
    client.send_reply = AsyncMock(side_effect=lambda *a, **kw: "$reply")
    client.send_error = AsyncMock()
    client.set_typing = AsyncMock()
    client.send_read_receipt = AsyncMock()
    client.download_image_data_url = AsyncMock(return_value="data:image/png;base64,AAAA")
    return client


@pytest.fixture
def router_factory(kv, make_chat):
    async def _make(*, config=None, openai_client=None, chat=None, is_dm=False, **chat_options):
        config = config or BotConfig(model="gpt-test")
        openai_client = openai_client or make_openai(completion=make_completion("answer"))
        chat = chat or make_chat(openai_client, **chat_options)
        router = MessageRouter(make_client(is_dm=is_dm), chat, config, kv, clock=lambda: NOW)
        await router.prepare_profile()
        return router

    return _make


def stored_record(kv, key):
    raw = kv.get("gpt-" + key)
    return json.loads(raw) if raw is not None else None


# ---------------------------------------------------------------------------
# admission
# ---------------------------------------------------------------------------


class TestShouldProcess:
    @pytest.mark.asyncio
    async def test_accepts_plain_text(self, router_factory):
        router = await router_factory()
        assert router.should_process(MessageEvent.from_raw(ROOM, make_event()))

    @pytest.mark.asyncio
    async def test_accepts_image(self, router_factory):
        router = await router_factory()
        assert router.should_process(MessageEvent.from_raw(ROOM, make_event(msgtype="m.image")))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw",
        [
            make_event(sender=BOT),
            make_event(age_ms=61_000),
            make_event(relates_to={"rel_type": "m.replace", "event_id": "$old"}),
            make_event(msgtype="m.notice"),
            make_event(msgtype="m.file"),
        ],
    )
    async def test_rejects(self, router_factory, raw):
        router = await router_factory()
        assert not router.should_process(MessageEvent.from_raw(ROOM, raw))

    @pytest.mark.asyncio
    async def test_sender_lists(self, router_factory):
        router = await router_factory(config=BotConfig(blacklist=":evil.org  @spam:x.org"))
        assert not router.should_process(MessageEvent.from_raw(ROOM, make_event(sender="@bob:evil.org")))
        assert router.should_process(MessageEvent.from_raw(ROOM, make_event(sender="@bob:good.org")))

        router = await router_factory(config=BotConfig(whitelist=":good.org"))
        assert not router.should_process(MessageEvent.from_raw(ROOM, make_event(sender="@bob:evil.org")))
        assert router.should_process(MessageEvent.from_raw(ROOM, make_event(sender="@bob:good.org")))

    @pytest.mark.asyncio
    async def test_room_lists(self, router_factory):
        router = await router_factory(config=BotConfig(room_blacklist=":example.org"))
        assert not router.should_process(MessageEvent.from_raw(ROOM, make_event()))

        router = await router_factory(config=BotConfig(room_whitelist="!other:example.org"))
        assert not router.should_process(MessageEvent.from_raw(ROOM, make_event()))
        assert router.should_process(MessageEvent.from_raw("!other:example.org", make_event()))


# ---------------------------------------------------------------------------
# storage keys and records
# ---------------------------------------------------------------------------


class TestStorageKey:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "mode,in_thread,expected",
        [
            ("room", False, ROOM),
            ("room", True, ROOM),
            ("thread", False, "$ev1"),
            ("thread", True, "$root"),
            ("both", False, ROOM),
            ("both", True, "$root"),
        ],
    )
    async def test_modes(self, router_factory, mode, in_thread, expected):
        router = await router_factory(config=BotConfig(context=mode))
        raw = make_event(relates_to=thread() if in_thread else None)
        assert router.storage_key(MessageEvent.from_raw(ROOM, raw)) == expected

    @pytest.mark.asyncio
    async def test_falls_back_to_room_record(self, router_factory, kv):
        router = await router_factory()
        kv.set("gpt-" + ROOM, json.dumps({"conversationId": "c1", "messageId": "m1"}))
        stored = router.get_stored_conversation("$thread", ROOM)
        assert stored.ref == ConversationRef("c1", "m1")

    @pytest.mark.asyncio
    async def test_defaults_fill_missing_config(self, router_factory, kv):
        router = await router_factory(config=BotConfig(default_prefix="!gpt ", default_prefix_reply=True))
        kv.set("gpt-k", json.dumps({"conversationId": "c", "tailMessageId": "t", "config": {"MATRIX_PREFIX": "?"}}))
        stored = router.get_stored_conversation("k", ROOM)
        assert stored.config == ConversationConfig(prefix="?", prefix_applies_to_replies=True)

    @pytest.mark.asyncio
    async def test_unreadable_record_is_dropped(self, router_factory, kv):
        router = await router_factory()
        kv.set("gpt-k", "[1, 2")
        assert router.get_stored_conversation("k", ROOM) is None
        assert kv.get("gpt-k") is None

    @pytest.mark.asyncio
    async def test_unreadable_room_fallback_is_dropped(self, router_factory, kv):
        router = await router_factory()
        kv.set("gpt-" + ROOM, "null")
        assert router.get_stored_conversation("$thread", ROOM) is None
        assert kv.get("gpt-" + ROOM) is None

    def test_record_round_trip(self):
        stored = StoredConversation("c", "t", ConversationConfig("!p ", True, False))
        assert StoredConversation.from_json(stored.to_json(), ConversationConfig()) == stored

    @pytest.mark.asyncio
    async def test_both_mode_seeds_event_key(self, router_factory, kv):
        router = await router_factory(config=BotConfig(context="both"))
        await router.on_message(ROOM, make_event())
        assert stored_record(kv, ROOM) == stored_record(kv, "$ev1")
        assert stored_record(kv, ROOM)["conversationId"]

    @pytest.mark.asyncio
    async def test_thread_mode_writes_root_key_only(self, router_factory, kv):
        router = await router_factory()
        await router.on_message(ROOM, make_event())
        assert stored_record(kv, "$ev1") is not None
        assert stored_record(kv, ROOM) is None


# ---------------------------------------------------------------------------
# prefixes
# ---------------------------------------------------------------------------


class TestPrefix:
    def _body(self, router, raw, stored=None, is_dm=False):
        config = stored.config if stored else ConversationConfig.defaults(router.config)
        return router.body_without_prefix(stored, config, MessageEvent.from_raw(ROOM, raw), is_dm)

    @pytest.mark.asyncio
    async def test_no_prefix_configured(self, router_factory):
        router = await router_factory()
        assert self._body(router, make_event("  hi")) == "  hi"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ["!gpt   hi", "gpt: hi", "GPT Bot: hi", f"{BOT}: hi"])
    async def test_accepted_prefixes_are_stripped(self, router_factory, body):
        router = await router_factory(config=BotConfig(default_prefix="!gpt"))
        assert self._body(router, make_event(body)) == "hi"

    @pytest.mark.asyncio
    async def test_missing_prefix_drops(self, router_factory):
        router = await router_factory(config=BotConfig(default_prefix="!gpt"))
        assert self._body(router, make_event("hi")) is None

    @pytest.mark.asyncio
    async def test_direct_messages(self, router_factory):
        router = await router_factory(config=BotConfig(default_prefix="!gpt"))
        assert self._body(router, make_event("hi"), is_dm=True) == "hi"

        router = await router_factory(config=BotConfig(default_prefix="!gpt", prefix_dm=True))
        assert self._body(router, make_event("hi"), is_dm=True) is None

    @pytest.mark.asyncio
    async def test_thread_reply_relaxed_once_tracked(self, router_factory):
        router = await router_factory(config=BotConfig(default_prefix="!gpt"))
        raw = make_event("more please", relates_to=thread())
        assert self._body(router, raw) is None

        stored = StoredConversation("c", "t", ConversationConfig(prefix="!gpt"))
        assert self._body(router, raw, stored=stored) == "more please"

    @pytest.mark.asyncio
    async def test_thread_reply_prefix_required(self, router_factory):
        router = await router_factory()
        stored = StoredConversation("c", "t", ConversationConfig(prefix="!gpt", prefix_applies_to_replies=True))
        assert self._body(router, make_event("more", relates_to=thread()), stored=stored) is None
        assert self._body(router, make_event("!gpt more", relates_to=thread()), stored=stored) == "more"


# ---------------------------------------------------------------------------
# dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    @pytest.mark.asyncio
    async def test_single_shot_reply_in_thread(self, router_factory, kv):
        router = await router_factory()
        await router.on_message(ROOM, make_event("hi"))

        router.client.send_reply.assert_awaited_once_with(ROOM, "answer", root_event_id="$ev1")
        router.client.send_read_receipt.assert_awaited_with(ROOM, "$ev1")
        router.client.set_typing.assert_any_await(ROOM, True, router.config.timeout_ms)
        router.client.set_typing.assert_any_await(ROOM, False, 500)
        record = stored_record(kv, "$ev1")
        assert record["config"] == {
            "prefix": "",
            "prefixAppliesToReplies": False,
            "prefixAppliesToDirectMessages": False,
        }

    @pytest.mark.asyncio
    async def test_reply_without_threads(self, router_factory):
        router = await router_factory(config=BotConfig(threads=False, context="room"))
        await router.on_message(ROOM, make_event("hi"))
        router.client.send_reply.assert_awaited_once_with(ROOM, "answer", root_event_id=None)

    @pytest.mark.asyncio
    async def test_conversation_continues_in_thread(self, router_factory, kv):
        openai_client = make_openai(completion=make_completion("answer"))
        router = await router_factory(openai_client=openai_client)
        await router.on_message(ROOM, make_event("first", event_id="$root"))
        first = stored_record(kv, "$root")

        await router.on_message(ROOM, make_event("second", event_id="$ev2", relates_to=thread("$root")))
        second = stored_record(kv, "$root")

        assert second["conversationId"] == first["conversationId"]
        assert second["tailMessageId"] != first["tailMessageId"]
        messages = openai_client.chat.completions.create.call_args.kwargs["messages"]
        assert [m["content"] for m in messages] == ["first", "answer", "second"]

    @pytest.mark.asyncio
    async def test_streamed_reply_edits_in_place(self, router_factory):
        config = BotConfig(first_chunk_size=128)
        openai_client = make_openai(stream=text_stream("s" * 400))
        router = await router_factory(config=config, openai_client=openai_client, first_chunk_size=128)
        await router.on_message(ROOM, make_event("go"))

        calls = router.client.send_reply.await_args_list
        assert len(calls) == 3
        assert calls[0].kwargs["editing_event_id"] is None
        assert all(call.kwargs["editing_event_id"] == "$reply" for call in calls[1:])
        assert calls[0].args[1].endswith(config.generating_message)
        assert calls[-1].args[1] == "s" * 400
        assert router.client.set_typing.await_args_list[-1].args == (ROOM, False, 500)

    @pytest.mark.asyncio
    async def test_empty_body(self, router_factory, kv):
        router = await router_factory(config=BotConfig(default_prefix="!gpt"))
        await router.on_message(ROOM, make_event("!gpt   "))
        router.client.send_error.assert_awaited_once_with(ROOM, "Body is empty", "$ev1")
        assert stored_record(kv, "$ev1") is None


class TestImages:
    @pytest.mark.asyncio
    async def test_image_command_with_text(self, router_factory):
        openai_client = make_openai(completion=make_completion("a cat"))
        router = await router_factory(openai_client=openai_client)
        await router.on_message(ROOM, make_event("!img https://x.test/cat.png\n  what is it?"))

        messages = openai_client.chat.completions.create.call_args.kwargs["messages"]
        assert messages == [
            {
                "role": "user",
                "content": [
                    {"type": "image_url", "image_url": {"url": "https://x.test/cat.png", "detail": "auto"}},
                    {"type": "text", "text": "what is it?"},
                ],
            }
        ]
        router.client.send_reply.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_image_command_then_later_text(self, router_factory, kv):
        openai_client = make_openai(completion=make_completion("a dog"))
        router = await router_factory(openai_client=openai_client, config=BotConfig(context="room"))
        await router.on_message(ROOM, make_event("!img https://x.test/dog.png "))

        openai_client.chat.completions.create.assert_not_called()
        router.client.send_read_receipt.assert_awaited_with(ROOM, "$ev1")

        await router.on_message(ROOM, make_event("describe", event_id="$ev2"))
        content = openai_client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
        assert [part["type"] for part in content] == ["image_url", "text"]

    @pytest.mark.asyncio
    async def test_invalid_image_url(self, router_factory, kv):
        router = await router_factory()
        await router.on_message(ROOM, make_event("!img not a url"))
        router.client.send_error.assert_awaited_once_with(ROOM, "Image URL is invalid: not a url", "$ev1")
        assert stored_record(kv, "$ev1") is None

    @pytest.mark.asyncio
    async def test_vision_disabled(self, router_factory, kv):
        router = await router_factory(config=BotConfig(enable_vision=False))
        await router.on_message(ROOM, make_event("!img https://x.test/cat.png"))
        await router.on_message(ROOM, make_event("", event_id="$ev2", msgtype="m.image", url="mxc://x/y"))
        assert router.client.send_error.await_count == 2
        router.client.download_image_data_url.assert_not_called()
        assert stored_record(kv, "$ev1") is None

    @pytest.mark.asyncio
    async def test_uploaded_image_is_saved(self, router_factory, conversation_store, kv):
        router = await router_factory()
        await router.on_message(ROOM, make_event("cat.png", msgtype="m.image", url="mxc://x/y"))

        record = stored_record(kv, "$ev1")
        conversation = conversation_store.get(record["conversationId"])
        assert conversation.messages[-1].image.url == "data:image/png;base64,AAAA"
        assert conversation.messages[-1].id == record["tailMessageId"]
        router.client.send_reply.assert_not_called()

    def test_url_validation(self):
        assert is_valid_image_url("https://x.test/a.png")
        assert is_valid_image_url("data:image/png;base64,AAAA")
        assert not is_valid_image_url("")
        assert not is_valid_image_url("x.test/a.png")
        assert not is_valid_image_url("https://x.test/a b.png")


# ---------------------------------------------------------------------------
# malformed events
# ---------------------------------------------------------------------------


class TestMalformedEvents:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("timestamp", ["not-a-number", None, True, [1]])
    async def test_bad_timestamp_is_treated_as_stale(self, router_factory, kv, timestamp):
        router = await router_factory()
        raw = make_event()
        raw["origin_server_ts"] = timestamp

        await router.on_message(ROOM, raw)

        router.client.send_reply.assert_not_called()
        router.client.send_error.assert_not_called()
        assert stored_record(kv, "$ev1") is None

    @pytest.mark.asyncio
    async def test_missing_timestamp_is_stale(self, router_factory):
        router = await router_factory()
        raw = make_event()
        del raw["origin_server_ts"]
        assert not router.should_process(MessageEvent.from_raw(ROOM, raw))

    @pytest.mark.asyncio
    async def test_non_dict_content_is_ignored(self, router_factory):
        router = await router_factory()
        raw = make_event()
        raw["content"] = "hello"

        await router.on_message(ROOM, raw)

        router.client.send_reply.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_dict_event_does_not_escape(self, router_factory):
        router = await router_factory()
        await router.on_message(ROOM, ["not", "an", "event"])
        router.client.send_reply.assert_not_called()


# ---------------------------------------------------------------------------
# error handling
# ---------------------------------------------------------------------------


class TestErrors:
    def _failing_chat(self, exc):
        chat = MagicMock()
        chat.send_message = AsyncMock(side_effect=exc)
        return chat

    @pytest.mark.asyncio
    async def test_prompt_too_long_is_reported(self, router_factory, kv):
        router = await router_factory(chat=self._failing_chat(PromptTooLong(10, 42)))
        await router.on_message(ROOM, make_event("hi"))
        text = router.client.send_error.await_args.args[1]
        assert "Max token count is 10" in text
        assert stored_record(kv, "$ev1") is None

    @pytest.mark.asyncio
    async def test_upstream_error_reports_status(self, router_factory, kv):
        error = OpenAIError("bad gateway")
        error.status_code = 502
        router = await router_factory(chat=self._failing_chat(error))
        await router.on_message(ROOM, make_event("hi"))
        text = router.client.send_error.await_args.args[1]
        assert "Error code 502" in text
        assert stored_record(kv, "$ev1") is None

    @pytest.mark.asyncio
    async def test_no_output_is_reported(self, router_factory):
        router = await router_factory(chat=self._failing_chat(UpstreamProducedNoOutput("empty")))
        await router.on_message(ROOM, make_event("hi"))
        assert "Error code Unknown" in router.client.send_error.await_args.args[1]

    @pytest.mark.asyncio
    async def test_other_errors_are_swallowed_silently(self, router_factory):
        router = await router_factory(chat=self._failing_chat(RuntimeError("transport down")))
        await router.on_message(ROOM, make_event("hi"))
        router.client.send_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_error_reporting_failure_does_not_escape(self, router_factory):
        router = await router_factory(chat=self._failing_chat(PromptTooLong(1, 2)))
        router.client.send_error.side_effect = RuntimeError("cannot send")
        await router.on_message(ROOM, make_event("hi"))

    @pytest.mark.asyncio
    async def test_partial_stream_is_not_rolled_back(self, router_factory, kv):
        config = BotConfig(first_chunk_size=128)
        openai_client = make_openai(stream=text_stream("p" * 400))
        router = await router_factory(config=config, openai_client=openai_client, first_chunk_size=128)
        router.client.send_reply.side_effect = ["$reply", RuntimeError("forbidden")]

        await router.on_message(ROOM, make_event("go"))

        assert router.client.send_reply.await_count == 2
        assert stored_record(kv, "$ev1") is None


# ---------------------------------------------------------------------------
# reply decoration
# ---------------------------------------------------------------------------


class TestDecorateReply:
    def test_plain(self):
        assert decorate_reply("text", BotConfig()) == "text"

    def test_generating_suffix(self):
        config = BotConfig(generating_message="...")
        assert decorate_reply("t", config, is_last_chunk=False) == "t\n\n..."
        assert decorate_reply("t", config, is_last_chunk=True) == "t"

    def test_finish_reason_template(self):
        config = BotConfig(unexpected_finish_reason="stopped: {finishReason}!")
        assert decorate_reply("t", config, unexpected_finish_reason="length") == "t\n\nstopped: length!"

    def test_finish_reason_without_placeholder(self):
        config = BotConfig(unexpected_finish_reason="stopped:")
        assert decorate_reply("t", config, unexpected_finish_reason="length") == "t\n\nstopped: length"

    def test_usage_only_when_enabled(self):
        usage = CompletionUsage(10, 5, reasoning_tokens=3)
        assert decorate_reply("t", BotConfig(), usage=usage) == "t"
        assert decorate_reply("t", BotConfig(add_usage=True), usage=usage) == (
            "t\n\n*prompt: 10, completion: 5, reasoning: 3*"
        )

    def test_usage_with_cost(self):
        config = BotConfig(add_usage=True, prompt_token_cost=2.0, response_token_cost=8.0)
        usage = CompletionUsage(1000, 500)
        assert decorate_reply("t", config, usage=usage) == "t\n\n*prompt: 1000, completion: 500, cost: $0.0060*"

    def test_result_fields_flow_through(self):
        result = ChatClientResult("r", "c", "t", is_last_chunk=False, unexpected_finish_reason="length", usage=make_usage(1, 2))
        config = replace(BotConfig(), generating_message="gen", unexpected_finish_reason="why {finishReason}")
        assert decorate_reply(
            result.response,
            config,
            is_last_chunk=result.is_last_chunk,
            unexpected_finish_reason=result.unexpected_finish_reason,
        ) == "r\n\ngen\n\nwhy length"
