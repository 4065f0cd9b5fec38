import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from openai import OpenAIError

from .chat_client import ChatClient, ChatClientResult, CompletionUsage, UpstreamProducedNoOutput
from .config import BotConfig
from .conversation import ConversationRef
from .storage import KeyValueStore
from .tokens import PromptTooLong

log = logging.getLogger(__name__)

STALE_EVENT_MS = 60 * 1000
PROCESSED_MSGTYPES = ("m.text", "m.image")
IMAGE_COMMAND = "!img "
STORAGE_KEY_PREFIX = "gpt-"
TYPING_OFF_TIMEOUT_MS = 500
USAGE_COST_UNIT = 1_000_000


def event_timestamp_ms(raw: dict) -> int:
    """Origin timestamp of a raw event; 0 (always stale) when absent or malformed."""
    value = raw.get("origin_server_ts")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


@dataclass
class MessageEvent:
    event_id: str
    room_id: str
    sender: str
    origin_server_ts: int
    content: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, room_id: str, raw: dict) -> "MessageEvent":
        content = raw.get("content")
        return cls(
            event_id=str(raw.get("event_id") or ""),
            room_id=room_id,
            sender=str(raw.get("sender") or ""),
            origin_server_ts=event_timestamp_ms(raw),
            content=content if isinstance(content, dict) else {},
        )

    @property
    def msgtype(self) -> Optional[str]:
        return self.content.get("msgtype")

    @property
    def body(self) -> str:
        body = self.content.get("body")
        return body if isinstance(body, str) else ""

    @property
    def relates_to(self) -> dict:
        relation = self.content.get("m.relates_to")
        return relation if isinstance(relation, dict) else {}

    @property
    def thread_root_id(self) -> Optional[str]:
        relation = self.relates_to
        if relation.get("rel_type") == "m.thread" and relation.get("event_id"):
            return str(relation["event_id"])
        return None

    @property
    def root_event_id(self) -> str:
        return self.thread_root_id or self.event_id


@dataclass
class ConversationConfig:
    prefix: str = ""
    prefix_applies_to_replies: bool = False
    prefix_applies_to_direct_messages: bool = False

    @classmethod
    def defaults(cls, config: BotConfig) -> "ConversationConfig":
        return cls(
            prefix=config.default_prefix,
            prefix_applies_to_replies=config.default_prefix_reply,
            prefix_applies_to_direct_messages=config.prefix_dm,
        )


# stored field name -> (attribute, legacy field name)
_CONFIG_FIELDS = (
    ("prefix", "prefix", "MATRIX_PREFIX"),
    ("prefixAppliesToReplies", "prefix_applies_to_replies", "MATRIX_PREFIX_REPLY"),
    ("prefixAppliesToDirectMessages", "prefix_applies_to_direct_messages", "MATRIX_PREFIX_DM"),
)


@dataclass
class StoredConversation:
    conversation_id: Optional[str]
    tail_message_id: Optional[str]
    config: ConversationConfig

    @property
    def ref(self) -> ConversationRef:
        return ConversationRef(self.conversation_id, self.tail_message_id)

    @classmethod
    def from_json(cls, raw: str, defaults: ConversationConfig) -> "StoredConversation":
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("stored conversation is not an object")
        stored_config = payload.get("config")
        if not isinstance(stored_config, dict):
            stored_config = {}
        config = ConversationConfig(**vars(defaults))
        for name, attribute, legacy in _CONFIG_FIELDS:
            if name in stored_config:
                setattr(config, attribute, stored_config[name])
            elif legacy in stored_config:
                setattr(config, attribute, stored_config[legacy])
        return cls(
            conversation_id=payload.get("conversationId"),
            tail_message_id=payload.get("tailMessageId") or payload.get("messageId"),
            config=config,
        )

    def to_json(self) -> str:
        config = {name: getattr(self.config, attribute) for name, attribute, _ in _CONFIG_FIELDS}
        return json.dumps(
            {
                "conversationId": self.conversation_id,
                "tailMessageId": self.tail_message_id,
                "config": config,
            },
            ensure_ascii=False,
        )


def decorate_reply(
    text: str,
    config: BotConfig,
    *,
    is_last_chunk: Optional[bool] = None,
    unexpected_finish_reason: Optional[str] = None,
    usage: Optional[CompletionUsage] = None,
) -> str:
    result = text
    if is_last_chunk is False:
        result += "\n\n" + config.generating_message

    if unexpected_finish_reason is not None:
        template = config.unexpected_finish_reason
        placeholder = "{finishReason}"
        if placeholder in template:
            notice = template.replace(placeholder, unexpected_finish_reason)
        else:
            notice = f"{template} {unexpected_finish_reason}"
        result += "\n\n" + notice

    if usage is not None and config.add_usage:
        line = f"prompt: {usage.prompt_tokens}, completion: {usage.completion_tokens}"
        if usage.reasoning_tokens:
            line += f", reasoning: {usage.reasoning_tokens}"
        if config.prompt_token_cost is not None and config.response_token_cost is not None:
            cost = (
                usage.prompt_tokens * config.prompt_token_cost
                + usage.completion_tokens * config.response_token_cost
            ) / USAGE_COST_UNIT
            line += f", cost: ${cost:.4f}"
        result += f"\n\n*{line}*"

    return result


def _matches_any(value: str, suffixes: str) -> bool:
    return any(value.endswith(suffix) for suffix in suffixes.split())


def is_valid_image_url(url: str) -> bool:
    if not url or any(ch.isspace() for ch in url):
        return False
    parsed = urlparse(url)
    if not parsed.scheme:
        return False
    if parsed.scheme == "data":
        return bool(parsed.path)
    return bool(parsed.netloc)


class MessageRouter:
    """Turns inbound room messages into chat turns and posts the replies."""

    def __init__(
        self,
        client,
        chat: ChatClient,
        config: BotConfig,
        storage: KeyValueStore,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.chat = chat
        self.config = config
        self.storage = storage
        self.clock = clock
        self.user_id = ""
        self.localpart = ""
        self.display_name: Optional[str] = None

    async def prepare_profile(self) -> None:
        self.user_id = await self.client.whoami()
        self.localpart = self.user_id.split(":", 1)[0].lstrip("@")
        try:
            self.display_name = await self.client.get_display_name(self.user_id)
        except Exception as exc:
            log.warning("could not load bot profile: %s", exc)

    # ----- admission -----
    def _is_own(self, event: MessageEvent) -> bool:
        return event.sender == self.user_id

    def _is_blacklisted_sender(self, event: MessageEvent) -> bool:
        return bool(self.config.blacklist) and _matches_any(event.sender, self.config.blacklist)

    def _is_not_whitelisted_sender(self, event: MessageEvent) -> bool:
        return bool(self.config.whitelist) and not _matches_any(event.sender, self.config.whitelist)

    def _is_blacklisted_room(self, event: MessageEvent) -> bool:
        return bool(self.config.room_blacklist) and _matches_any(event.room_id, self.config.room_blacklist)

    def _is_not_whitelisted_room(self, event: MessageEvent) -> bool:
        return bool(self.config.room_whitelist) and not _matches_any(event.room_id, self.config.room_whitelist)

    def _is_stale(self, event: MessageEvent) -> bool:
        return self.clock() * 1000 - event.origin_server_ts > STALE_EVENT_MS

    def _is_edit(self, event: MessageEvent) -> bool:
        return event.relates_to.get("rel_type") == "m.replace"

    def _is_unsupported_type(self, event: MessageEvent) -> bool:
        return event.msgtype not in PROCESSED_MSGTYPES

    def should_process(self, event: MessageEvent) -> bool:
        checks = (
            self._is_own,
            self._is_blacklisted_sender,
            self._is_not_whitelisted_sender,
            self._is_blacklisted_room,
            self._is_not_whitelisted_room,
            self._is_stale,
            self._is_edit,
            self._is_unsupported_type,
        )
        for check in checks:
            if check(event):
                log.debug("ignoring %s: %s", event.event_id, check.__name__.lstrip("_"))
                return False
        return True

    # ----- storage -----
    def storage_key(self, event: MessageEvent) -> str:
        mode = self.config.context
        if mode == "room":
            return event.room_id
        if mode == "thread":
            return event.root_event_id
        return event.thread_root_id or event.room_id

    def _defaults(self) -> ConversationConfig:
        return ConversationConfig.defaults(self.config)

    def get_stored_conversation(self, storage_key: str, room_id: str) -> Optional[StoredConversation]:
        key = STORAGE_KEY_PREFIX + storage_key
        raw = self.storage.get(key)
        if raw is None and storage_key != room_id:
            key = STORAGE_KEY_PREFIX + room_id
            raw = self.storage.get(key)
        if raw is None:
            return None
        try:
            return StoredConversation.from_json(raw, self._defaults())
        except ValueError as exc:
            log.warning("dropping unreadable record %s: %s", key, exc)
            self.storage.delete(key)
            return None

    def save_stored_conversation(
        self, stored: StoredConversation, storage_key: str, room_id: str, event_id: str
    ) -> None:
        raw = stored.to_json()
        self.storage.set(STORAGE_KEY_PREFIX + storage_key, raw)
        if storage_key == room_id and self.config.context == "both":
            self.storage.set(STORAGE_KEY_PREFIX + event_id, raw)

    # ----- prefix -----
    def _prefixes(self, config: ConversationConfig) -> List[str]:
        prefixes = [config.prefix, f"{self.localpart}:"]
        if self.display_name:
            prefixes.append(f"{self.display_name}:")
        prefixes.append(f"{self.user_id}:")
        return [prefix for prefix in prefixes if prefix]

    def _strip_prefix(self, text: str, config: ConversationConfig) -> Optional[str]:
        for prefix in self._prefixes(config):
            if text.startswith(prefix):
                return text[len(prefix):].lstrip()
        return None

    def body_without_prefix(
        self,
        stored: Optional[StoredConversation],
        config: ConversationConfig,
        event: MessageEvent,
        is_dm: bool,
    ) -> Optional[str]:
        if not config.prefix or (is_dm and not config.prefix_applies_to_direct_messages):
            return event.body
        if event.thread_root_id:
            if config.prefix_applies_to_replies:
                return self._strip_prefix(event.body, config)
            # the thread root already passed the prefix check
            return event.body if stored is not None else None
        return self._strip_prefix(event.body, config)

    # ----- entry point -----
    async def on_message(self, room_id: str, raw_event: dict) -> None:
        event_id = raw_event.get("event_id") if isinstance(raw_event, dict) else None
        try:
            event = MessageEvent.from_raw(room_id, raw_event)
            await self._handle(event)
        except (PromptTooLong, OpenAIError, UpstreamProducedNoOutput) as exc:
            log.exception("chat turn failed in %s: %s", room_id, exc)
            if isinstance(exc, PromptTooLong):
                text = str(exc)
            else:
                code = getattr(exc, "status_code", None) or "Unknown"
                text = f"The bot has encountered an error, please contact your administrator (Error code {code})."
            try:
                await self.client.send_error(room_id, text, event_id)
            except Exception as send_exc:
                log.error("failed to report error to %s: %s", room_id, send_exc)
        except Exception as exc:
            log.exception("failed to handle event %s in %s: %s", event_id, room_id, exc)

    async def _handle(self, event: MessageEvent) -> None:
        if not self.should_process(event):
            return

        room_id = event.room_id
        storage_key = self.storage_key(event)
        stored = self.get_stored_conversation(storage_key, room_id)
        config = stored.config if stored is not None else self._defaults()
        ref = stored.ref if stored is not None else ConversationRef()

        is_dm = await self.client.is_dm(room_id)
        body = self.body_without_prefix(stored, config, event, is_dm)
        if body is None:
            return

        if event.msgtype == "m.text":
            if not body:
                await self.client.send_error(room_id, "Body is empty", event.event_id)
                return
            if body.startswith(IMAGE_COMMAND):
                result = await self._handle_image_command(event, body, ref)
                if result is None:
                    return
            else:
                result = await self.process_text(event, body, ref)
        elif event.msgtype == "m.image":
            if not self.config.enable_vision:
                await self._vision_disabled(event)
                return
            image_url = await self.client.download_image_data_url(event.content)
            if not image_url:
                await self.client.send_error(room_id, "Could not read the attached image.", event.event_id)
                return
            result = await self.chat.save_image(image_url, ref)
            await self.client.send_read_receipt(room_id, event.event_id)
        else:
            return

        self.save_stored_conversation(
            StoredConversation(result.conversation_id, result.tail_message_id, config),
            storage_key,
            room_id,
            event.event_id,
        )

    async def _vision_disabled(self, event: MessageEvent) -> None:
        await self.client.send_error(
            event.room_id,
            "Vision is disabled in the bot settings. Last message with an image will be completely ignored.",
            event.event_id,
        )

    async def _handle_image_command(
        self, event: MessageEvent, body: str, ref: ConversationRef
    ) -> Optional[ConversationRef]:
        remainder = body[len(IMAGE_COMMAND):]
        newline = remainder.find("\n")
        if newline != -1:
            image_url = remainder[:newline].strip()
            text = remainder[newline:].lstrip()
        else:
            image_url = remainder.strip()
            text = ""

        if not is_valid_image_url(image_url):
            await self.client.send_error(event.room_id, f"Image URL is invalid: {image_url}", event.event_id)
            return None
        if not self.config.enable_vision:
            await self._vision_disabled(event)
            return None

        result = await self.chat.save_image(image_url, ref)
        if text:
            return await self.process_text(event, text, result)
        await self.client.send_read_receipt(event.room_id, event.event_id)
        return result

    def _reply_root(self, event: MessageEvent) -> Optional[str]:
        return event.root_event_id if self.config.threads else None

    async def process_text(self, event: MessageEvent, text: str, ref: ConversationRef) -> ConversationRef:
        room_id = event.room_id
        await asyncio.gather(
            self.client.send_read_receipt(room_id, event.event_id),
            self.client.set_typing(room_id, True, self.config.timeout_ms),
        )

        if not self.config.streaming:
            result = await self.chat.send_message(text, ref)
            await asyncio.gather(
                self.client.set_typing(room_id, False, TYPING_OFF_TIMEOUT_MS),
                self.client.send_reply(
                    room_id,
                    decorate_reply(
                        result.response,
                        self.config,
                        unexpected_finish_reason=result.unexpected_finish_reason,
                        usage=result.usage,
                    ),
                    root_event_id=self._reply_root(event),
                ),
            )
            return result.ref

        reply_event_id: Optional[str] = None
        last: Optional[ChatClientResult] = None
        async for chunk in self.chat.send_message_streamed(text, ref):
            last = chunk
            sent_id = await self.client.send_reply(
                room_id,
                decorate_reply(
                    chunk.response,
                    self.config,
                    is_last_chunk=chunk.is_last_chunk,
                    unexpected_finish_reason=chunk.unexpected_finish_reason,
                    usage=chunk.usage,
                ),
                root_event_id=self._reply_root(event),
                editing_event_id=reply_event_id,
            )
            reply_event_id = reply_event_id or sent_id
            if chunk.is_last_chunk:
                await self.client.set_typing(room_id, False, TYPING_OFF_TIMEOUT_MS)
            else:
                await self.client.set_typing(room_id, True, self.config.timeout_ms)

        if last is None:
            raise UpstreamProducedNoOutput("completion stream produced no chunks")
        return last.ref
