import logging
import sys
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional, Tuple

from openai import AsyncOpenAI

from .conversation import (
    Conversation,
    ConversationMessage,
    ConversationRef,
    ConversationStore,
    ImageRef,
    new_id,
    normalize_role,
    reconstruct_history,
)
from .tokens import IMAGE_TOKEN_ESTIMATE, TokenCounter, constrain_input

log = logging.getLogger(__name__)

MIN_FIRST_CHUNK_SIZE = 128
DEFAULT_FIRST_CHUNK_SIZE = 512
CHUNK_GROWTH = 1.618
NORMAL_FINISH_REASON = "stop"


class UpstreamProducedNoOutput(Exception):
    pass


@dataclass
class ChatClientOptions:
    model: str
    temperature: Optional[float] = None
    system_message: Optional[str] = None
    max_input_tokens: Optional[int] = None
    max_completion_tokens: Optional[int] = None
    first_chunk_size: Optional[int] = None
    # some clients stop refreshing a thread reply after its second edit
    use_two_chunks_for_first_reply: bool = False
    image_detail: str = "auto"
    image_tokens: int = IMAGE_TOKEN_ESTIMATE


@dataclass
class CompletionUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    reasoning_tokens: Optional[int] = None

    @classmethod
    def from_api(cls, usage: Any) -> Optional["CompletionUsage"]:
        if usage is None:
            return None
        details = getattr(usage, "completion_tokens_details", None)
        reasoning = getattr(details, "reasoning_tokens", None) if details is not None else None
        return cls(
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            reasoning_tokens=reasoning,
        )


@dataclass
class ChatClientResult:
    response: str
    conversation_id: str
    tail_message_id: str
    is_last_chunk: Optional[bool] = None
    unexpected_finish_reason: Optional[str] = None
    usage: Optional[CompletionUsage] = None

    @property
    def ref(self) -> ConversationRef:
        return ConversationRef(self.conversation_id, self.tail_message_id)


@dataclass
class _PreparedRequest:
    params: dict
    conversation_id: str
    conversation: Conversation
    user_message: ConversationMessage
    is_new_conversation: bool


def _unexpected(finish_reason: Optional[str]) -> Optional[str]:
    if finish_reason is None or finish_reason == NORMAL_FINISH_REASON:
        return None
    return finish_reason


class ChatClient:
    """Threads chat turns through stored conversations and the completion API."""

    def __init__(
        self,
        client: AsyncOpenAI,
        options: ChatClientOptions,
        store: ConversationStore,
        *,
        token_counter: Optional[TokenCounter] = None,
    ):
        self.client = client
        self.options = options
        self.store = store
        self.token_counter = token_counter or TokenCounter(options.model, image_tokens=options.image_tokens)

    def _resolve(self, ref: Optional[ConversationRef]) -> Tuple[str, str, Conversation, bool]:
        ref = ref or ConversationRef()
        conversation_id = ref.conversation_id or new_id()
        tail_message_id = ref.tail_message_id or new_id()
        conversation = self.store.get(conversation_id)
        is_new = conversation is None
        if conversation is None:
            conversation = Conversation()
        return conversation_id, tail_message_id, conversation, is_new

    async def save_image(self, url: str, ref: Optional[ConversationRef] = None) -> ConversationRef:
        conversation_id, tail_message_id, conversation, _ = self._resolve(ref)
        message = ConversationMessage(
            id=new_id(),
            parent_id=tail_message_id,
            role="user",
            image=ImageRef(url=url),
        )
        conversation.append(message)
        self.store.set(conversation_id, conversation)
        log.debug("saved image %s into conversation %s", message.id, conversation_id)
        return ConversationRef(conversation_id, message.id)

    def _to_upstream(self, history: List[ConversationMessage]) -> List[dict]:
        upstream: List[dict] = []
        for message in history:
            role = normalize_role(message.role)
            parts: List[dict] = []
            if message.image is not None:
                parts.append(
                    {
                        "type": "image_url",
                        "image_url": {"url": message.image.url, "detail": self.options.image_detail},
                    }
                )
            previous = upstream[-1] if upstream else None
            if (
                role == "user"
                and previous is not None
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
                and not any(part["type"] == "text" for part in previous["content"])
            ):
                # image-only turn still waiting for its text
                previous["content"].extend(parts)
                if message.text:
                    previous["content"].append({"type": "text", "text": message.text})
                continue
            if parts:
                if message.text:
                    parts.append({"type": "text", "text": message.text})
                upstream.append({"role": role, "content": parts})
            else:
                upstream.append({"role": role, "content": message.text})
        return upstream

    def _prepare_request(self, text: str, ref: Optional[ConversationRef]) -> _PreparedRequest:
        conversation_id, tail_message_id, conversation, is_new = self._resolve(ref)
        user_message = ConversationMessage(
            id=new_id(),
            parent_id=tail_message_id,
            role="user",
            text=text,
        )
        conversation.append(user_message)

        history = reconstruct_history(conversation.messages, user_message.id)
        upstream = self._to_upstream(history)
        upstream = constrain_input(upstream, self.options.max_input_tokens, self.token_counter.count_message)
        if self.options.system_message:
            upstream.insert(0, {"role": "system", "content": self.options.system_message})

        params = {
            "model": self.options.model,
            "messages": upstream,
        }
        if self.options.temperature is not None:
            params["temperature"] = self.options.temperature
        if self.options.max_completion_tokens is not None:
            params["max_completion_tokens"] = self.options.max_completion_tokens
        return _PreparedRequest(
            params=params,
            conversation_id=conversation_id,
            conversation=conversation,
            user_message=user_message,
            is_new_conversation=is_new,
        )

    async def send_message(self, text: str, ref: Optional[ConversationRef] = None) -> ChatClientResult:
        request = self._prepare_request(text, ref)
        completion = await self.client.chat.completions.create(**request.params, stream=False)

        choice = completion.choices[0]
        reply = ConversationMessage(
            id=new_id(),
            parent_id=request.user_message.id,
            role=choice.message.role or "assistant",
            text=choice.message.content or "",
        )
        request.conversation.append(reply)
        self.store.set(request.conversation_id, request.conversation)

        return ChatClientResult(
            response=reply.text,
            conversation_id=request.conversation_id,
            tail_message_id=reply.id,
            unexpected_finish_reason=_unexpected(choice.finish_reason),
            usage=CompletionUsage.from_api(getattr(completion, "usage", None)),
        )

    async def send_message_streamed(
        self, text: str, ref: Optional[ConversationRef] = None
    ) -> AsyncIterator[ChatClientResult]:
        """Yield the reply as a few progressively longer snapshots.

        The flush threshold starts at ``first_chunk_size`` and grows by the
        golden ratio after every flush. The conversation is saved once the
        upstream stream is exhausted.
        """
        request = self._prepare_request(text, ref)
        stream = await self.client.chat.completions.create(
            **request.params,
            stream=True,
            stream_options={"include_usage": True},
        )

        max_buffer_length = max(MIN_FIRST_CHUNK_SIZE, self.options.first_chunk_size or DEFAULT_FIRST_CHUNK_SIZE)
        buffer = ""
        reply_text = ""
        reply_id = new_id()
        reply_role = "assistant"
        finish_reason: Optional[str] = None
        usage: Optional[CompletionUsage] = None
        received = 0

        async for chunk in stream:
            received += 1
            if getattr(chunk, "usage", None) is not None:
                usage = CompletionUsage.from_api(chunk.usage)
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            if delta is not None:
                if delta.role:
                    reply_role = delta.role
                buffer += delta.content or ""
            if choice.finish_reason is not None:
                finish_reason = choice.finish_reason
                continue
            if len(buffer) >= max_buffer_length:
                reply_text += buffer
                buffer = ""
                max_buffer_length = round(max_buffer_length * CHUNK_GROWTH)
                if request.is_new_conversation and self.options.use_two_chunks_for_first_reply:
                    max_buffer_length = sys.maxsize
                yield ChatClientResult(
                    response=reply_text,
                    conversation_id=request.conversation_id,
                    tail_message_id=reply_id,
                    is_last_chunk=False,
                )

        if received == 0:
            raise UpstreamProducedNoOutput("completion stream produced no chunks")

        reply_text += buffer
        request.conversation.append(
            ConversationMessage(
                id=reply_id,
                parent_id=request.user_message.id,
                role=reply_role,
                text=reply_text,
            )
        )
        self.store.set(request.conversation_id, request.conversation)

        yield ChatClientResult(
            response=reply_text,
            conversation_id=request.conversation_id,
            tail_message_id=reply_id,
            is_last_chunk=True,
            unexpected_finish_reason=_unexpected(finish_reason),
            usage=usage,
        )
