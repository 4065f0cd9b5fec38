import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .storage import KeyValueStore

log = logging.getLogger(__name__)

ROLES = ("system", "user", "assistant", "tool")
LEGACY_ROLE_NAMES = {
    "User": "user",
    "ChatGPT": "assistant",
}


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_role(role: str) -> str:
    """Map historical role labels onto the canonical role names.

    Unknown labels are stored as user turns.
    """
    role = LEGACY_ROLE_NAMES.get(role, role)
    if role not in ROLES:
        log.warning("unknown message role %r, treating as user", role)
        return "user"
    return role


@dataclass(frozen=True)
class ImageRef:
    url: str


@dataclass(frozen=True)
class ConversationMessage:
    id: str
    parent_id: Optional[str]
    role: str
    text: str = ""
    image: Optional[ImageRef] = None

    @classmethod
    def from_dict(cls, payload: dict) -> "ConversationMessage":
        image = payload.get("image")
        image_url = image.get("url") if isinstance(image, dict) else None
        return cls(
            id=str(payload["id"]),
            parent_id=payload.get("parentMessageId") or None,
            role=normalize_role(str(payload.get("role") or "user")),
            text=str(payload.get("message") or ""),
            image=ImageRef(url=str(image_url)) if image_url else None,
        )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "parentMessageId": self.parent_id,
            "role": self.role,
            "message": self.text,
        }
        if self.image is not None:
            data["image"] = {"url": self.image.url}
        return data


@dataclass
class Conversation:
    messages: List[ConversationMessage] = field(default_factory=list)
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))

    def append(self, message: ConversationMessage) -> None:
        self.messages.append(message)

    @classmethod
    def from_dict(cls, payload: dict) -> "Conversation":
        messages = []
        for raw in payload.get("messages") or []:
            if not isinstance(raw, dict) or "id" not in raw:
                continue
            messages.append(ConversationMessage.from_dict(raw))
        created_at = payload.get("createdAt")
        if not isinstance(created_at, (int, float)):
            created_at = int(time.time() * 1000)
        return cls(messages=messages, created_at=int(created_at))

    def to_dict(self) -> dict:
        return {
            "messages": [message.to_dict() for message in self.messages],
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class ConversationRef:
    """Cursor naming the message the next turn attaches to."""

    conversation_id: Optional[str] = None
    tail_message_id: Optional[str] = None


def reconstruct_history(
    messages: Iterable[ConversationMessage], tail_id: Optional[str]
) -> List[ConversationMessage]:
    """Walk parent links from ``tail_id`` and return the chain root-first.

    An id that cannot be resolved ends the walk; older ancestors are left out.
    """
    by_id: Dict[str, ConversationMessage] = {message.id: message for message in messages}
    chain: List[ConversationMessage] = []
    seen = set()
    current = tail_id
    while current and current not in seen:
        message = by_id.get(current)
        if message is None:
            break
        seen.add(current)
        chain.append(message)
        current = message.parent_id
    chain.reverse()
    return chain


class ConversationStore:
    """Conversations keyed by id, JSON-encoded in a key/value namespace."""

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def get(self, conversation_id: str) -> Optional[Conversation]:
        raw = self.kv.get(conversation_id)
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            log.warning("conversation %s is not valid json: %s", conversation_id, exc)
            return None
        if not isinstance(payload, dict):
            return None
        return Conversation.from_dict(payload)

    def set(self, conversation_id: str, conversation: Conversation) -> None:
        self.kv.set(conversation_id, json.dumps(conversation.to_dict(), ensure_ascii=False))
