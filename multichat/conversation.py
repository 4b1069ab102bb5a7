"""
Value types for model instances and conversation sessions.

Participants and messages are immutable; a session replaces whole participant
values on every change so concurrent broadcast replies never share a list.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from .prompts import DEFAULT_ROLE, normalize_role_label

KEY_DELIMITER = "::"
DEFAULT_TITLE = "New chat"
TITLE_LIMIT = 80


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ModelRef:
    host_id: str
    model: str


@dataclass(frozen=True, order=True)
class ParticipantKey:
    host_id: str
    model: str
    instance: int = 1

    @property
    def ref(self) -> ModelRef:
        return ModelRef(self.host_id, self.model)

    def __str__(self) -> str:
        return KEY_DELIMITER.join((self.host_id, self.model, str(self.instance)))

    @classmethod
    def parse(cls, raw: str) -> "ParticipantKey":
        # Model names carry colons ("llama3:8b"); split the host off the front and the ordinal off the back.
        host_id, _, rest = raw.partition(KEY_DELIMITER)
        model, _, instance = rest.rpartition(KEY_DELIMITER)
        if not host_id or not model or not instance.isdigit():
            raise ValueError(f"Malformed participant key: {raw!r}")
        return cls(host_id=host_id, model=model, instance=int(instance))


@dataclass(frozen=True)
class Message:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Participant:
    key: ParticipantKey
    role: str = DEFAULT_ROLE
    messages: Tuple[Message, ...] = ()
    loading: bool = False

    @property
    def model(self) -> str:
        return self.key.model

    def append(self, message: Message) -> "Participant":
        return replace(self, messages=self.messages + (message,))

    def with_last_assistant(self, content: str) -> "Participant":
        """Rewrite the trailing assistant message, appending one if missing."""
        if self.messages and self.messages[-1].role == "assistant":
            return replace(
                self,
                messages=self.messages[:-1] + (Message("assistant", content),),
            )
        return self.append(Message("assistant", content))

    def last_content(self, role: str) -> str:
        for message in reversed(self.messages):
            if message.role == role and message.content:
                return message.content
        return ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": str(self.key),
            "host_id": self.key.host_id,
            "model": self.key.model,
            "instance": self.key.instance,
            "role": self.role,
            "messages": [message.to_dict() for message in self.messages],
            "loading": self.loading,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Participant":
        key = ParticipantKey(
            host_id=str(data["host_id"]),
            model=str(data["model"]),
            instance=int(data.get("instance") or 1),
        )
        messages = [
            Message(role=item["role"], content=str(item.get("content") or ""))
            for item in data.get("messages") or []
            if isinstance(item, dict) and item.get("role") in {"user", "assistant"}
        ]
        # A history captured mid-stream ends with an empty assistant placeholder.
        if messages and messages[-1].role == "assistant" and not messages[-1].content.strip():
            messages.pop()
        return cls(
            key=key,
            role=normalize_role_label(str(data.get("role") or "")),
            messages=tuple(messages),
        )


@dataclass
class ConversationSession:
    id: str = field(default_factory=lambda: f"chat-{uuid4().hex[:12]}")
    title: str = DEFAULT_TITLE
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    participants: Dict[ParticipantKey, Participant] = field(default_factory=dict)
    role_library: List[str] = field(default_factory=list)

    def keys(self) -> List[ParticipantKey]:
        return list(self.participants)

    def get(self, key: ParticipantKey) -> Optional[Participant]:
        return self.participants.get(key)

    def put(self, participant: Participant) -> None:
        """Replace (or insert at the end) a participant value."""
        updated = dict(self.participants)
        updated[participant.key] = participant
        self.participants = updated
        self.touch()

    def discard(self, keys: Iterable[ParticipantKey]) -> List[ParticipantKey]:
        doomed = [key for key in keys if key in self.participants]
        if doomed:
            self.participants = {
                key: value for key, value in self.participants.items() if key not in doomed
            }
            self.touch()
        return doomed

    def next_instance(self, ref: ModelRef) -> int:
        used = [key.instance for key in self.participants if key.ref == ref]
        return max(used, default=0) + 1

    def instances_of(self, model: str) -> List[ParticipantKey]:
        return [key for key in self.participants if key.model == model]

    def display_name(self, key: ParticipantKey) -> str:
        same_model = self.instances_of(key.model)
        if len(same_model) <= 1 or key not in same_model:
            return key.model
        return f"{key.model}#{same_model.index(key) + 1}"

    def has_content(self) -> bool:
        return any(
            message.content.strip()
            for participant in self.participants.values()
            for message in participant.messages
        )

    def derive_title(self) -> str:
        for participant in self.participants.values():
            for message in participant.messages:
                if message.role == "user" and message.content.strip():
                    return build_title(message.content)
        return DEFAULT_TITLE

    def touch(self) -> None:
        self.updated_at = now_ms()
        self.title = self.derive_title()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "participants": [participant.to_dict() for participant in self.participants.values()],
            "role_library": list(self.role_library),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationSession":
        participants: Dict[ParticipantKey, Participant] = {}
        for item in data.get("participants") or []:
            try:
                participant = Participant.from_dict(item)
            except (KeyError, TypeError, ValueError):
                continue
            participants.setdefault(participant.key, participant)
        session = cls(
            id=str(data.get("id") or f"chat-{uuid4().hex[:12]}"),
            created_at=int(data.get("created_at") or now_ms()),
            updated_at=int(data.get("updated_at") or now_ms()),
            participants=participants,
            role_library=[str(role) for role in data.get("role_library") or []],
        )
        session.title = session.derive_title()
        return session


def build_title(text: str) -> str:
    snippet = text.strip().splitlines()[0]
    return snippet[:TITLE_LIMIT] + ("…" if len(snippet) > TITLE_LIMIT else "")
