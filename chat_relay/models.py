"""Value types shared by the store, transcoder and orchestrator."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Sequence, Tuple


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """One chat message. Immutable once created."""

    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(Role.ASSISTANT, content)

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Message":
        """Build a message from its ``{role, content}`` mapping.

        Raises ``ValueError`` when the role is unknown or the content is not a
        string.
        """
        if not isinstance(data, dict):
            raise ValueError(f"message must be an object, got {type(data).__name__}")
        content = data.get("content")
        if not isinstance(content, str):
            raise ValueError("message content must be a string")
        return cls(Role(data.get("role")), content)


def history_to_payload(history: Sequence[Message]) -> List[Dict[str, str]]:
    return [message.to_dict() for message in history]


@dataclass(frozen=True)
class RelayEvent:
    """A normalised upstream frame.

    Concatenating ``text_delta`` over a stream reconstitutes the reply. Only the
    last event of a stream is ``terminal`` and it carries no text.
    """

    text_delta: str
    terminal: bool = False

    @classmethod
    def end(cls) -> "RelayEvent":
        return cls("", terminal=True)


@dataclass(frozen=True)
class OutwardEvent:
    """Client-facing frame payload: ``{"response": str, "done": bool}``."""

    response: str
    done: bool

    @classmethod
    def from_relay_event(cls, event: RelayEvent) -> "OutwardEvent":
        return cls(response=event.text_delta, done=event.terminal)

    def to_dict(self) -> Dict[str, object]:
        return {"response": self.response, "done": self.done}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


@dataclass
class PendingTurn:
    """Accumulator for the turn being generated. Never persisted on its own."""

    user_message: Message
    assistant_text_so_far: str = ""

    def append(self, text_delta: str) -> None:
        self.assistant_text_so_far += text_delta

    def to_messages(self) -> Tuple[Message, Message]:
        return self.user_message, Message.assistant(self.assistant_text_so_far)
