"""
Message and request scope types.

Defines what a caller sends and which accounting boundaries it is charged to.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from .budget import Scope, ScopeType


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


Content = Union[str, Tuple[Mapping[str, Any], ...]]


@dataclass(frozen=True)
class Message:
    """A single chat message. Immutable once sent."""
    role: Role
    content: Content
    tool_calls: Tuple[Mapping[str, Any], ...] = ()
    name: Optional[str] = None

    def text(self) -> str:
        """Concatenated textual content, ignoring non-text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(
            str(part.get("text", ""))
            for part in self.content
            if part.get("type", "text") == "text"
        )

    def to_dict(self) -> dict:
        """Serialize to the chat-completions wire shape."""
        data: dict = {"role": self.role.value}
        if isinstance(self.content, str):
            data["content"] = self.content
        else:
            data["content"] = [dict(part) for part in self.content]
        if self.tool_calls:
            data["tool_calls"] = [dict(call) for call in self.tool_calls]
        if self.name:
            data["name"] = self.name
        return data

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(Role.USER, content)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(Role.SYSTEM, content)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        """Build a message from a ``{"role", "content"}`` mapping."""
        if "role" not in data:
            raise ValueError("message is missing 'role'")
        try:
            role = Role(str(data["role"]).lower())
        except ValueError:
            raise ValueError(f"Unknown message role: {data['role']!r}")
        content = data.get("content") or ""
        if not isinstance(content, str):
            content = tuple(content)
        return cls(
            role=role,
            content=content,
            tool_calls=tuple(data.get("tool_calls") or ()),
            name=data.get("name"),
        )


MessageInput = Union[str, Message, Mapping[str, Any], Sequence[Union[Message, Mapping[str, Any]]]]


def normalize_messages(messages: MessageInput) -> Tuple[Message, ...]:
    """Coerce caller input into a tuple of messages.

    Accepts a bare string (one user message), a single message or mapping,
    or a sequence of messages/mappings.
    """
    if isinstance(messages, str):
        items: Iterable = [Message.user(messages)]
    elif isinstance(messages, (Message, Mapping)):
        items = [messages]
    else:
        items = messages

    normalized: List[Message] = []
    for item in items:
        if isinstance(item, Message):
            normalized.append(item)
        elif isinstance(item, Mapping):
            normalized.append(Message.from_dict(item))
        else:
            raise TypeError(f"Unsupported message type: {type(item).__name__}")

    if not normalized:
        raise ValueError("messages is required and cannot be empty")
    return tuple(normalized)


def messages_text(messages: Iterable[Message]) -> str:
    return "\n".join(message.text() for message in messages)


@dataclass(frozen=True)
class RequestScope:
    """Who a request is charged to. Any combination may be present."""
    user_id: Optional[str] = None
    project_id: Optional[str] = None
    organization_id: Optional[str] = None

    def scopes(self) -> Iterator[Scope]:
        """Concrete scopes in precedence order: user, project, organization."""
        if self.user_id is not None:
            yield Scope(ScopeType.USER, str(self.user_id))
        if self.project_id is not None:
            yield Scope(ScopeType.PROJECT, str(self.project_id))
        if self.organization_id is not None:
            yield Scope(ScopeType.ORGANIZATION, str(self.organization_id))

    @property
    def user_scope(self) -> Optional[Scope]:
        if self.user_id is None:
            return None
        return Scope(ScopeType.USER, str(self.user_id))
