"""Conversation thread records."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple


class MessageRole(str, Enum):
    """Author of a thread message."""
    USER = "user"
    AGENT = "agent"


class AttachmentTool(str, Enum):
    CODE_INTERPRETER = "code_interpreter"
    FILE_SEARCH = "file_search"


@dataclass(frozen=True)
class Attachment:
    """A file reference attached to a message and the tools allowed to use it."""
    file_id: str
    tools: Tuple[AttachmentTool, ...] = ()


@dataclass(frozen=True)
class NewMessage:
    """Message content before the store stamps it with an id and timestamp."""
    role: MessageRole
    content: str
    attachments: Tuple[Attachment, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def user(cls, content: str, **kwargs: Any) -> "NewMessage":
        return cls(role=MessageRole.USER, content=content, **kwargs)

    @classmethod
    def agent(cls, content: str, **kwargs: Any) -> "NewMessage":
        return cls(role=MessageRole.AGENT, content=content, **kwargs)


@dataclass(frozen=True)
class Message:
    """A stored, immutable thread message."""
    id: str
    role: MessageRole
    content: str
    attachments: Tuple[Attachment, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def stamp(cls, new: NewMessage) -> "Message":
        return cls(
            id=f"msg_{uuid.uuid4().hex[:16]}",
            role=MessageRole(new.role),
            content=new.content,
            attachments=tuple(new.attachments),
            metadata=MappingProxyType(dict(new.metadata)),
        )


@dataclass(frozen=True)
class ThreadSnapshot:
    """Point-in-time view of a thread's messages, in append order."""
    thread_id: str
    messages: Tuple[Message, ...]

    def last_agent_message(self) -> Optional[Message]:
        """Newest agent-authored message, if any."""
        for message in reversed(self.messages):
            if message.role == MessageRole.AGENT:
                return message
        return None

    def __len__(self) -> int:
        return len(self.messages)
