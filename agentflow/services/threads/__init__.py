"""Conversation Thread Store - ordered, append-only message logs."""

from agentflow.services.threads.models import (
    Attachment,
    AttachmentTool,
    Message,
    MessageRole,
    NewMessage,
    ThreadSnapshot,
)
from agentflow.services.threads.store import ThreadStore

__all__ = [
    "Attachment",
    "AttachmentTool",
    "Message",
    "MessageRole",
    "NewMessage",
    "ThreadSnapshot",
    "ThreadStore",
]
