"""In-memory conversation thread store with per-thread write locks."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from agentflow.core.exceptions import UnknownThread
from agentflow.services.threads.models import Message, NewMessage, ThreadSnapshot

logger = logging.getLogger(__name__)


@dataclass
class _Thread:
    metadata: Mapping[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    messages: Tuple[Message, ...] = ()
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ThreadStore:
    """Ordered message logs keyed by thread id.

    Appends to one thread are serialised by that thread's lock; readers get an
    immutable tuple, so a reader never observes a half-applied append. The
    store does not enforce run exclusivity: appending while a run is active on
    the thread simply extends what the next run will see.
    """

    def __init__(self) -> None:
        self._threads: Dict[str, _Thread] = {}

    def create(self, metadata: Optional[Mapping[str, Any]] = None) -> str:
        """Create an empty thread and return its id."""
        thread_id = f"thread_{uuid.uuid4().hex[:16]}"
        self._threads[thread_id] = _Thread(metadata=MappingProxyType(dict(metadata or {})))
        logger.debug(f"Created thread {thread_id}")
        return thread_id

    async def append(self, thread_id: str, message: Union[Message, NewMessage]) -> Message:
        """Append a message to the end of a thread.

        Args:
            thread_id: Target thread
            message: A ``NewMessage`` (stamped by the store) or a ready ``Message``

        Returns:
            The stored message

        Raises:
            UnknownThread: If the thread does not exist
        """
        thread = self._get(thread_id)
        stored = Message.stamp(message) if isinstance(message, NewMessage) else message
        async with thread.lock:
            thread.messages = thread.messages + (stored,)
        logger.debug(
            f"Appended {stored.role.value} message {stored.id} to {thread_id} "
            f"({len(thread.messages)} messages)"
        )
        return stored

    def list(self, thread_id: str) -> Tuple[Message, ...]:
        """Return the thread's messages in append order.

        Raises:
            UnknownThread: If the thread does not exist
        """
        return self._get(thread_id).messages

    def snapshot(self, thread_id: str) -> ThreadSnapshot:
        return ThreadSnapshot(thread_id=thread_id, messages=self.list(thread_id))

    def metadata(self, thread_id: str) -> Mapping[str, Any]:
        return self._get(thread_id).metadata

    def exists(self, thread_id: str) -> bool:
        return thread_id in self._threads

    def thread_ids(self) -> List[str]:
        return list(self._threads.keys())

    def destroy(self, thread_id: str) -> None:
        """Release a thread's storage. Destroying an unknown thread is a no-op."""
        if self._threads.pop(thread_id, None) is not None:
            logger.debug(f"Destroyed thread {thread_id}")

    def _get(self, thread_id: str) -> _Thread:
        try:
            return self._threads[thread_id]
        except KeyError:
            raise UnknownThread(thread_id) from None

    def __len__(self) -> int:
        return len(self._threads)
