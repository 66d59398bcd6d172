"""Tests for ThreadStore."""

import asyncio

import pytest

from agentflow.core.exceptions import UnknownThread
from agentflow.services.threads.models import (
    Attachment,
    AttachmentTool,
    MessageRole,
    NewMessage,
)


class TestThreadStore:
    """Test thread creation, appends and reads."""

    def test_create_with_metadata(self, threads):
        thread_id = threads.create({"purpose": "demo"})

        assert thread_id.startswith("thread_")
        assert threads.exists(thread_id)
        assert threads.list(thread_id) == ()
        assert threads.metadata(thread_id)["purpose"] == "demo"

    @pytest.mark.asyncio
    async def test_append_preserves_order(self, threads):
        thread_id = threads.create()

        for i in range(5):
            await threads.append(thread_id, NewMessage.user(f"message {i}"))

        messages = threads.list(thread_id)
        assert [m.content for m in messages] == [f"message {i}" for i in range(5)]
        assert len({m.id for m in messages}) == 5

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_all_kept(self, threads):
        thread_id = threads.create()

        await asyncio.gather(*(
            threads.append(thread_id, NewMessage.user(str(i))) for i in range(20)
        ))

        assert sorted(int(m.content) for m in threads.list(thread_id)) == list(range(20))

    @pytest.mark.asyncio
    async def test_append_stamps_message(self, threads):
        thread_id = threads.create()
        attachment = Attachment(file_id="file_1", tools=(AttachmentTool.FILE_SEARCH,))

        stored = await threads.append(
            thread_id,
            NewMessage.agent("done", attachments=(attachment,), metadata={"run_id": "run_1"}),
        )

        assert stored.role == MessageRole.AGENT
        assert stored.attachments == (attachment,)
        assert stored.metadata["run_id"] == "run_1"
        assert stored.created_at is not None

    @pytest.mark.asyncio
    async def test_snapshot_is_isolated_from_later_appends(self, threads):
        thread_id = threads.create()
        await threads.append(thread_id, NewMessage.user("first"))

        snapshot = threads.snapshot(thread_id)
        await threads.append(thread_id, NewMessage.agent("second"))

        assert len(snapshot) == 1
        assert snapshot.last_agent_message() is None
        assert threads.snapshot(thread_id).last_agent_message().content == "second"

    @pytest.mark.asyncio
    async def test_unknown_thread(self, threads):
        with pytest.raises(UnknownThread):
            threads.list("thread_missing")
        with pytest.raises(UnknownThread):
            await threads.append("thread_missing", NewMessage.user("hi"))

    def test_destroy_is_idempotent(self, threads):
        thread_id = threads.create()

        threads.destroy(thread_id)
        threads.destroy(thread_id)

        assert not threads.exists(thread_id)
        assert len(threads) == 0
