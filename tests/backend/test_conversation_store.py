"""Tests for the SQLite conversation store."""

import pytest

from services.branch_errors import StoreUnavailableError
from services.conversation_store import ConversationStore

USER_ID = "user-1"


class TestConversations:

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        created = await store.create_conversation(user_id=USER_ID, title="Hello", system_prompt="Be brief")
        fetched = await store.get_conversation(created["id"])

        assert fetched["title"] == "Hello"
        assert fetched["system_prompt"] == "Be brief"
        assert fetched["is_branch"] is False
        assert fetched["parent_conversation_id"] is None
        assert fetched["branch_point_message_id"] is None
        assert fetched["messages"] == []

    @pytest.mark.asyncio
    async def test_get_scoped_to_owner(self, store):
        created = await store.create_conversation(user_id=USER_ID)
        assert await store.get_conversation(created["id"], "other") is None

    @pytest.mark.asyncio
    async def test_list_newest_first(self, store):
        first = await store.create_conversation(user_id=USER_ID, title="First")
        second = await store.create_conversation(user_id=USER_ID, title="Second")
        await store.add_message(first["id"], "user", "bump")

        conversations = await store.list_conversations(USER_ID)

        assert [c["id"] for c in conversations] == [first["id"], second["id"]]

    @pytest.mark.asyncio
    async def test_update(self, store):
        created = await store.create_conversation(user_id=USER_ID)
        assert await store.update_conversation(created["id"], title="Renamed") is True
        assert (await store.get_conversation(created["id"]))["title"] == "Renamed"
        assert await store.update_conversation(created["id"]) is False
        assert await store.update_conversation("missing", title="x") is False

    @pytest.mark.asyncio
    async def test_delete(self, store):
        created = await store.create_conversation(user_id=USER_ID)
        await store.add_message(created["id"], "user", "hi")

        assert await store.delete_conversation(created["id"]) is True
        assert await store.get_conversation(created["id"]) is None
        assert await store.get_messages(created["id"]) == []
        assert await store.delete_conversation(created["id"]) is False


class TestMessages:

    @pytest.mark.asyncio
    async def test_messages_in_creation_order(self, store):
        created = await store.create_conversation(user_id=USER_ID)
        await store.add_message(created["id"], "assistant", "later", created_at="2024-01-02T00:00:00+00:00")
        await store.add_message(created["id"], "user", "earlier", created_at="2024-01-01T00:00:00+00:00")

        messages = await store.get_messages(created["id"])

        assert [m["content"] for m in messages] == ["earlier", "later"]

    @pytest.mark.asyncio
    async def test_structured_content_round_trips(self, store):
        created = await store.create_conversation(user_id=USER_ID)
        blocks = [{"type": "text", "text": "hello"}]
        message = await store.add_message(created["id"], "user", blocks, metadata={"streaming_complete": True})

        fetched = await store.get_message_by_id(message["id"])

        assert fetched["content"] == blocks
        assert fetched["metadata"] == {"streaming_complete": True}

    @pytest.mark.asyncio
    async def test_add_message_tracks_totals(self, store):
        created = await store.create_conversation(user_id=USER_ID)
        await store.add_message(created["id"], "user", "hi")
        await store.add_message(created["id"], "assistant", "hello", model="claude-opus-4")

        conversation = await store.get_conversation(created["id"])

        assert conversation["metadata"]["total_messages"] == 2
        assert conversation["metadata"]["last_model"] == "claude-opus-4"

    @pytest.mark.asyncio
    async def test_add_message_unknown_conversation(self, store):
        with pytest.raises(ValueError):
            await store.add_message("missing", "user", "hi")


class TestTransactions:

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, store):
        created = await store.create_conversation(user_id=USER_ID)

        with pytest.raises(RuntimeError):
            async with store.transaction() as db:
                await store.delete_conversation_row(db, created["id"])
                raise RuntimeError("boom")

        assert await store.get_conversation(created["id"]) is not None

    @pytest.mark.asyncio
    async def test_locked_database_is_unavailable(self, db_path, store):
        impatient = ConversationStore(db_path=db_path, busy_timeout=0.05)

        async with store.transaction():
            with pytest.raises(StoreUnavailableError):
                async with impatient.transaction():
                    pass
