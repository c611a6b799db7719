"""Tests for the parent metadata aggregator."""

import pytest

from services.branch_metadata import BranchingMetadata, BRANCHING_METADATA_KEY

USER_ID = "user-1"


class TestBranchingMetadata:
    """Tests for the BranchingMetadata record."""

    def test_from_children_empty(self):
        meta = BranchingMetadata.from_children([])
        assert meta.child_branch_count == 0
        assert meta.is_parent_conversation is False
        assert meta.branch_names == []
        assert meta.last_branched_at is None

    def test_from_children_dedupes_names_in_order(self):
        children = [
            {"branch_name": "alpha", "branch_created_at": "2024-01-01T00:00:00+00:00"},
            {"branch_name": "beta", "branch_created_at": "2024-03-01T00:00:00+00:00"},
            {"branch_name": "alpha", "branch_created_at": "2024-02-01T00:00:00+00:00"},
        ]
        meta = BranchingMetadata.from_children(children)

        assert meta.child_branch_count == 3
        assert meta.is_parent_conversation is True
        assert meta.branch_names == ["alpha", "beta"]
        assert meta.last_branched_at == "2024-03-01T00:00:00+00:00"

    def test_from_metadata_missing_key(self):
        meta = BranchingMetadata.from_metadata({"total_messages": 3})
        assert meta == BranchingMetadata()

    def test_dict_round_trip(self):
        meta = BranchingMetadata(2, True, ["a", "b"], "2024-01-01T00:00:00+00:00")
        assert BranchingMetadata.from_metadata({BRANCHING_METADATA_KEY: meta.to_dict()}) == meta


class TestMetadataAggregator:
    """Tests for MetadataAggregator.refresh_parent_metadata."""

    async def _insert_child(self, store, parent_id, child_id, name, order):
        async with store.transaction() as db:
            await store.insert_conversation(db, {
                "id": child_id,
                "user_id": USER_ID,
                "title": name,
                "metadata": {},
                "parent_conversation_id": parent_id,
                "is_branch": True,
                "branch_name": name,
                "branch_order": order,
                "branch_created_at": f"2024-01-0{order + 1}T00:00:00+00:00",
                "created_at": "2024-01-01T00:00:00+00:00",
                "updated_at": "2024-01-01T00:00:00+00:00",
            })

    @pytest.mark.asyncio
    async def test_counts_direct_children(self, store, aggregator):
        parent = await store.create_conversation(user_id=USER_ID, title="Parent")
        await self._insert_child(store, parent["id"], "c1", "one", 0)
        await self._insert_child(store, parent["id"], "c2", "two", 1)
        # Grandchild must not count towards the parent
        await self._insert_child(store, "c1", "g1", "grand", 0)

        meta = await aggregator.refresh_parent_metadata(parent["id"])

        assert meta.child_branch_count == 2
        assert meta.is_parent_conversation is True
        assert meta.branch_names == ["one", "two"]
        assert meta.last_branched_at == "2024-01-02T00:00:00+00:00"

        stored = await store.get_conversation(parent["id"])
        assert BranchingMetadata.from_metadata(stored["metadata"]) == meta

    @pytest.mark.asyncio
    async def test_is_idempotent(self, store, aggregator):
        parent = await store.create_conversation(user_id=USER_ID, title="Parent")
        await self._insert_child(store, parent["id"], "c1", "one", 0)

        first = await aggregator.refresh_parent_metadata(parent["id"])
        stored_once = (await store.get_conversation(parent["id"]))["metadata"]
        second = await aggregator.refresh_parent_metadata(parent["id"])
        stored_twice = (await store.get_conversation(parent["id"]))["metadata"]

        assert first == second
        assert stored_once == stored_twice

    @pytest.mark.asyncio
    async def test_repairs_stale_cache(self, store, aggregator):
        """A wrong cached count is replaced by the true child count."""
        parent = await store.create_conversation(user_id=USER_ID, title="Parent")
        async with store.transaction() as db:
            await store.write_metadata(db, parent["id"], {
                "last_model": "x",
                BRANCHING_METADATA_KEY: BranchingMetadata(7, True, ["ghost"]).to_dict(),
            })

        meta = await aggregator.refresh_parent_metadata(parent["id"])

        assert meta.child_branch_count == 0
        assert meta.branch_names == []
        stored = await store.get_conversation(parent["id"])
        assert stored["metadata"]["last_model"] == "x"

    @pytest.mark.asyncio
    async def test_missing_parent(self, aggregator):
        assert await aggregator.refresh_parent_metadata("gone") is None

    @pytest.mark.asyncio
    async def test_consistent_after_mixed_operations(self, store, branch_service, seeded_conversation):
        """Cached count always equals the number of rows pointing at the parent."""
        parent, messages = seeded_conversation
        created = []
        for i in range(3):
            created.append(await branch_service.create_branch(
                user_id=USER_ID,
                parent_conversation_id=parent["id"],
                branch_point_message_id=messages[i]["id"],
                branch_name=f"b{i}",
                title=f"b{i}",
                model="claude-sonnet-4",
            ))
        await branch_service.delete_branch(created[1]["id"], USER_ID)
        created.append(await branch_service.create_branch(
            user_id=USER_ID,
            parent_conversation_id=parent["id"],
            branch_point_message_id=messages[3]["id"],
            branch_name="b3",
            title="b3",
            model="claude-sonnet-4",
        ))

        stored = await store.get_conversation(parent["id"])
        meta = BranchingMetadata.from_metadata(stored["metadata"])
        actual = await branch_service.get_branches(parent["id"])

        assert meta.child_branch_count == len(actual) == 3
        assert set(meta.branch_names) == {"b0", "b2", "b3"}
