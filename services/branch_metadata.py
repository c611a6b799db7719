"""Aggregate branch bookkeeping cached on parent conversations."""

from dataclasses import dataclass, field, asdict
from typing import Dict, Any, List, Optional

import aiosqlite

from services.conversation_store import ConversationStore

BRANCHING_METADATA_KEY = "branching_metadata"


@dataclass
class BranchingMetadata:
    """Derived summary of a conversation's direct branches.

    This is a cache. The source of truth is the set of rows whose
    parent_conversation_id points at the conversation.
    """
    child_branch_count: int = 0
    is_parent_conversation: bool = False
    branch_names: List[str] = field(default_factory=list)
    last_branched_at: Optional[str] = None

    @classmethod
    def from_children(cls, children: List[Dict[str, Any]]) -> "BranchingMetadata":
        names: List[str] = []
        for child in children:
            name = child.get("branch_name")
            if name and name not in names:
                names.append(name)
        timestamps = [c["branch_created_at"] for c in children if c.get("branch_created_at")]
        return cls(
            child_branch_count=len(children),
            is_parent_conversation=len(children) > 0,
            branch_names=names,
            last_branched_at=max(timestamps) if timestamps else None,
        )

    @classmethod
    def from_metadata(cls, metadata: Optional[Dict[str, Any]]) -> "BranchingMetadata":
        """Read the record back out of a conversation's metadata blob."""
        raw = (metadata or {}).get(BRANCHING_METADATA_KEY) or {}
        return cls(
            child_branch_count=raw.get("child_branch_count", 0),
            is_parent_conversation=raw.get("is_parent_conversation", False),
            branch_names=list(raw.get("branch_names", [])),
            last_branched_at=raw.get("last_branched_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MetadataAggregator:
    """Recomputes BranchingMetadata on a parent after branches change."""

    def __init__(self, store: ConversationStore):
        self.store = store

    async def refresh_parent_metadata(
        self,
        parent_conversation_id: str,
        db: Optional[aiosqlite.Connection] = None
    ) -> Optional[BranchingMetadata]:
        """Rebuild the parent's aggregate from its current children.

        Pass ``db`` to run inside the caller's transaction so the refresh
        commits together with the mutation that triggered it. Returns None
        when the parent no longer exists.
        """
        if db is None:
            async with self.store.transaction() as own_db:
                return await self.refresh_parent_metadata(parent_conversation_id, own_db)

        parent = await self.store.fetch_conversation(db, parent_conversation_id)
        if not parent:
            print(f"[METADATA] Parent {parent_conversation_id} is gone, nothing to refresh")
            return None

        children = await self.store.fetch_children(db, parent_conversation_id)
        aggregate = BranchingMetadata.from_children(children)

        # Whole-value replacement of the branching record; other keys are kept
        metadata = parent["metadata"]
        metadata[BRANCHING_METADATA_KEY] = aggregate.to_dict()
        await self.store.write_metadata(db, parent_conversation_id, metadata)

        print(f"[METADATA] {parent_conversation_id}: {aggregate.child_branch_count} branch(es)")
        return aggregate
