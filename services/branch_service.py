"""Conversation forking: create, delete and navigate branch conversations."""

import uuid
from typing import List, Dict, Any, Optional

import aiosqlite

from config import MAIN_BRANCH_NAME
from services.branch_errors import (
    BranchCopyError,
    BranchPointNotFoundError,
    NotFoundOrNotOwnedError,
    ParentNotFoundError,
)
from services.branch_metadata import BranchingMetadata, MetadataAggregator, BRANCHING_METADATA_KEY
from services.conversation_store import ConversationStore, utc_now
from services.conversation_tree import TreeNode, build_conversation_tree, find_root_id


class BranchService:
    """Forks conversations at a message and keeps parent bookkeeping in sync.

    Every mutation runs in a single store transaction together with the
    metadata refresh it triggers, so either all of it commits or none of it.
    """

    def __init__(self, store: ConversationStore, aggregator: Optional[MetadataAggregator] = None):
        self.store = store
        self.aggregator = aggregator or MetadataAggregator(store)

    async def create_branch(
        self,
        user_id: str,
        parent_conversation_id: str,
        branch_point_message_id: str,
        branch_name: str,
        title: str,
        model: str,
        description: Optional[str] = None,
        initial_message: Optional[str] = None
    ) -> Dict[str, Any]:
        """Fork a conversation at a message.

        The new branch starts with copies of every parent message up to and
        including the branch point, keeping their original timestamps.

        Args:
            initial_message: Optional user message appended after the copied
                history, stamped with the current time

        Raises:
            ParentNotFoundError: parent missing or owned by another user
            BranchPointNotFoundError: message is not in the parent
            BranchCopyError: history copy failed (nothing was committed)
        """
        async with self.store.transaction() as db:
            parent = await self.store.fetch_conversation(db, parent_conversation_id, user_id)
            if not parent:
                raise ParentNotFoundError(parent_conversation_id)

            parent_messages = await self.store.fetch_message_rows(db, parent_conversation_id)
            branch_point_index = next(
                (i for i, msg in enumerate(parent_messages) if msg["id"] == branch_point_message_id),
                -1
            )
            if branch_point_index == -1:
                raise BranchPointNotFoundError(branch_point_message_id, parent_conversation_id)

            # Write lock is held, so no concurrent creation can take the same slot
            branch_order = await self.store.next_branch_order(db, parent_conversation_id)

            now = utc_now()
            branch = {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "title": title,
                "description": description,
                "model": model,
                "system_prompt": parent.get("system_prompt"),
                "metadata": {
                    "total_messages": branch_point_index + 1,
                    "last_model": model,
                    "branch_point_context": (
                        f"Branched from conversation at message {branch_point_message_id}"
                    ),
                    BRANCHING_METADATA_KEY: BranchingMetadata(
                        branch_names=[branch_name],
                        last_branched_at=now,
                    ).to_dict(),
                },
                "parent_conversation_id": parent_conversation_id,
                "is_branch": True,
                "branch_point_message_id": branch_point_message_id,
                "branch_name": branch_name,
                "branch_order": branch_order,
                "branch_created_at": now,
                "created_at": now,
                "updated_at": now,
            }
            await self.store.insert_conversation(db, branch)

            await self._copy_history(db, branch["id"], user_id, parent_messages[:branch_point_index + 1])

            if initial_message:
                await self.store.add_message(branch["id"], "user", initial_message, db=db)

            await self.aggregator.refresh_parent_metadata(parent_conversation_id, db)

        print(f"[BRANCH] Created branch {branch['id']} '{branch_name}' (order {branch_order}) "
              f"from {parent_conversation_id} at {branch_point_message_id}")
        return branch

    async def _copy_history(
        self,
        db: aiosqlite.Connection,
        branch_conversation_id: str,
        user_id: str,
        messages: List[Dict[str, Any]]
    ):
        """Insert copies of ``messages`` into the branch, preserving timestamps."""
        copied = 0
        try:
            for message in messages:
                await self.store.insert_message(db, {
                    "id": str(uuid.uuid4()),
                    "conversation_id": branch_conversation_id,
                    "user_id": user_id,
                    "role": message["role"],
                    "content": message["content"],
                    "model": message.get("model"),
                    "token_count": message.get("token_count") or 0,
                    "metadata": message.get("metadata") or "{}",
                    # Copies start outside any message-level thread
                    "parent_id": None,
                    "branch_name": MAIN_BRANCH_NAME,
                    "branch_depth": 0,
                    "branch_order": 0,
                    "created_at": message["created_at"],
                    "updated_at": message["updated_at"],
                })
                copied += 1
        except aiosqlite.Error as e:
            raise BranchCopyError(branch_conversation_id, copied, len(messages), e) from e

    async def delete_branch(self, conversation_id: str, user_id: str) -> bool:
        """Delete a branch and its messages, then refresh its parent.

        Branches forked from this one are kept; they become orphans.

        Raises:
            NotFoundOrNotOwnedError: missing, not a branch, or not owned
        """
        async with self.store.transaction() as db:
            conversation = await self.store.fetch_conversation(db, conversation_id, user_id)
            if not conversation or not conversation["is_branch"]:
                raise NotFoundOrNotOwnedError(conversation_id)

            deleted_messages = await self.store.delete_messages(db, conversation_id)
            await self.store.delete_conversation_row(db, conversation_id)

            parent_id = conversation.get("parent_conversation_id")
            if parent_id:
                await self.aggregator.refresh_parent_metadata(parent_id, db)

        print(f"[BRANCH] Deleted branch {conversation_id} ({deleted_messages} message(s))")
        return True

    async def get_branches(
        self,
        parent_conversation_id: str,
        user_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Direct branches of a conversation, by branch_order then created_at.

        Raises:
            ParentNotFoundError: ``user_id`` given and the parent is not theirs
        """
        async with self.store.connect() as db:
            if user_id is not None:
                if not await self.store.fetch_conversation(db, parent_conversation_id, user_id):
                    raise ParentNotFoundError(parent_conversation_id)
            return await self.store.fetch_children(db, parent_conversation_id)

    async def build_tree(self, user_id: str, limit: Optional[int] = None) -> List[TreeNode]:
        """Nested branch hierarchy for every conversation the user owns."""
        conversations = await self.store.list_conversations(user_id)
        return build_conversation_tree(conversations, limit=limit)

    async def find_root_conversation(self, conversation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Follow parent pointers to the conversation at the top of the chain.

        Returns None when the starting conversation is not the user's.
        """
        conversations = await self.store.list_conversations(user_id)
        conversations_by_id = {c["id"]: c for c in conversations}
        if conversation_id not in conversations_by_id:
            return None
        return conversations_by_id[find_root_id(conversation_id, conversations_by_id)]

    async def get_conversation_with_relationships(
        self,
        conversation_id: str,
        user_id: str
    ) -> Optional[Dict[str, Any]]:
        """A conversation with its parent and the branches around it.

        ``branches`` holds the direct branches for a root conversation and the
        sibling branches (including itself) for a branch.
        """
        conversations = await self.store.list_conversations(user_id)
        conversations_by_id = {c["id"]: c for c in conversations}
        conversation = conversations_by_id.get(conversation_id)
        if not conversation:
            return None

        parent_conversation = None
        branches: List[Dict[str, Any]] = []
        parent_id = conversation.get("parent_conversation_id")
        if conversation["is_branch"] and parent_id:
            parent_conversation = conversations_by_id.get(parent_id)
            branches = await self.get_branches(parent_id)
        elif not conversation["is_branch"]:
            branches = await self.get_branches(conversation_id)

        return {
            "conversation": conversation,
            "parent_conversation": parent_conversation,
            "branches": branches,
            "root_conversation_id": find_root_id(conversation_id, conversations_by_id),
        }
