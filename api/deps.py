"""Dependency injection providers for the API layer.

This module provides a single source of truth for the shared conversation
store and the branching services built on it. All routers should use these
providers instead of creating their own instances.
"""

from typing import Optional

from fastapi import Header

from config import DATABASE_PATH, DEFAULT_USER_ID
from services.conversation_store import ConversationStore
from services.branch_metadata import MetadataAggregator
from services.branch_service import BranchService

# Singleton instances
_store: ConversationStore | None = None
_aggregator: MetadataAggregator | None = None
_branch_service: BranchService | None = None
_initialized: bool = False


async def initialize_all(db_path: str = DATABASE_PATH):
    """Initialize all stores and services. Called once at app startup."""
    global _store, _aggregator, _branch_service, _initialized

    if _initialized:
        return

    _store = ConversationStore(db_path=db_path)
    await _store.initialize()

    _aggregator = MetadataAggregator(_store)
    _branch_service = BranchService(_store, _aggregator)

    _initialized = True
    print(f"[DEPS] All services initialized ({db_path})")


def reset():
    """Drop the singletons so the next initialize_all() starts fresh."""
    global _store, _aggregator, _branch_service, _initialized
    _store = None
    _aggregator = None
    _branch_service = None
    _initialized = False


def get_store() -> ConversationStore:
    """Get the singleton ConversationStore instance."""
    if not _initialized or _store is None:
        raise RuntimeError("Dependencies not initialized. Call initialize_all() first.")
    return _store


def get_branch_service() -> BranchService:
    """Get the singleton BranchService instance."""
    if not _initialized or _branch_service is None:
        raise RuntimeError("Dependencies not initialized. Call initialize_all() first.")
    return _branch_service


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity, supplied by the auth layer in front of this service."""
    return x_user_id or DEFAULT_USER_ID
