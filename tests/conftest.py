"""Pytest configuration and fixtures."""

import asyncio
import os
import sys
import tempfile
import pytest
from typing import Generator

# Add project root to Python path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

USER_ID = "user-1"


@pytest.fixture
def temp_data_dir() -> Generator[str, None, None]:
    """Create a temporary data directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def db_path(temp_data_dir) -> str:
    return os.path.join(temp_data_dir, "conversations.db")


@pytest.fixture
async def store(db_path):
    """Create a conversation store backed by a temporary SQLite file."""
    from services.conversation_store import ConversationStore

    store = ConversationStore(db_path=db_path)
    await store.initialize()
    return store


@pytest.fixture
def aggregator(store):
    from services.branch_metadata import MetadataAggregator

    return MetadataAggregator(store)


@pytest.fixture
def branch_service(store, aggregator):
    from services.branch_service import BranchService

    return BranchService(store, aggregator)


@pytest.fixture
async def seeded_conversation(store):
    """A root conversation with four messages m0..m3 at distinct past timestamps."""
    conversation = await store.create_conversation(user_id=USER_ID, title="Root", model="claude-sonnet-4")
    messages = []
    for i, role in enumerate(["user", "assistant", "user", "assistant"]):
        messages.append(await store.add_message(
            conversation["id"],
            role,
            f"message {i}",
            model=None if role == "user" else "claude-sonnet-4",
            token_count=10 * i,
            created_at=f"2024-01-01T00:00:0{i}+00:00",
        ))
    return conversation, messages


@pytest.fixture
def api_client(db_path):
    """TestClient wired to services using a temporary database."""
    from fastapi.testclient import TestClient
    from api import deps
    from app import app

    deps.reset()
    asyncio.run(deps.initialize_all(db_path=db_path))
    client = TestClient(app, headers={"X-User-Id": USER_ID})
    yield client
    deps.reset()
