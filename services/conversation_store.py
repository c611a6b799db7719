"""SQLite-based conversation persistence with conversation-level branching."""

import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Any, Optional, AsyncIterator

import aiosqlite

from config import DATABASE_PATH, STORE_BUSY_TIMEOUT, DEFAULT_MODEL, MAIN_BRANCH_NAME
from services.branch_errors import StoreUnavailableError

# sqlite3.OperationalError messages that mean "try again later"
UNAVAILABLE_MARKERS = ("locked", "busy", "unable to open")

CONVERSATION_COLUMNS = (
    "id", "user_id", "title", "description", "model", "system_prompt", "metadata",
    "parent_conversation_id", "is_branch", "branch_point_message_id", "branch_name",
    "branch_order", "branch_created_at", "created_at", "updated_at",
)

MESSAGE_COLUMNS = (
    "id", "conversation_id", "user_id", "role", "content", "model", "token_count",
    "metadata", "parent_id", "branch_name", "branch_depth", "branch_order",
    "created_at", "updated_at",
)


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string (sorts lexicographically)."""
    return datetime.now(timezone.utc).isoformat()


def _load_json(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default


def conversation_from_row(row) -> Dict[str, Any]:
    """Convert a conversations row into the dict shape used across services."""
    conversation = dict(row)
    conversation["is_branch"] = bool(conversation.get("is_branch"))
    conversation["metadata"] = _load_json(conversation.get("metadata"), {})
    return conversation


def message_from_row(row) -> Dict[str, Any]:
    """Convert a messages row, decoding structured content where present."""
    message = dict(row)
    try:
        message["content"] = json.loads(message["content"])
    except (json.JSONDecodeError, TypeError):
        pass
    message["metadata"] = _load_json(message.get("metadata"), {})
    return message


class ConversationStore:
    """SQLite-based storage for conversations, messages and branch pointers.

    Plain operations open a connection per call. Multi-step mutations go
    through ``transaction()``, which holds SQLite's write lock from the first
    read, and the ``fetch_*`` / ``insert_*`` / ``delete_*`` helpers that take
    an open connection.
    """

    def __init__(self, db_path: str = DATABASE_PATH, busy_timeout: float = STORE_BUSY_TIMEOUT):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open an autocommit connection with dict-like rows."""
        try:
            async with aiosqlite.connect(
                self.db_path, timeout=self.busy_timeout, isolation_level=None
            ) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except aiosqlite.OperationalError as e:
            if any(marker in str(e).lower() for marker in UNAVAILABLE_MARKERS):
                print(f"[STORE] Database unavailable: {e}")
                raise StoreUnavailableError(str(e)) from e
            raise

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block of reads and writes atomically.

        BEGIN IMMEDIATE takes the write lock up front, so two transactions
        can never both read the same sibling count before inserting.
        """
        async with self.connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    async def initialize(self):
        """Initialize the database schema."""
        async with self.connect() as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    model TEXT,
                    system_prompt TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    parent_conversation_id TEXT,
                    is_branch INTEGER NOT NULL DEFAULT 0,
                    branch_point_message_id TEXT,
                    branch_name TEXT,
                    branch_order INTEGER NOT NULL DEFAULT 0,
                    branch_created_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    model TEXT,
                    token_count INTEGER NOT NULL DEFAULT 0,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    parent_id TEXT,
                    branch_name TEXT NOT NULL DEFAULT 'main',
                    branch_depth INTEGER NOT NULL DEFAULT 0,
                    branch_order INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_conversations_user
                ON conversations(user_id, updated_at)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_conversations_parent
                ON conversations(parent_conversation_id, branch_order)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_conversation
                ON messages(conversation_id, created_at)
            """)

    # ------------------------------------------------------------------
    # Connection-level helpers (used inside transactions)
    # ------------------------------------------------------------------

    async def fetch_conversation(
        self,
        db: aiosqlite.Connection,
        conversation_id: str,
        user_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Fetch one conversation row, optionally scoped to an owner."""
        if user_id is None:
            cursor = await db.execute(
                "SELECT * FROM conversations WHERE id = ?",
                (conversation_id,)
            )
        else:
            cursor = await db.execute(
                "SELECT * FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, user_id)
            )
        row = await cursor.fetchone()
        return conversation_from_row(row) if row else None

    async def fetch_children(self, db: aiosqlite.Connection, parent_conversation_id: str) -> List[Dict[str, Any]]:
        """Direct children of a conversation in display order."""
        cursor = await db.execute(
            """SELECT * FROM conversations
               WHERE parent_conversation_id = ? AND id != ?
               ORDER BY branch_order, created_at""",
            (parent_conversation_id, parent_conversation_id)
        )
        return [conversation_from_row(row) async for row in cursor]

    async def next_branch_order(self, db: aiosqlite.Connection, parent_conversation_id: str) -> int:
        """One past the highest branch_order under a parent (0 for the first branch).

        Orders freed by deletions are never reused.
        """
        cursor = await db.execute(
            """SELECT COALESCE(MAX(branch_order), -1) + 1 FROM conversations
               WHERE parent_conversation_id = ? AND id != ?""",
            (parent_conversation_id, parent_conversation_id)
        )
        row = await cursor.fetchone()
        return row[0]

    async def fetch_message_rows(self, db: aiosqlite.Connection, conversation_id: str) -> List[Dict[str, Any]]:
        """Raw message rows in creation order, content left serialized."""
        cursor = await db.execute(
            """SELECT * FROM messages WHERE conversation_id = ?
               ORDER BY created_at, rowid""",
            (conversation_id,)
        )
        return [dict(row) async for row in cursor]

    async def insert_conversation(self, db: aiosqlite.Connection, conversation: Dict[str, Any]):
        values = dict(conversation)
        values["is_branch"] = 1 if values.get("is_branch") else 0
        values["metadata"] = json.dumps(values.get("metadata") or {})
        await db.execute(
            f"""INSERT INTO conversations ({', '.join(CONVERSATION_COLUMNS)})
                VALUES ({', '.join('?' for _ in CONVERSATION_COLUMNS)})""",
            tuple(values.get(column) for column in CONVERSATION_COLUMNS)
        )

    async def insert_message(self, db: aiosqlite.Connection, message: Dict[str, Any]):
        values = dict(message)
        if not isinstance(values.get("metadata"), str):
            values["metadata"] = json.dumps(values.get("metadata") or {})
        await db.execute(
            f"""INSERT INTO messages ({', '.join(MESSAGE_COLUMNS)})
                VALUES ({', '.join('?' for _ in MESSAGE_COLUMNS)})""",
            tuple(values.get(column) for column in MESSAGE_COLUMNS)
        )

    async def delete_messages(self, db: aiosqlite.Connection, conversation_id: str) -> int:
        cursor = await db.execute(
            "DELETE FROM messages WHERE conversation_id = ?",
            (conversation_id,)
        )
        return cursor.rowcount

    async def delete_conversation_row(self, db: aiosqlite.Connection, conversation_id: str) -> int:
        cursor = await db.execute(
            "DELETE FROM conversations WHERE id = ?",
            (conversation_id,)
        )
        return cursor.rowcount

    async def write_metadata(self, db: aiosqlite.Connection, conversation_id: str, metadata: Dict[str, Any]) -> bool:
        """Replace a conversation's whole metadata blob."""
        cursor = await db.execute(
            "UPDATE conversations SET metadata = ? WHERE id = ?",
            (json.dumps(metadata), conversation_id)
        )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        user_id: str,
        title: str = "New Conversation",
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
        description: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a new top-level conversation."""
        now = utc_now()
        model = model or DEFAULT_MODEL
        conversation = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "title": title,
            "description": description,
            "model": model,
            "system_prompt": system_prompt,
            "metadata": {"total_messages": 0, "last_model": model},
            "parent_conversation_id": None,
            "is_branch": False,
            "branch_point_message_id": None,
            "branch_name": None,
            "branch_order": 0,
            "branch_created_at": None,
            "created_at": now,
            "updated_at": now,
        }

        async with self.connect() as db:
            await self.insert_conversation(db, conversation)

        conversation["messages"] = []
        return conversation

    async def get_conversation(self, conversation_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Get a conversation with its messages in creation order."""
        async with self.connect() as db:
            conversation = await self.fetch_conversation(db, conversation_id, user_id)
            if not conversation:
                return None
            rows = await self.fetch_message_rows(db, conversation_id)

        conversation["messages"] = [message_from_row(row) for row in rows]
        return conversation

    async def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        """List all of a user's conversations (without messages), newest first."""
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM conversations WHERE user_id = ? ORDER BY updated_at DESC",
                (user_id,)
            )
            return [conversation_from_row(row) async for row in cursor]

    async def update_conversation(
        self,
        conversation_id: str,
        title: Optional[str] = None,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> bool:
        """Update conversation fields."""
        updates = []
        params = []

        if title is not None:
            updates.append("title = ?")
            params.append(title)
        if model is not None:
            updates.append("model = ?")
            params.append(model)
        if system_prompt is not None:
            updates.append("system_prompt = ?")
            params.append(system_prompt)

        if not updates:
            return False

        updates.append("updated_at = ?")
        params.append(utc_now())
        where = "id = ?"
        params.append(conversation_id)
        if user_id is not None:
            where += " AND user_id = ?"
            params.append(user_id)

        async with self.connect() as db:
            cursor = await db.execute(
                f"UPDATE conversations SET {', '.join(updates)} WHERE {where}",
                params
            )
            return cursor.rowcount > 0

    async def delete_conversation(self, conversation_id: str, user_id: Optional[str] = None) -> bool:
        """Delete any conversation and its messages.

        Branches forked from it are left in place and show up as orphans.
        """
        async with self.transaction() as db:
            conversation = await self.fetch_conversation(db, conversation_id, user_id)
            if not conversation:
                return False
            await self.delete_messages(db, conversation_id)
            deleted = await self.delete_conversation_row(db, conversation_id)
        print(f"[STORE] Deleted conversation {conversation_id}")
        return deleted > 0

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def add_message(
        self,
        conversation_id: str,
        role: str,
        content: Any,
        model: Optional[str] = None,
        token_count: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
        parent_id: Optional[str] = None,
        created_at: Optional[str] = None,
        db: Optional[aiosqlite.Connection] = None
    ) -> Dict[str, Any]:
        """Append a message to a conversation.

        Args:
            parent_id: Optional message-level threading pointer
            created_at: Explicit timestamp (imports, tests); defaults to now
            db: Open connection to run on, e.g. inside a branch transaction

        Raises:
            ValueError: if the conversation does not exist
        """
        if db is None:
            async with self.transaction() as own_db:
                return await self.add_message(
                    conversation_id, role, content, model=model, token_count=token_count,
                    metadata=metadata, parent_id=parent_id, created_at=created_at, db=own_db
                )

        conversation = await self.fetch_conversation(db, conversation_id)
        if not conversation:
            raise ValueError(f"Conversation {conversation_id} not found")

        now = created_at or utc_now()
        content_str = json.dumps(content) if not isinstance(content, str) else content
        message = {
            "id": str(uuid.uuid4()),
            "conversation_id": conversation_id,
            "user_id": conversation["user_id"],
            "role": role,
            "content": content_str,
            "model": model,
            "token_count": token_count,
            "metadata": metadata or {},
            "parent_id": parent_id,
            "branch_name": MAIN_BRANCH_NAME,
            "branch_depth": 0,
            "branch_order": 0,
            "created_at": now,
            "updated_at": now,
        }
        await self.insert_message(db, message)

        conv_metadata = conversation["metadata"]
        conv_metadata["total_messages"] = conv_metadata.get("total_messages", 0) + 1
        if model:
            conv_metadata["last_model"] = model
        await db.execute(
            "UPDATE conversations SET metadata = ?, updated_at = ? WHERE id = ?",
            (json.dumps(conv_metadata), utc_now(), conversation_id)
        )

        message["content"] = content
        return message

    async def get_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Get all messages for a conversation in creation order."""
        async with self.connect() as db:
            rows = await self.fetch_message_rows(db, conversation_id)
        return [message_from_row(row) for row in rows]

    async def get_message_by_id(self, message_id: str) -> Optional[Dict[str, Any]]:
        """Get a single message by ID."""
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM messages WHERE id = ?",
                (message_id,)
            )
            row = await cursor.fetchone()
        return message_from_row(row) if row else None
