"""Exceptions raised by the conversation branching services.

Caller errors (bad ids, ownership) are raised before anything is written.
Consistency and infrastructure errors abort the surrounding transaction.
"""

from typing import Optional


class BranchingError(Exception):
    """Base class for all branching failures."""


class ParentNotFoundError(BranchingError, LookupError):
    """The parent conversation does not exist or is owned by someone else."""

    def __init__(self, parent_conversation_id: str):
        self.parent_conversation_id = parent_conversation_id
        super().__init__(f"Parent conversation {parent_conversation_id} not found or access denied")


class BranchPointNotFoundError(BranchingError, LookupError):
    """The branch point message is not part of the parent conversation."""

    def __init__(self, message_id: str, parent_conversation_id: str):
        self.message_id = message_id
        self.parent_conversation_id = parent_conversation_id
        super().__init__(
            f"Branch point message {message_id} not found in conversation {parent_conversation_id}"
        )


class NotFoundOrNotOwnedError(BranchingError, LookupError):
    """The branch to delete is missing, not a branch, or not owned by the caller."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Branch conversation {conversation_id} not found or not owned by user")


class BranchCopyError(BranchingError):
    """Copying history into a new branch failed; the branch was rolled back."""

    def __init__(self, branch_conversation_id: str, copied: int, total: int, cause: Optional[BaseException] = None):
        self.branch_conversation_id = branch_conversation_id
        self.copied = copied
        self.total = total
        detail = f": {cause}" if cause else ""
        super().__init__(
            f"Copied {copied}/{total} messages into branch {branch_conversation_id} before failing{detail}"
        )


class StoreUnavailableError(BranchingError):
    """The database is locked, busy or cannot be opened. Safe to retry."""
