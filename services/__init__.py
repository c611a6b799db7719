"""Services module for Branch Chat."""

from .conversation_store import ConversationStore
from .branch_metadata import BranchingMetadata, MetadataAggregator
from .branch_service import BranchService

__all__ = ["ConversationStore", "BranchingMetadata", "MetadataAggregator", "BranchService"]
