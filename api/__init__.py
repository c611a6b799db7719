"""API routes module for Branch Chat."""

from .branches import router as branches_router
from .conversations import router as conversations_router

__all__ = ["branches_router", "conversations_router"]
