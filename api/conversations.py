"""Conversation management endpoints."""

from typing import Optional, Any, Dict
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from config import MAX_TITLE_LENGTH
from .deps import get_store, get_current_user_id

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


class CreateConversationRequest(BaseModel):
    """Request to create a new conversation."""
    title: str = Field("New Conversation", min_length=1, max_length=MAX_TITLE_LENGTH)
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    description: Optional[str] = None


class UpdateConversationRequest(BaseModel):
    """Request to update a conversation."""
    title: Optional[str] = Field(None, min_length=1, max_length=MAX_TITLE_LENGTH)
    model: Optional[str] = None
    system_prompt: Optional[str] = None


class AddMessageRequest(BaseModel):
    """Request to add a message to a conversation."""
    role: str
    content: Any
    model: Optional[str] = None
    token_count: int = 0
    metadata: Optional[Dict[str, Any]] = None
    parent_id: Optional[str] = None


@router.post("")
async def create_conversation(request: CreateConversationRequest, user_id: str = Depends(get_current_user_id)):
    """Create a new conversation."""
    return await get_store().create_conversation(
        user_id=user_id,
        title=request.title,
        model=request.model,
        system_prompt=request.system_prompt,
        description=request.description
    )


@router.get("")
async def list_conversations(user_id: str = Depends(get_current_user_id)):
    """List the caller's conversations, most recently updated first."""
    conversations = await get_store().list_conversations(user_id)
    return {"conversations": conversations}


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    """Get a specific conversation with its messages."""
    conversation = await get_store().get_conversation(conversation_id, user_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@router.put("/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    request: UpdateConversationRequest,
    user_id: str = Depends(get_current_user_id)
):
    """Update conversation fields."""
    success = await get_store().update_conversation(
        conversation_id=conversation_id,
        title=request.title,
        model=request.model,
        system_prompt=request.system_prompt,
        user_id=user_id
    )
    if not success:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"success": True}


@router.delete("/{conversation_id}")
async def delete_conversation(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    """Delete a conversation. Its branches are kept and shown as orphans."""
    success = await get_store().delete_conversation(conversation_id, user_id)
    if not success:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"success": True}


@router.post("/{conversation_id}/messages")
async def add_message(
    conversation_id: str,
    request: AddMessageRequest,
    user_id: str = Depends(get_current_user_id)
):
    """Add a message to a conversation."""
    store = get_store()
    if not await store.get_conversation(conversation_id, user_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    try:
        message = await store.add_message(
            conversation_id=conversation_id,
            role=request.role,
            content=request.content,
            model=request.model,
            token_count=request.token_count,
            metadata=request.metadata,
            parent_id=request.parent_id
        )
        return message
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{conversation_id}/messages")
async def get_messages(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    """Get all messages for a conversation in creation order."""
    store = get_store()
    if not await store.get_conversation(conversation_id, user_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    messages = await store.get_messages(conversation_id)
    return {"messages": messages}
