"""Branch conversation endpoints: fork, list, hierarchy and delete."""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import DEFAULT_HIERARCHY_LIMIT, MAX_BRANCH_NAME_LENGTH, MAX_TITLE_LENGTH
from services.branch_errors import (
    BranchCopyError,
    BranchPointNotFoundError,
    NotFoundOrNotOwnedError,
    ParentNotFoundError,
    StoreUnavailableError,
)
from services.conversation_tree import BranchSummary, count_nodes
from .deps import get_branch_service, get_current_user_id

router = APIRouter(prefix="/api/conversations", tags=["branches"])


class CreateBranchRequest(BaseModel):
    """Request to fork a conversation at a message."""
    message_id: str = Field(..., min_length=1)
    branch_name: str = Field(..., min_length=1, max_length=MAX_BRANCH_NAME_LENGTH)
    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)
    model: str = Field(..., min_length=1)
    description: Optional[str] = None
    content: Optional[str] = None  # First user message of the new branch


@router.get("/hierarchy")
async def get_hierarchy(
    limit: int = Query(DEFAULT_HIERARCHY_LIMIT, ge=1),
    user_id: str = Depends(get_current_user_id)
):
    """Conversations as a nested branch tree for the sidebar."""
    try:
        tree = await get_branch_service().build_tree(user_id, limit=limit)
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))

    top_level, nested = count_nodes(tree)
    return {
        "success": True,
        "conversations": [node.to_dict() for node in tree],
        "metadata": {
            "total": top_level,
            "limit": limit,
            "parent_conversations": top_level,
            "branch_conversations": nested,
        },
    }


@router.post("/{conversation_id}/branch")
async def create_branch(
    conversation_id: str,
    request: CreateBranchRequest,
    user_id: str = Depends(get_current_user_id)
):
    """Create a new branch conversation from a message."""
    try:
        branch = await get_branch_service().create_branch(
            user_id=user_id,
            parent_conversation_id=conversation_id,
            branch_point_message_id=request.message_id,
            branch_name=request.branch_name,
            title=request.title,
            model=request.model,
            description=request.description,
            initial_message=request.content
        )
    except (ParentNotFoundError, BranchPointNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BranchCopyError as e:
        print(f"[BRANCH] {e}")
        raise HTTPException(status_code=500, detail="Failed to copy conversation history")
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "success": True,
        "branch_conversation": BranchSummary.from_conversation(branch).to_dict(),
        "message": f'Branch conversation "{request.branch_name}" created successfully',
    }


@router.get("/{conversation_id}/branches")
async def list_branches(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    """List the direct branches of a conversation the caller owns."""
    try:
        branches = await get_branch_service().get_branches(conversation_id, user_id)
    except ParentNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found or access denied")
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"branches": branches, "total": len(branches)}


@router.get("/{conversation_id}/relationships")
async def get_relationships(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    """A conversation with its parent and neighbouring branches."""
    try:
        result = await get_branch_service().get_conversation_with_relationships(conversation_id, user_id)
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not result:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return result


@router.get("/{conversation_id}/root")
async def get_root(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    """The conversation at the top of this one's branch chain."""
    try:
        root = await get_branch_service().find_root_conversation(conversation_id, user_id)
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not root:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return root


@router.delete("/{conversation_id}/branch")
async def delete_branch(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    """Delete a branch conversation and its messages."""
    try:
        await get_branch_service().delete_branch(conversation_id, user_id)
    except NotFoundOrNotOwnedError as e:
        return JSONResponse(status_code=404, content={"success": False, "error": str(e)})
    except StoreUnavailableError as e:
        return JSONResponse(status_code=503, content={"success": False, "error": str(e)})
    return {"success": True}
