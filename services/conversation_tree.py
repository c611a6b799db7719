"""Rebuild the nested branch hierarchy from flat conversation rows.

Everything here is pure: it works on lists of conversation dicts already
fetched from the store and never touches the database. Parent pointers are
not checked for cycles when written, so every walk keeps a visited set.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

# Shape returned to callers creating a branch
BRANCH_SUMMARY_FIELDS = (
    "id", "title", "branch_name", "parent_conversation_id",
    "branch_point_message_id", "created_at", "model",
)


@dataclass
class BranchSummary:
    id: str
    title: str
    branch_name: Optional[str]
    parent_conversation_id: Optional[str]
    branch_point_message_id: Optional[str]
    created_at: str
    model: Optional[str]

    @classmethod
    def from_conversation(cls, conversation: Dict[str, Any]) -> "BranchSummary":
        return cls(**{name: conversation.get(name) for name in BRANCH_SUMMARY_FIELDS})

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in BRANCH_SUMMARY_FIELDS}


@dataclass
class TreeNode:
    """A conversation placed in the display hierarchy."""
    conversation: Dict[str, Any]
    depth: int = 0
    is_branch: bool = False
    is_orphan: bool = False
    branches: List["TreeNode"] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.conversation["id"]

    @property
    def has_children(self) -> bool:
        return bool(self.branches)

    def walk(self) -> Iterable["TreeNode"]:
        """Yield this node and every descendant, depth first."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.branches))

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.conversation)
        data.pop("messages", None)
        data["is_branch"] = self.is_branch
        data["is_orphan"] = self.is_orphan
        data["depth"] = self.depth
        data["has_children"] = self.has_children
        data["branches"] = [child.to_dict() for child in self.branches]
        return data


def sibling_sort_key(conversation: Dict[str, Any]) -> Tuple[int, str]:
    """branch_order ascending, ties broken by created_at."""
    return (conversation.get("branch_order") or 0, conversation.get("created_at") or "")


def _updated_at(conversation: Dict[str, Any]) -> str:
    return conversation.get("updated_at") or ""


def find_root_id(conversation_id: str, conversations_by_id: Dict[str, Dict[str, Any]]) -> str:
    """Walk parent pointers up to the conversation that ends the chain.

    The walk stops at a non-branch conversation, at a branch whose parent is
    unknown, or when it reaches an id it has already visited. In the cycle
    case the node reached last is treated as its own root.
    """
    visited: Set[str] = set()
    current_id = conversation_id
    while True:
        visited.add(current_id)
        current = conversations_by_id.get(current_id)
        if current is None or not current.get("is_branch"):
            return current_id
        parent_id = current.get("parent_conversation_id")
        if not parent_id or parent_id not in conversations_by_id or parent_id in visited:
            return current_id
        current_id = parent_id


def _on_cycle(conversation_id: str, conversations_by_id: Dict[str, Dict[str, Any]]) -> bool:
    """True if following parent pointers from this branch leads back to it."""
    visited: Set[str] = set()
    current = conversations_by_id.get(conversation_id)
    while current is not None and current.get("is_branch"):
        parent_id = current.get("parent_conversation_id")
        if parent_id == conversation_id:
            return True
        if not parent_id or parent_id in visited:
            return False
        visited.add(parent_id)
        current = conversations_by_id.get(parent_id)
    return False


def _classify_top_level(
    conversations_by_id: Dict[str, Dict[str, Any]]
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Split top-level conversations into (roots, promoted).

    Promoted entries are branches shown at the top because their parent is
    missing or because they sit on a parent cycle.
    """
    roots: List[Dict[str, Any]] = []
    promoted: List[Dict[str, Any]] = []
    for conversation_id, conversation in conversations_by_id.items():
        if not conversation.get("is_branch"):
            roots.append(conversation)
            continue
        parent_id = conversation.get("parent_conversation_id")
        if not parent_id or parent_id not in conversations_by_id:
            promoted.append(conversation)
        elif _on_cycle(conversation_id, conversations_by_id):
            print(f"[TREE] Cycle through {conversation_id}, showing it at top level")
            promoted.append(conversation)
    return roots, promoted


def _expand(
    top: TreeNode,
    children_by_parent: Dict[str, List[Dict[str, Any]]],
    top_level_ids: Set[str],
    placed: Set[str],
) -> None:
    """Attach descendants under ``top`` iteratively.

    ``placed`` is shared across the whole build, so a conversation is shown
    at most once even if the pointers are malformed.
    """
    placed.add(top.id)
    stack = [top]
    while stack:
        node = stack.pop()
        for child in children_by_parent.get(node.id, []):
            child_id = child["id"]
            if child_id in top_level_ids or child_id in placed:
                continue
            placed.add(child_id)
            child_node = TreeNode(conversation=child, depth=node.depth + 1, is_branch=True)
            node.branches.append(child_node)
            stack.append(child_node)


def build_conversation_tree(
    conversations: Iterable[Dict[str, Any]],
    limit: Optional[int] = None,
) -> List[TreeNode]:
    """Build the sidebar hierarchy for one user's conversations.

    Args:
        conversations: Every conversation the user owns, fetched once
        limit: Optional cap on the number of regular roots returned.
            Orphaned and cycle-promoted branches are always appended so
            nothing becomes unreachable.

    Returns:
        Top-level TreeNodes: roots by updated_at (newest first), followed by
        promoted branches in the same order.
    """
    conversations_by_id: Dict[str, Dict[str, Any]] = {}
    for conversation in conversations:
        conversations_by_id[conversation["id"]] = conversation

    children_by_parent: Dict[str, List[Dict[str, Any]]] = {}
    for conversation in conversations_by_id.values():
        parent_id = conversation.get("parent_conversation_id")
        if parent_id and parent_id != conversation["id"] and parent_id in conversations_by_id:
            children_by_parent.setdefault(parent_id, []).append(conversation)
    for siblings in children_by_parent.values():
        siblings.sort(key=sibling_sort_key)

    roots, promoted = _classify_top_level(conversations_by_id)
    roots.sort(key=_updated_at, reverse=True)
    promoted.sort(key=_updated_at, reverse=True)
    if limit is not None:
        roots = roots[:limit]

    # Ids hidden by the limit still count as top level so their subtrees are not
    # re-homed under a different node.
    top_level_ids = {c["id"] for c in conversations_by_id.values() if not c.get("is_branch")}
    top_level_ids.update(c["id"] for c in promoted)

    placed: Set[str] = set()
    tree: List[TreeNode] = []
    for conversation in roots:
        node = TreeNode(conversation=conversation, depth=0, is_branch=False)
        _expand(node, children_by_parent, top_level_ids, placed)
        tree.append(node)
    for conversation in promoted:
        node = TreeNode(conversation=conversation, depth=0, is_branch=False, is_orphan=True)
        _expand(node, children_by_parent, top_level_ids, placed)
        tree.append(node)
    return tree


def count_nodes(tree: List[TreeNode]) -> Tuple[int, int]:
    """(top-level count, nested branch count) for response metadata."""
    nested = sum(1 for top in tree for node in top.walk() if node is not top)
    return len(tree), nested
