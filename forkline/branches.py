"""
Branch Manager

A chat's history is a forest of branches. Each branch row records where it
came from (parent branch + pivot message) and when it was created. Two
orderings are kept apart on purpose:

- provenance: parent -> children, see ``get_branch_tree``
- navigation: flat creation order across the whole chat, see ``list_branches``

"Next branch" always means "next created", never "child branch".
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from forkline.config_loader import CONFIG
from forkline.database import (
    transaction, generate_id, now_ms,
    db_get_chat, db_update_chat,
    db_add_branch, db_get_branch, db_get_chat_branches, db_count_chat_branches, db_update_branch,
    db_get_branch_messages, db_bulk_add_messages, db_assign_orphan_messages,
)
from forkline.errors import ChatNotFound, NoActiveBranch, PivotNotFound

logger = logging.getLogger(__name__)

DIRECTIONS = ("previous", "next")


def ensure_branch(chat_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Make sure the chat has a resolvable active branch.

    If the chat has no branches, or its ``active_branch_id`` does not point at
    one of its branches, a root branch is created and made active in one
    transaction. A dangling active id is reused as the new branch's id so the
    existing reference becomes valid. Messages without a branch are adopted by
    the active branch. Calling it again without other mutations changes nothing.

    Returns:
        (active branch, chat) as read after the repair
    """
    with transaction():
        chat = db_get_chat(chat_id)
        if chat is None:
            raise ChatNotFound(chat_id)

        active_id = chat.get("active_branch_id")
        branches = db_get_chat_branches(chat_id)
        active = next((b for b in branches if b["id"] == active_id), None)

        if active is None:
            branch_id = active_id if active_id and db_get_branch(active_id) is None else generate_id()
            active = db_add_branch({
                "id": branch_id,
                "chat_id": chat_id,
                "name": CONFIG["chat"]["main_branch_name"],
                "parent_branch_id": None,
                "pivot_message_id": None,
                "created_at": now_ms(),
            })
            db_update_chat(chat_id, {"active_branch_id": branch_id})
            chat["active_branch_id"] = branch_id
            logger.info(f"[BRANCH] Repaired chat {chat_id}: created root branch {branch_id}")

        adopted = db_assign_orphan_messages(chat_id, active["id"])
        if adopted:
            logger.info(f"[BRANCH] Attached {adopted} unbranched messages to {active['id']}")

    return active, chat


def list_branches(chat_id: str) -> List[Dict[str, Any]]:
    """Branches of a chat in creation order (oldest first)."""
    return sorted(db_get_chat_branches(chat_id), key=lambda branch: branch["created_at"])


def describe_navigation(branches: List[Dict[str, Any]], active_branch_id: Optional[str]) -> Dict[str, Any]:
    """Position of the active branch within ``branches`` (already in creation order)."""
    index = next((i for i, b in enumerate(branches) if b["id"] == active_branch_id), -1)
    label = None
    if index >= 0:
        name = (branches[index].get("name") or "").strip() or f"Branch {index + 1}"
        label = f"{name} ({index + 1}/{len(branches)})"
    return {
        "index": index,
        "total": len(branches),
        "can_prev": index > 0,
        "can_next": 0 <= index < len(branches) - 1,
        "label": label,
    }


def get_navigation(chat_id: str) -> Dict[str, Any]:
    chat = db_get_chat(chat_id)
    if chat is None:
        raise ChatNotFound(chat_id)
    return describe_navigation(list_branches(chat_id), chat.get("active_branch_id"))


def switch_active(chat_id: str, branch_id: str) -> bool:
    """Make ``branch_id`` the chat's active branch.

    Ids that are not among the chat's branches are ignored (returns False).
    """
    with transaction():
        if not any(b["id"] == branch_id for b in db_get_chat_branches(chat_id)):
            logger.warning(f"[BRANCH] Ignoring switch of chat {chat_id} to foreign branch {branch_id}")
            return False
        db_update_chat(chat_id, {"active_branch_id": branch_id})
    return True


def navigate_branch(chat_id: str, direction: str) -> Optional[Dict[str, Any]]:
    """Step to the previous/next branch in creation order. No wraparound.

    Returns the newly active branch, or None when already at the boundary.
    """
    if direction not in DIRECTIONS:
        raise ValueError(f"direction must be one of {DIRECTIONS}, got {direction!r}")

    chat = db_get_chat(chat_id)
    if chat is None:
        raise ChatNotFound(chat_id)

    branches = list_branches(chat_id)
    position = describe_navigation(branches, chat.get("active_branch_id"))
    if position["index"] == -1:
        return None

    target = position["index"] - 1 if direction == "previous" else position["index"] + 1
    if target < 0 or target >= len(branches):
        return None

    switch_active(chat_id, branches[target]["id"])
    return branches[target]


def create_branch(chat_id: str, pivot_message_id: str) -> Dict[str, Any]:
    """Fork the active branch at ``pivot_message_id``.

    The new branch gets copies (fresh ids) of every message up to and
    including the pivot, its provenance points at the old branch and pivot,
    and it becomes the active branch. The whole fork is one transaction: if
    the pivot is gone, ``PivotNotFound`` is raised and nothing is written.
    """
    with transaction():
        chat = db_get_chat(chat_id)
        if chat is None:
            raise ChatNotFound(chat_id)

        source_branch_id = chat.get("active_branch_id")
        if not source_branch_id:
            raise NoActiveBranch()

        branch = db_add_branch({
            "id": generate_id(),
            "chat_id": chat_id,
            "name": f"Branch {db_count_chat_branches(chat_id) + 1}",
            "parent_branch_id": source_branch_id,
            "pivot_message_id": pivot_message_id,
            "created_at": now_ms(),
        })

        history = db_get_branch_messages(chat_id, source_branch_id)
        pivot_index = next((i for i, m in enumerate(history) if m["id"] == pivot_message_id), -1)
        if pivot_index == -1:
            raise PivotNotFound(pivot_message_id)

        copies = [
            {**message, "id": generate_id(), "branch_id": branch["id"]}
            for message in history[:pivot_index + 1]
        ]
        db_bulk_add_messages(copies)
        db_update_chat(chat_id, {"active_branch_id": branch["id"]})

    logger.info(
        f"[BRANCH] Forked {source_branch_id} at {pivot_message_id} into "
        f"{branch['id']} ({branch['name']}, {len(copies)} messages)"
    )
    return branch


def rename_branch(branch_id: str, name: str) -> bool:
    name = (name or "").strip()
    if not name:
        raise ValueError("Branch name is required")
    return db_update_branch(branch_id, {"name": name})


def get_branch_tree(chat_id: str) -> List[Dict[str, Any]]:
    """Provenance view: root branches with nested ``children``.

    A branch whose parent no longer resolves is shown as a root.
    """
    branches = list_branches(chat_id)
    nodes = {b["id"]: {**b, "children": []} for b in branches}
    roots = []
    for branch in branches:
        parent = nodes.get(branch.get("parent_branch_id"))
        if parent is None:
            roots.append(nodes[branch["id"]])
        else:
            parent["children"].append(nodes[branch["id"]])
    return roots
