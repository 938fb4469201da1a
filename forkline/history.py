"""
History Editor

Truncates, regenerates and extends the message history of one branch.
Every mutation re-reads the branch from storage right before writing; a
caller's earlier view may be stale after a branch switch or another edit.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from forkline.config_loader import CONFIG
from forkline.database import (
    transaction, now_ms,
    db_add_message, db_get_branch_messages, db_bulk_delete_messages,
)
from forkline.errors import MessageNotFound
from forkline.placeholders import character_display_name, persona_display_name, resolver_for

logger = logging.getLogger(__name__)

# Turns history (sorted, oldest first) into assistant text
Generator = Callable[[List[Dict[str, Any]]], Awaitable[str]]


def _index_of(history: List[Dict[str, Any]], message_id: str) -> int:
    return next((i for i, m in enumerate(history) if m["id"] == message_id), -1)


def assistant_message(chat_id: str, branch_id: str, responder: Optional[Dict[str, Any]], content: str) -> Dict[str, Any]:
    return {
        "role": "assistant",
        "name": character_display_name(responder),
        "content": content,
        "timestamp": now_ms(),
        "chat_id": chat_id,
        "avatar": (responder or {}).get("avatar"),
        "branch_id": branch_id,
    }


def failure_message(chat_id: str, branch_id: str, description: str) -> Dict[str, Any]:
    return {
        "role": "system",
        "name": "System",
        "content": f"{CONFIG['chat']['failure_prefix']}{description}",
        "timestamp": now_ms(),
        "chat_id": chat_id,
        "avatar": None,
        "branch_id": branch_id,
    }


def delete_from(chat_id: str, branch_id: str, message_id: str) -> int:
    """Delete a message and everything after it in its branch.

    The cut is by position in the timestamp-sorted history, so rows sharing
    or preceding the target's timestamp but stored after it are removed too.
    Unknown ids delete nothing.

    Returns:
        Number of deleted messages
    """
    with transaction():
        history = db_get_branch_messages(chat_id, branch_id)
        index = _index_of(history, message_id)
        if index == -1:
            logger.warning(f"[HISTORY] Message {message_id} not in branch {branch_id}, nothing deleted")
            return 0
        deleted = db_bulk_delete_messages(m["id"] for m in history[index:])

    logger.info(f"[HISTORY] Deleted {deleted} messages from branch {branch_id} starting at {message_id}")
    return deleted


async def regenerate_from(chat_id: str, branch_id: str, message_id: str,
                          responder: Optional[Dict[str, Any]], generate: Generator) -> Dict[str, Any]:
    """Replace a message and its tail with one freshly generated assistant reply.

    The history strictly before the target is the generation context. The
    branch is left untouched if generation fails.

    Raises:
        MessageNotFound: the target is not in the branch
    """
    history = db_get_branch_messages(chat_id, branch_id)
    index = _index_of(history, message_id)
    if index == -1:
        raise MessageNotFound(message_id)

    content = await generate(history[:index])
    reply = assistant_message(chat_id, branch_id, responder, content)

    with transaction():
        live = db_get_branch_messages(chat_id, branch_id)
        live_index = _index_of(live, message_id)
        if live_index != -1:
            doomed = [m["id"] for m in live[live_index:]]
        else:
            # Target vanished while generating; drop whatever is left of the old tail
            doomed = [m["id"] for m in history[index:]]
        db_bulk_delete_messages(doomed)
        reply = db_add_message(reply)

    logger.info(f"[HISTORY] Regenerated branch {branch_id} from {message_id} as {reply['id']}")
    return reply


async def append_user_and_respond(chat_id: str, branch_id: str, content: str,
                                  persona: Optional[Dict[str, Any]], responder: Optional[Dict[str, Any]],
                                  generate: Generator) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Store the user's turn, then the model's reply.

    The user's message is kept whatever happens next. If generation fails a
    system message describing the failure is stored in place of the reply and
    the original error is re-raised for the caller to display.

    Returns:
        (user message, assistant message)
    """
    resolve = resolver_for(responder, persona)
    user_message = db_add_message({
        "role": "user",
        "name": persona_display_name(persona),
        "content": resolve(content),
        "timestamp": now_ms(),
        "chat_id": chat_id,
        "avatar": (persona or {}).get("avatar"),
        "branch_id": branch_id,
    })

    try:
        history = db_get_branch_messages(chat_id, branch_id)
        reply_text = await generate(history)
        reply = db_add_message(assistant_message(chat_id, branch_id, responder, reply_text))
    except Exception as e:
        description = str(e) or "Unexpected error"
        logger.warning(f"[HISTORY] Generation failed in branch {branch_id}: {description}")
        db_add_message(failure_message(chat_id, branch_id, description))
        raise

    return user_message, reply
