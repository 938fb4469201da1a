"""
Conversation loading and the per-chat session.

``ChatSession`` plays the role of one open chat screen: a single writer that
holds the ``is_sending`` latch while a reply is generated, keeps the error
banner, and knows which character answers.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from forkline.branches import (
    ensure_branch, list_branches, describe_navigation,
    create_branch, navigate_branch, switch_active,
)
from forkline.database import (
    transaction, now_ms,
    db_get_chat, db_get_active_persona, db_get_active_preset,
    db_get_characters, db_get_lorebooks,
    db_add_message, db_count_branch_messages, db_get_branch_messages,
)
from forkline.errors import (
    ForklineError, ChatNotFound, NoActiveBranch, SessionBusy,
    MissingCredential, MissingPreset, MissingResponder,
)
from forkline.history import append_user_and_respond, regenerate_from, delete_from
from forkline.openrouter import OpenRouterClient, get_api_key, get_openrouter_client
from forkline.placeholders import character_display_name, resolver_for
from forkline.prompt_builder import compose, generation_parameters

logger = logging.getLogger(__name__)


def collect_lorebook_ids(chat: Dict[str, Any], characters: List[Dict[str, Any]],
                         persona: Optional[Dict[str, Any]]) -> List[str]:
    """Lorebooks attached to the chat, its characters and the active persona."""
    ids = list(chat.get("lorebook_ids") or [])
    for character in characters:
        ids.extend(character.get("lorebook_ids") or [])
    if persona:
        ids.extend(persona.get("lorebook_ids") or [])
    return list(dict.fromkeys(ids))


def load_context(chat_id: str) -> Dict[str, Any]:
    """Chat plus the configuration records a generation needs."""
    chat = db_get_chat(chat_id)
    if chat is None:
        raise ChatNotFound(chat_id)

    persona = db_get_active_persona()
    characters = db_get_characters(chat.get("character_ids") or [])
    return {
        "chat": chat,
        "persona": persona,
        "preset": db_get_active_preset(),
        "characters": characters,
        "lorebooks": db_get_lorebooks(collect_lorebook_ids(chat, characters, persona)),
    }


def load_conversation(chat_id: str) -> Dict[str, Any]:
    """Everything an open chat shows; repairs the active branch first."""
    context = load_context(chat_id)
    branch, chat = ensure_branch(chat_id)
    branches = list_branches(chat_id)
    context.update({
        "chat": chat,
        "active_branch_id": branch["id"],
        "branches": branches,
        "navigation": describe_navigation(branches, branch["id"]),
        "messages": db_get_branch_messages(chat_id, branch["id"]),
    })
    return context


def seed_initial_message(chat_id: str, branch_id: str, character: Optional[Dict[str, Any]],
                         persona: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Store the character's opening line in an empty branch.

    Emptiness is re-checked inside the transaction, so repeated calls seed once.
    """
    if not character or not (character.get("init_message") or "").strip():
        return None

    resolve = resolver_for(character, persona)
    with transaction():
        if db_count_branch_messages(chat_id, branch_id) > 0:
            return None
        message = db_add_message({
            "role": "assistant",
            "name": character_display_name(character),
            "content": resolve(character["init_message"]),
            "timestamp": now_ms(),
            "chat_id": chat_id,
            "avatar": character.get("avatar"),
            "branch_id": branch_id,
        })

    logger.info(f"[CHAT] Seeded opening message for chat {chat_id} branch {branch_id}")
    return message


class ChatSession:
    """One open chat with a single logical writer."""

    def __init__(self, chat_id: str,
                 client_factory: Callable[[], OpenRouterClient] = get_openrouter_client):
        self.chat_id = chat_id
        self.client_factory = client_factory
        self.is_sending = False
        self.error_message: Optional[str] = None
        self.selected_character_id: Optional[str] = None
        self.state: Dict[str, Any] = {}

    # -- state -------------------------------------------------------------

    def open(self) -> Dict[str, Any]:
        """Load the chat, pick a responder and seed the opening message."""
        self.refresh()
        seeded = seed_initial_message(
            self.chat_id, self.state["active_branch_id"],
            self.selected_character, self.state["persona"],
        )
        if seeded:
            self.refresh()
        return self.state

    def refresh(self) -> Dict[str, Any]:
        self.state = load_conversation(self.chat_id)
        ids = [c["id"] for c in self.state["characters"]]
        if self.selected_character_id not in ids:
            self.selected_character_id = ids[0] if ids else None
        return self.state

    @property
    def selected_character(self) -> Optional[Dict[str, Any]]:
        characters = self.state.get("characters") or []
        for character in characters:
            if character["id"] == self.selected_character_id:
                return character
        return characters[0] if characters else None

    def select_character(self, character_id: str) -> bool:
        if not any(c["id"] == character_id for c in self.state.get("characters") or []):
            return False
        self.selected_character_id = character_id
        return True

    def missing_requirements(self) -> List[str]:
        issues = []
        if not self.state.get("preset"):
            issues.append("activate at least one preset")
        if not self.state.get("characters"):
            issues.append("add a character to this chat")
        if not self.selected_character_id:
            issues.append("select which character should answer")
        return issues

    # -- generation --------------------------------------------------------

    def _dispatch_context(self, action: str) -> Dict[str, Any]:
        """Fresh records for a generation; configuration problems stop here."""
        context = load_context(self.chat_id)
        if not context["preset"]:
            raise MissingPreset(f"You need to activate a preset before {action}.")
        ids = [c["id"] for c in context["characters"]]
        if self.selected_character_id not in ids:
            self.selected_character_id = ids[0] if ids else None
        responder = next((c for c in context["characters"] if c["id"] == self.selected_character_id), None)
        if responder is None:
            raise MissingResponder()
        if not context["chat"].get("active_branch_id"):
            raise NoActiveBranch()
        if not get_api_key():
            raise MissingCredential()
        context["responder"] = responder
        return context

    def _generator(self, context: Dict[str, Any]):
        preset = context["preset"]

        async def generate(history: List[Dict[str, Any]]) -> str:
            payload = compose(
                preset, context["persona"], context["characters"],
                context["responder"], context["lorebooks"], history,
            )
            client = self.client_factory()
            return await client.send_chat(preset["model"], payload["messages"], **generation_parameters(preset))

        return generate

    def _acquire(self) -> None:
        if self.is_sending:
            raise SessionBusy()
        self.is_sending = True

    def _fail(self, error: ForklineError) -> Dict[str, Any]:
        self.error_message = str(error)
        return {"success": False, "error": str(error), "kind": error.kind}

    async def send(self, content: str) -> Dict[str, Any]:
        """Append the user's message and the model's reply to the active branch.

        The branch is fixed when the request is dispatched; switching branches
        while the reply is pending does not redirect it.
        """
        self._acquire()
        try:
            self.error_message = None
            try:
                context = self._dispatch_context("chatting")
            except ForklineError as e:
                return self._fail(e)

            branch_id = context["chat"]["active_branch_id"]
            try:
                user_message, reply = await append_user_and_respond(
                    self.chat_id, branch_id, content,
                    context["persona"], context["responder"], self._generator(context),
                )
            except ForklineError as e:
                return self._fail(e)
            return {"success": True, "user_message": user_message, "reply": reply}
        finally:
            self.is_sending = False
            self.refresh()

    async def regenerate(self, message_id: str) -> Dict[str, Any]:
        """Replace ``message_id`` and everything after it with a new reply."""
        self._acquire()
        try:
            self.error_message = None
            try:
                context = self._dispatch_context("regenerating")
                reply = await regenerate_from(
                    self.chat_id, context["chat"]["active_branch_id"], message_id,
                    context["responder"], self._generator(context),
                )
            except ForklineError as e:
                return self._fail(e)
            return {"success": True, "reply": reply}
        finally:
            self.is_sending = False
            self.refresh()

    # -- structure ---------------------------------------------------------

    def delete_from(self, message_id: str) -> int:
        chat = db_get_chat(self.chat_id)
        if chat is None:
            raise ChatNotFound(self.chat_id)
        if not chat.get("active_branch_id"):
            return 0
        deleted = delete_from(self.chat_id, chat["active_branch_id"], message_id)
        self.refresh()
        return deleted

    def create_branch(self, pivot_message_id: str) -> Dict[str, Any]:
        try:
            branch = create_branch(self.chat_id, pivot_message_id)
        except ForklineError as e:
            return self._fail(e)
        self.error_message = None
        self.refresh()
        return {"success": True, "branch": branch}

    def navigate(self, direction: str) -> Optional[Dict[str, Any]]:
        branch = navigate_branch(self.chat_id, direction)
        self.refresh()
        return branch

    def switch_branch(self, branch_id: str) -> bool:
        switched = switch_active(self.chat_id, branch_id)
        self.refresh()
        return switched
