"""
Tests for conversation loading and ChatSession in forkline/conversation.py
"""

import asyncio
import json

import httpx
import pytest

from forkline.conversation import ChatSession, load_conversation, seed_initial_message, collect_lorebook_ids
from forkline.database import (
    db_save_character, db_save_persona, db_save_preset, db_save_lorebook, db_save_chat,
    db_set_active_persona, db_set_active_preset, db_create_chat, db_get_branch_messages, db_get_chat,
)
from forkline.openrouter import OpenRouterClient, set_api_key


def _mock_client(replies, captured=None):
    """Client factory answering from ``replies`` in order and recording request bodies."""
    replies = list(replies)

    def handler(request):
        if captured is not None:
            captured.append(json.loads(request.content))
        return httpx.Response(200, json={"choices": [{"message": {"content": replies.pop(0)}}]})

    return lambda: OpenRouterClient("test-key", transport=httpx.MockTransport(handler))


@pytest.fixture
def ready_chat():
    """A chat with an active persona and preset, one character with an opening line, and a key set."""
    persona = db_save_persona({"name": "Sam", "in_chat_name": "Sam"})
    db_set_active_persona(persona["id"])
    preset = db_save_preset({"name": "Default", "model": "openrouter/test-model", "temperature": 0.7})
    db_set_active_preset(preset["id"])
    character = db_save_character({"name": "Aria", "init_message": "Hi {{user}}!"})
    chat, branch = db_create_chat({"name": "Tavern", "character_ids": [character["id"]]})
    set_api_key("test-key")
    return {"persona": persona, "preset": preset, "character": character, "chat": chat, "branch": branch}


class TestLoadConversation:

    def test_repairs_and_loads(self):
        character = db_save_character({"name": "Aria"})
        chat = db_save_chat({"name": "Legacy", "character_ids": [character["id"]]})

        state = load_conversation(chat["id"])

        assert state["active_branch_id"] == db_get_chat(chat["id"])["active_branch_id"]
        assert state["navigation"]["label"] == "Main (1/1)"
        assert [c["id"] for c in state["characters"]] == [character["id"]]
        assert state["messages"] == []

    def test_lorebook_union(self):
        a = db_save_lorebook({"name": "A"})
        b = db_save_lorebook({"name": "B"})
        c = db_save_lorebook({"name": "C"})
        persona = db_save_persona({"name": "Sam", "lorebook_ids": [c["id"], a["id"]]})
        db_set_active_persona(persona["id"])
        character = db_save_character({"name": "Aria", "lorebook_ids": [b["id"], "deleted"]})
        chat, _ = db_create_chat({"name": "Tavern", "character_ids": [character["id"]], "lorebook_ids": [a["id"]]})

        state = load_conversation(chat["id"])

        assert [lb["name"] for lb in state["lorebooks"]] == ["A", "B", "C"]

    def test_collect_lorebook_ids_dedupes_in_order(self):
        ids = collect_lorebook_ids({"lorebook_ids": ["x", "y"]}, [{"lorebook_ids": ["y", "z"]}], {"lorebook_ids": ["x"]})
        assert ids == ["x", "y", "z"]


class TestSeedInitialMessage:

    def test_seeds_empty_branch_once(self, ready_chat):
        chat_id = ready_chat["chat"]["id"]
        branch_id = ready_chat["branch"]["id"]

        first = seed_initial_message(chat_id, branch_id, ready_chat["character"], ready_chat["persona"])
        second = seed_initial_message(chat_id, branch_id, ready_chat["character"], ready_chat["persona"])

        assert first["content"] == "Hi Sam!"
        assert first["role"] == "assistant"
        assert second is None
        assert len(db_get_branch_messages(chat_id, branch_id)) == 1

    def test_blank_opening_line_not_seeded(self, ready_chat):
        character = {**ready_chat["character"], "init_message": "   "}
        assert seed_initial_message(ready_chat["chat"]["id"], ready_chat["branch"]["id"], character, None) is None


class TestChatSessionSend:
    """Tests for ChatSession.send."""

    @pytest.mark.asyncio
    async def test_opening_line_then_exchange(self, ready_chat):
        """Test a fresh chat seeds its opening line and a send appends user and reply in order."""
        captured = []
        session = ChatSession(ready_chat["chat"]["id"], client_factory=_mock_client(["Welcome, Sam."], captured))

        state = session.open()
        assert [m["content"] for m in state["messages"]] == ["Hi Sam!"]

        result = await session.send("Hello {{char}}")

        assert result["success"] is True
        messages = session.state["messages"]
        assert [(m["role"], m["content"]) for m in messages] == [
            ("assistant", "Hi Sam!"),
            ("user", "Hello Aria"),
            ("assistant", "Welcome, Sam."),
        ]
        stamps = [m["timestamp"] for m in messages]
        assert stamps[0] < stamps[1] < stamps[2]

        body = captured[0]
        assert body["model"] == "openrouter/test-model"
        assert body["messages"][0]["role"] == "system"
        assert [m["content"] for m in body["messages"][1:]] == ["Hi Sam!", "Hello Aria"]
        assert session.is_sending is False

    @pytest.mark.asyncio
    async def test_missing_preset_blocks_before_io(self, ready_chat):
        from forkline.database import db_deactivate_presets

        db_deactivate_presets()
        captured = []
        session = ChatSession(ready_chat["chat"]["id"], client_factory=_mock_client(["unused"], captured))
        session.open()

        result = await session.send("Hello")

        assert result == {
            "success": False,
            "error": "You need to activate a preset before chatting.",
            "kind": "configuration",
        }
        assert captured == []
        assert session.error_message == "You need to activate a preset before chatting."
        assert [m["role"] for m in session.state["messages"]] == ["assistant"]

    @pytest.mark.asyncio
    async def test_missing_key_blocks_before_io(self, ready_chat):
        from forkline.openrouter import clear_api_key

        clear_api_key()
        session = ChatSession(ready_chat["chat"]["id"], client_factory=_mock_client(["unused"]))
        session.open()

        result = await session.send("Hello")

        assert result["success"] is False
        assert "API key" in result["error"]
        assert len(session.state["messages"]) == 1

    @pytest.mark.asyncio
    async def test_chat_without_characters(self):
        preset = db_save_preset({"name": "Default", "model": "m"})
        db_set_active_preset(preset["id"])
        set_api_key("test-key")
        chat, _ = db_create_chat({"name": "Empty"})
        session = ChatSession(chat["id"], client_factory=_mock_client(["unused"]))
        session.open()

        assert "add a character to this chat" in session.missing_requirements()
        result = await session.send("Hello")
        assert result["error"] == "Select a character to respond to your messages."

    @pytest.mark.asyncio
    async def test_gateway_failure_records_system_message(self, ready_chat):
        def handler(request):
            return httpx.Response(503, json={"error": {"message": "Service unavailable"}})

        session = ChatSession(
            ready_chat["chat"]["id"],
            client_factory=lambda: OpenRouterClient("test-key", transport=httpx.MockTransport(handler)),
        )
        session.open()

        result = await session.send("Hello")

        assert result["kind"] == "gateway"
        assert session.error_message == "OpenRouter returned HTTP 503: Service unavailable"
        last = session.state["messages"][-1]
        assert last["role"] == "system"
        assert last["content"] == "Failed to fetch a response: OpenRouter returned HTTP 503: Service unavailable"
        assert session.state["messages"][-2]["content"] == "Hello"

    @pytest.mark.asyncio
    async def test_second_send_while_pending_is_rejected(self, ready_chat):
        release = asyncio.Event()

        async def slow_handler(request):
            await release.wait()
            return httpx.Response(200, json={"choices": [{"message": {"content": "done"}}]})

        session = ChatSession(
            ready_chat["chat"]["id"],
            client_factory=lambda: OpenRouterClient("test-key", transport=httpx.MockTransport(slow_handler)),
        )
        session.open()

        first = asyncio.ensure_future(session.send("one"))
        await asyncio.sleep(0.05)
        assert session.is_sending is True

        from forkline.errors import SessionBusy
        with pytest.raises(SessionBusy):
            await session.send("two")

        release.set()
        result = await first
        assert result["success"] is True
        assert [m["content"] for m in session.state["messages"]] == ["Hi Sam!", "one", "done"]

    @pytest.mark.asyncio
    async def test_selected_character_answers(self, ready_chat):
        bram = db_save_character({"name": "Bram", "in_chat_name": "Innkeeper"})
        chat, _ = db_create_chat({"name": "Inn", "character_ids": [ready_chat["character"]["id"], bram["id"]]})
        captured = []
        session = ChatSession(chat["id"], client_factory=_mock_client(["Room's two silver."], captured))
        session.open()

        assert session.select_character(bram["id"]) is True
        assert session.select_character("stranger") is False
        await session.send("How much for a room?")

        assert session.state["messages"][-1]["name"] == "Innkeeper"
        assert 'You are roleplaying as "Innkeeper"' in captured[0]["messages"][0]["content"]


class TestChatSessionHistory:

    @pytest.mark.asyncio
    async def test_regenerate_replaces_reply(self, ready_chat):
        session = ChatSession(ready_chat["chat"]["id"], client_factory=_mock_client(["first", "second"]))
        session.open()
        await session.send("Hello")
        reply_id = session.state["messages"][-1]["id"]

        result = await session.regenerate(reply_id)

        assert result["success"] is True
        assert [m["content"] for m in session.state["messages"]] == ["Hi Sam!", "Hello", "second"]

    @pytest.mark.asyncio
    async def test_regenerate_unknown_message(self, ready_chat):
        session = ChatSession(ready_chat["chat"]["id"], client_factory=_mock_client([]))
        session.open()

        result = await session.regenerate("missing")

        assert result == {"success": False, "error": "Message to regenerate was not found.", "kind": "structural"}

    def test_fork_and_navigate(self, ready_chat):
        session = ChatSession(ready_chat["chat"]["id"], client_factory=_mock_client([]))
        session.open()
        pivot = session.state["messages"][0]["id"]

        result = session.create_branch(pivot)

        assert result["success"] is True
        assert session.state["active_branch_id"] == result["branch"]["id"]
        assert session.state["navigation"]["label"] == "Branch 2 (2/2)"

        session.navigate("previous")
        assert session.state["active_branch_id"] == ready_chat["branch"]["id"]

    def test_fork_at_missing_pivot(self, ready_chat):
        session = ChatSession(ready_chat["chat"]["id"], client_factory=_mock_client([]))
        session.open()

        result = session.create_branch("gone")

        assert result["success"] is False
        assert session.error_message == "The selected message is no longer available."
        assert session.state["navigation"]["total"] == 1

    def test_delete_from_active_branch(self, ready_chat):
        session = ChatSession(ready_chat["chat"]["id"], client_factory=_mock_client([]))
        session.open()

        assert session.delete_from(session.state["messages"][0]["id"]) == 1
        assert session.state["messages"] == []
