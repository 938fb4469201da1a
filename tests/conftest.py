"""
Shared fixtures: every test runs against its own SQLite file.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from forkline import database, openrouter


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Point the store at a fresh database file for the duration of a test."""
    database.close_connection()
    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "forkline_test.db"))
    monkeypatch.setattr(database, "_subscribers", [])
    database.init_db()
    openrouter.invalidate_openrouter_client()
    yield
    database.close_connection()
    openrouter.invalidate_openrouter_client()


@pytest.fixture
def make_message():
    """Insert a message into a branch with an explicit timestamp."""
    def _make(chat_id, branch_id, role, content, timestamp, name=None):
        return database.db_add_message({
            "chat_id": chat_id,
            "branch_id": branch_id,
            "role": role,
            "name": name or ("Sam" if role == "user" else "Aria"),
            "content": content,
            "timestamp": timestamp,
        })
    return _make


@pytest.fixture
def chat_with_history(make_message):
    """A chat whose Main branch holds five alternating messages (t=1000..5000)."""
    character = database.db_save_character({"name": "Aria", "in_chat_name": "Aria"})
    chat, branch = database.db_create_chat({"name": "Tavern", "character_ids": [character["id"]]})
    messages = []
    for i in range(5):
        role = "assistant" if i % 2 == 0 else "user"
        messages.append(make_message(chat["id"], branch["id"], role, f"message {i + 1}", 1000 * (i + 1)))
    return {"chat": chat, "branch": branch, "character": character, "messages": messages}
