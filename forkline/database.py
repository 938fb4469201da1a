"""
Forkline Database Module
Centralized SQLite storage for personas, characters, presets, lorebooks,
chats, branches, messages and app settings.
"""

import sqlite3
import json
import time
import threading
import os
import uuid
import logging
from typing import List, Dict, Any, Optional, Iterable, Callable, Tuple
from contextlib import contextmanager

from forkline.config_loader import CONFIG

logger = logging.getLogger(__name__)

# Global database path
DB_PATH = CONFIG["database"]["path"]

# Thread-local storage for connections
_thread_local = threading.local()

_subscribers: List[Callable[[frozenset], None]] = []

_clock_lock = threading.Lock()
_last_timestamp = 0

# Column layout per table. List fields are stored as JSON text, flags as 0/1.
TABLE_COLUMNS = {
    "personas": (
        "id", "name", "in_chat_name", "description", "avatar", "is_active",
        "lorebook_ids", "created_at",
    ),
    "characters": (
        "id", "name", "in_chat_name", "description", "avatar", "init_message",
        "scenario", "lorebook_ids", "created_at",
    ),
    "presets": (
        "id", "name", "is_active", "model", "pre_history_instructions",
        "post_history_instructions", "impersonation_prompt", "temperature",
        "repetition_penalty", "frequency_penalty", "presence_penalty", "top_p",
        "top_k", "context_size", "max_new_token", "created_at",
    ),
    "lorebooks": ("id", "name", "description", "content", "created_at"),
    "chats": ("id", "name", "character_ids", "lorebook_ids", "active_branch_id", "created_at"),
    "chat_branches": ("id", "chat_id", "name", "parent_branch_id", "pivot_message_id", "created_at"),
    "messages": ("id", "chat_id", "branch_id", "role", "name", "content", "timestamp", "avatar"),
}

JSON_FIELDS = {"lorebook_ids", "character_ids"}
BOOL_FIELDS = {"is_active"}

PERSONA_DEFAULTS = {
    "name": "", "in_chat_name": "", "description": "", "avatar": None,
    "is_active": False, "lorebook_ids": [],
}

CHARACTER_DEFAULTS = {
    "name": "", "in_chat_name": "", "description": "", "avatar": None,
    "init_message": "", "scenario": "", "lorebook_ids": [],
}

PRESET_DEFAULTS = {
    "name": "", "is_active": False, "model": "",
    "pre_history_instructions": "", "post_history_instructions": "",
    "impersonation_prompt": "", "temperature": 0.7, "repetition_penalty": 1.0,
    "frequency_penalty": 0.0, "presence_penalty": 0.0, "top_p": 1.0,
    "top_k": 40, "context_size": 2048, "max_new_token": 2048,
}

LOREBOOK_DEFAULTS = {"name": "", "description": "", "content": ""}

CHAT_DEFAULTS = {"name": "", "character_ids": [], "lorebook_ids": [], "active_branch_id": None}

MESSAGE_ROLES = ("user", "assistant", "system")


def generate_id() -> str:
    """Generate a new record id."""
    return str(uuid.uuid4())


def now_ms() -> int:
    """Milliseconds since epoch, strictly increasing within this process.

    Messages in a branch are ordered by timestamp, so two rows written in the
    same millisecond must still sort in write order.
    """
    global _last_timestamp
    with _clock_lock:
        current = int(time.time() * 1000)
        if current <= _last_timestamp:
            current = _last_timestamp + 1
        _last_timestamp = current
        return current


@contextmanager
def get_connection():
    """Get a thread-safe database connection with context manager."""
    conn = getattr(_thread_local, 'connection', None)
    if conn is None or getattr(_thread_local, 'path', None) != DB_PATH:
        if conn is not None:
            conn.close()
        if DB_PATH != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(DB_PATH)), exist_ok=True)

        # Autocommit mode: transaction() issues BEGIN/COMMIT explicitly
        conn = sqlite3.connect(DB_PATH, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous = FULL")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA foreign_keys = ON")

        _thread_local.connection = conn
        _thread_local.path = DB_PATH
        _thread_local.depth = 0
        _thread_local.touched = set()

    try:
        yield conn
    except Exception:
        if _thread_local.depth == 0 and conn.in_transaction:
            conn.rollback()
        raise


def close_connection() -> None:
    """Close this thread's connection (next access reopens it)."""
    conn = getattr(_thread_local, 'connection', None)
    if conn is not None:
        conn.close()
    _thread_local.connection = None
    _thread_local.path = None
    _thread_local.depth = 0
    _thread_local.touched = set()


@contextmanager
def transaction():
    """Run a block as one atomic unit.

    Nested use joins the outermost transaction. The commit happens once, when
    the outermost block exits cleanly; any exception rolls the whole unit back
    and nothing from it becomes visible. Subscribers are notified only after
    the commit.
    """
    with get_connection() as conn:
        depth = _thread_local.depth
        if depth == 0:
            conn.execute("BEGIN IMMEDIATE")
            _thread_local.touched = set()
        _thread_local.depth = depth + 1
        try:
            yield conn
        except BaseException:
            _thread_local.depth = depth
            if depth == 0:
                conn.rollback()
                _thread_local.touched = set()
            raise
        _thread_local.depth = depth
        if depth == 0:
            conn.commit()
            touched = _thread_local.touched
            _thread_local.touched = set()
            _notify(touched)


def _touch(*tables: str) -> None:
    _thread_local.touched.update(tables)


# ============================================================================
# CHANGE NOTIFICATIONS
# ============================================================================

def subscribe(callback: Callable[[frozenset], None]) -> Callable[[frozenset], None]:
    """Register a callback receiving the set of tables changed by each commit."""
    _subscribers.append(callback)
    return callback


def unsubscribe(callback: Callable[[frozenset], None]) -> None:
    if callback in _subscribers:
        _subscribers.remove(callback)


def _notify(tables: set) -> None:
    if not tables:
        return
    changed = frozenset(tables)
    for callback in list(_subscribers):
        try:
            callback(changed)
        except Exception as e:
            logger.error(f"[DB] Change subscriber {callback!r} failed: {e}")


# ============================================================================
# SCHEMA
# ============================================================================

def init_db():
    """Initialize database tables if they don't exist."""
    with transaction() as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS personas (
                id TEXT PRIMARY KEY,
                name TEXT,
                in_chat_name TEXT,
                description TEXT,
                avatar TEXT,
                is_active INTEGER DEFAULT 0,
                lorebook_ids TEXT,
                created_at INTEGER
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS characters (
                id TEXT PRIMARY KEY,
                name TEXT,
                in_chat_name TEXT,
                description TEXT,
                avatar TEXT,
                init_message TEXT,
                scenario TEXT,
                lorebook_ids TEXT,
                created_at INTEGER
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS presets (
                id TEXT PRIMARY KEY,
                name TEXT,
                is_active INTEGER DEFAULT 0,
                model TEXT,
                pre_history_instructions TEXT,
                post_history_instructions TEXT,
                impersonation_prompt TEXT,
                temperature REAL,
                repetition_penalty REAL,
                frequency_penalty REAL,
                presence_penalty REAL,
                top_p REAL,
                top_k INTEGER,
                context_size INTEGER,
                max_new_token INTEGER,
                created_at INTEGER
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS lorebooks (
                id TEXT PRIMARY KEY,
                name TEXT,
                description TEXT,
                content TEXT,
                created_at INTEGER
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chats (
                id TEXT PRIMARY KEY,
                name TEXT,
                character_ids TEXT,
                lorebook_ids TEXT,
                active_branch_id TEXT,
                created_at INTEGER
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chat_branches (
                id TEXT PRIMARY KEY,
                chat_id TEXT NOT NULL,
                name TEXT,
                parent_branch_id TEXT,
                pivot_message_id TEXT,
                created_at INTEGER,
                FOREIGN KEY (chat_id) REFERENCES chats (id) ON DELETE CASCADE
            )
        """)

        # branch_id stays nullable: rows written before branching existed
        # are adopted by the chat's root branch on first access
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                chat_id TEXT NOT NULL,
                branch_id TEXT,
                role TEXT,
                name TEXT,
                content TEXT,
                timestamp INTEGER,
                avatar TEXT,
                FOREIGN KEY (chat_id) REFERENCES chats (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS app_settings (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_branches_chat ON chat_branches(chat_id, created_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_messages_branch ON messages(chat_id, branch_id, timestamp)")


def verify_database_health() -> bool:
    """Run SQLite's integrity check; False means the file needs attention."""
    try:
        with get_connection() as conn:
            result = conn.execute("PRAGMA integrity_check").fetchone()
            healthy = result is not None and result[0] == "ok"
            if not healthy:
                logger.error(f"[DB] Integrity check failed: {result[0] if result else 'no result'}")
            return healthy
    except sqlite3.Error as e:
        logger.error(f"[DB] Health check error: {e}")
        return False


# ============================================================================
# GENERIC ROW HELPERS
# ============================================================================

def _encode(field: str, value: Any) -> Any:
    if field in JSON_FIELDS:
        return json.dumps(list(value or []), ensure_ascii=False)
    if field in BOOL_FIELDS:
        return 1 if value else 0
    return value


def _decode_row(row: sqlite3.Row) -> Dict[str, Any]:
    record = {}
    for field in row.keys():
        value = row[field]
        if field in JSON_FIELDS:
            value = json.loads(value) if value else []
        elif field in BOOL_FIELDS:
            value = bool(value)
        record[field] = value
    return record


def _prepare(table: str, record: Dict[str, Any], defaults: Dict[str, Any]) -> Dict[str, Any]:
    prepared = {**defaults, **{k: v for k, v in record.items() if k in TABLE_COLUMNS[table]}}
    for key, value in defaults.items():
        if isinstance(value, list):
            prepared[key] = list(prepared.get(key) or [])
    if not prepared.get("id"):
        prepared["id"] = generate_id()
    if "created_at" in TABLE_COLUMNS[table] and not prepared.get("created_at"):
        prepared["created_at"] = now_ms()
    return prepared


def _put(table: str, record: Dict[str, Any]) -> None:
    columns = TABLE_COLUMNS[table]
    placeholders = ", ".join("?" for _ in columns)
    # Upsert rather than REPLACE: a REPLACE deletes the old row and would cascade to a chat's branches
    assignments = ", ".join(f"{col} = excluded.{col}" for col in columns if col != "id")
    with transaction() as conn:
        conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {assignments}",
            tuple(_encode(col, record.get(col)) for col in columns),
        )
        _touch(table)


def _get(table: str, record_id: str) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return _decode_row(row) if row else None


def _list(table: str, where: str = "", params: tuple = (), order_by: str = "created_at ASC, rowid ASC") -> List[Dict[str, Any]]:
    sql = f"SELECT * FROM {table}"
    if where:
        sql += f" WHERE {where}"
    sql += f" ORDER BY {order_by}"
    with get_connection() as conn:
        return [_decode_row(row) for row in conn.execute(sql, params).fetchall()]


def _update(table: str, record_id: str, changes: Dict[str, Any]) -> bool:
    fields = [k for k in changes if k in TABLE_COLUMNS[table] and k != "id"]
    if not fields:
        return _get(table, record_id) is not None
    assignments = ", ".join(f"{field} = ?" for field in fields)
    with transaction() as conn:
        cursor = conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            tuple(_encode(f, changes[f]) for f in fields) + (record_id,),
        )
        _touch(table)
        return cursor.rowcount > 0


def _delete(table: str, record_id: str) -> bool:
    with transaction() as conn:
        cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
        _touch(table)
        return cursor.rowcount > 0


def db_bulk_put(table: str, records: Iterable[Dict[str, Any]]) -> int:
    """Insert or replace many records of one table in a single transaction."""
    defaults = {
        "personas": PERSONA_DEFAULTS,
        "characters": CHARACTER_DEFAULTS,
        "presets": PRESET_DEFAULTS,
        "lorebooks": LOREBOOK_DEFAULTS,
        "chats": CHAT_DEFAULTS,
    }[table]
    count = 0
    with transaction():
        for record in records:
            _put(table, _prepare(table, record, defaults))
            count += 1
    return count


# ============================================================================
# PERSONA OPERATIONS
# ============================================================================

def db_get_all_personas() -> List[Dict[str, Any]]:
    return _list("personas")


def db_get_persona(persona_id: str) -> Optional[Dict[str, Any]]:
    return _get("personas", persona_id)


def db_save_persona(persona: Dict[str, Any]) -> Dict[str, Any]:
    """Insert or fully replace a persona; returns the stored record."""
    record = _prepare("personas", persona, PERSONA_DEFAULTS)
    _put("personas", record)
    return record


def db_update_persona(persona_id: str, changes: Dict[str, Any]) -> bool:
    return _update("personas", persona_id, changes)


def db_delete_persona(persona_id: str) -> bool:
    return _delete("personas", persona_id)


def db_get_active_persona() -> Optional[Dict[str, Any]]:
    active = _list("personas", "is_active = 1")
    return active[0] if active else None


def db_set_active_persona(persona_id: str) -> bool:
    return _set_single_active("personas", persona_id)


def db_deactivate_personas() -> None:
    with transaction() as conn:
        conn.execute("UPDATE personas SET is_active = 0 WHERE is_active = 1")
        _touch("personas")


# ============================================================================
# CHARACTER OPERATIONS
# ============================================================================

def db_get_all_characters() -> List[Dict[str, Any]]:
    return _list("characters")


def db_get_character(character_id: str) -> Optional[Dict[str, Any]]:
    return _get("characters", character_id)


def db_get_characters(character_ids: List[str]) -> List[Dict[str, Any]]:
    """Fetch characters by id, keeping the order of ``character_ids``."""
    if not character_ids:
        return []
    placeholders = ", ".join("?" for _ in character_ids)
    found = {c["id"]: c for c in _list("characters", f"id IN ({placeholders})", tuple(character_ids))}
    return [found[cid] for cid in character_ids if cid in found]


def db_save_character(character: Dict[str, Any]) -> Dict[str, Any]:
    record = _prepare("characters", character, CHARACTER_DEFAULTS)
    _put("characters", record)
    return record


def db_update_character(character_id: str, changes: Dict[str, Any]) -> bool:
    return _update("characters", character_id, changes)


def db_delete_character(character_id: str) -> bool:
    return _delete("characters", character_id)


# ============================================================================
# PRESET OPERATIONS
# ============================================================================

def db_get_all_presets() -> List[Dict[str, Any]]:
    return _list("presets")


def db_get_preset(preset_id: str) -> Optional[Dict[str, Any]]:
    return _get("presets", preset_id)


def db_save_preset(preset: Dict[str, Any]) -> Dict[str, Any]:
    record = _prepare("presets", preset, PRESET_DEFAULTS)
    _put("presets", record)
    return record


def db_update_preset(preset_id: str, changes: Dict[str, Any]) -> bool:
    return _update("presets", preset_id, changes)


def db_delete_preset(preset_id: str) -> bool:
    return _delete("presets", preset_id)


def db_get_active_preset() -> Optional[Dict[str, Any]]:
    active = _list("presets", "is_active = 1")
    return active[0] if active else None


def db_set_active_preset(preset_id: str) -> bool:
    return _set_single_active("presets", preset_id)


def db_deactivate_presets() -> None:
    with transaction() as conn:
        conn.execute("UPDATE presets SET is_active = 0 WHERE is_active = 1")
        _touch("presets")


def _set_single_active(table: str, record_id: str) -> bool:
    """Clear every active flag and set the chosen one in a single unit.

    Unknown ids leave the current active record untouched.
    """
    with transaction() as conn:
        exists = conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (record_id,)).fetchone()
        if not exists:
            return False
        conn.execute(f"UPDATE {table} SET is_active = CASE WHEN id = ? THEN 1 ELSE 0 END", (record_id,))
        _touch(table)
    logger.info(f"[DB] Activated {table[:-1]} {record_id}")
    return True


# ============================================================================
# LOREBOOK OPERATIONS
# ============================================================================

def db_get_all_lorebooks() -> List[Dict[str, Any]]:
    return _list("lorebooks")


def db_get_lorebook(lorebook_id: str) -> Optional[Dict[str, Any]]:
    return _get("lorebooks", lorebook_id)


def db_get_lorebooks(lorebook_ids: Iterable[str]) -> List[Dict[str, Any]]:
    ids = list(dict.fromkeys(lorebook_ids))
    if not ids:
        return []
    placeholders = ", ".join("?" for _ in ids)
    return _list("lorebooks", f"id IN ({placeholders})", tuple(ids))


def db_save_lorebook(lorebook: Dict[str, Any]) -> Dict[str, Any]:
    record = _prepare("lorebooks", lorebook, LOREBOOK_DEFAULTS)
    _put("lorebooks", record)
    return record


def db_update_lorebook(lorebook_id: str, changes: Dict[str, Any]) -> bool:
    return _update("lorebooks", lorebook_id, changes)


def db_delete_lorebook(lorebook_id: str) -> bool:
    """Delete a lorebook and strip its id from personas, characters and chats.

    The reference cleanup is best-effort per collection: a failure in one is
    logged and the others still run. Referencing records are never deleted.
    """
    deleted = _delete("lorebooks", lorebook_id)

    for table in ("personas", "characters", "chats"):
        try:
            _strip_lorebook_reference(table, lorebook_id)
        except sqlite3.Error as e:
            logger.error(f"[DB] Failed to remove lorebook {lorebook_id} from {table}: {e}")

    return deleted


def _strip_lorebook_reference(table: str, lorebook_id: str) -> int:
    changed = 0
    with transaction() as conn:
        rows = conn.execute(f"SELECT id, lorebook_ids FROM {table}").fetchall()
        for row in rows:
            ids = json.loads(row["lorebook_ids"]) if row["lorebook_ids"] else []
            if lorebook_id in ids:
                remaining = [i for i in ids if i != lorebook_id]
                conn.execute(
                    f"UPDATE {table} SET lorebook_ids = ? WHERE id = ?",
                    (json.dumps(remaining, ensure_ascii=False), row["id"]),
                )
                changed += 1
        if changed:
            _touch(table)
    return changed


# ============================================================================
# CHAT OPERATIONS
# ============================================================================

def db_get_all_chats() -> List[Dict[str, Any]]:
    return _list("chats", order_by="created_at DESC, rowid DESC")


def db_get_chat(chat_id: str) -> Optional[Dict[str, Any]]:
    return _get("chats", chat_id)


def db_create_chat(chat: Dict[str, Any], branch_name: Optional[str] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Create a chat together with its root branch, already active."""
    record = _prepare("chats", chat, CHAT_DEFAULTS)
    branch = {
        "id": record.get("active_branch_id") or generate_id(),
        "chat_id": record["id"],
        "name": branch_name or CONFIG["chat"]["main_branch_name"],
        "parent_branch_id": None,
        "pivot_message_id": None,
        "created_at": now_ms(),
    }
    record["active_branch_id"] = branch["id"]

    with transaction():
        _put("chats", record)
        db_add_branch(branch)

    logger.info(f"[DB] Created chat {record['id']} with root branch {branch['id']}")
    return record, branch


def db_save_chat(chat: Dict[str, Any]) -> Dict[str, Any]:
    record = _prepare("chats", chat, CHAT_DEFAULTS)
    _put("chats", record)
    return record


def db_update_chat(chat_id: str, changes: Dict[str, Any]) -> bool:
    return _update("chats", chat_id, changes)


def db_delete_chat(chat_id: str) -> bool:
    """Delete a chat; its branches and messages go with it."""
    return _delete("chats", chat_id)


# ============================================================================
# BRANCH OPERATIONS
# ============================================================================

def db_add_branch(branch: Dict[str, Any]) -> Dict[str, Any]:
    record = {
        "id": branch.get("id") or generate_id(),
        "chat_id": branch["chat_id"],
        "name": branch.get("name", ""),
        "parent_branch_id": branch.get("parent_branch_id"),
        "pivot_message_id": branch.get("pivot_message_id"),
        "created_at": branch.get("created_at") or now_ms(),
    }
    with transaction() as conn:
        conn.execute("""
            INSERT INTO chat_branches (id, chat_id, name, parent_branch_id, pivot_message_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, tuple(record[c] for c in TABLE_COLUMNS["chat_branches"]))
        _touch("chat_branches")
    return record


def db_get_branch(branch_id: str) -> Optional[Dict[str, Any]]:
    return _get("chat_branches", branch_id)


def db_get_chat_branches(chat_id: str) -> List[Dict[str, Any]]:
    """All branches of a chat, oldest first."""
    return _list("chat_branches", "chat_id = ?", (chat_id,))


def db_count_chat_branches(chat_id: str) -> int:
    with get_connection() as conn:
        return conn.execute("SELECT COUNT(*) FROM chat_branches WHERE chat_id = ?", (chat_id,)).fetchone()[0]


def db_update_branch(branch_id: str, changes: Dict[str, Any]) -> bool:
    return _update("chat_branches", branch_id, changes)


# ============================================================================
# MESSAGE OPERATIONS
# ============================================================================

def _prepare_message(message: Dict[str, Any]) -> Dict[str, Any]:
    role = message.get("role", "user")
    if role not in MESSAGE_ROLES:
        raise ValueError(f"Unknown message role: {role}")
    return {
        "id": message.get("id") or generate_id(),
        "chat_id": message["chat_id"],
        "branch_id": message.get("branch_id"),
        "role": role,
        "name": message.get("name", ""),
        "content": message.get("content", ""),
        "timestamp": message.get("timestamp") or now_ms(),
        "avatar": message.get("avatar"),
    }


def db_add_message(message: Dict[str, Any]) -> Dict[str, Any]:
    record = _prepare_message(message)
    with transaction() as conn:
        conn.execute("""
            INSERT INTO messages (id, chat_id, branch_id, role, name, content, timestamp, avatar)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, tuple(record[c] for c in TABLE_COLUMNS["messages"]))
        _touch("messages")
    return record


def db_bulk_add_messages(messages: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    records = [_prepare_message(m) for m in messages]
    if not records:
        return records
    with transaction() as conn:
        conn.executemany("""
            INSERT INTO messages (id, chat_id, branch_id, role, name, content, timestamp, avatar)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, [tuple(r[c] for c in TABLE_COLUMNS["messages"]) for r in records])
        _touch("messages")
    return records


def db_get_message(message_id: str) -> Optional[Dict[str, Any]]:
    return _get("messages", message_id)


def db_update_message(message_id: str, changes: Dict[str, Any]) -> bool:
    return _update("messages", message_id, changes)


def db_get_branch_messages(chat_id: str, branch_id: str) -> List[Dict[str, Any]]:
    """Messages of one branch ordered by timestamp (oldest first)."""
    return _list(
        "messages", "chat_id = ? AND branch_id = ?", (chat_id, branch_id),
        order_by="timestamp ASC, rowid ASC",
    )


def db_count_branch_messages(chat_id: str, branch_id: str) -> int:
    with get_connection() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM messages WHERE chat_id = ? AND branch_id = ?",
            (chat_id, branch_id),
        ).fetchone()[0]


def db_get_chat_messages(chat_id: str) -> List[Dict[str, Any]]:
    """Every message of a chat across all branches."""
    return _list("messages", "chat_id = ?", (chat_id,), order_by="timestamp ASC, rowid ASC")


def db_bulk_delete_messages(message_ids: Iterable[str]) -> int:
    ids = list(message_ids)
    if not ids:
        return 0
    with transaction() as conn:
        cursor = conn.executemany("DELETE FROM messages WHERE id = ?", [(i,) for i in ids])
        _touch("messages")
        return cursor.rowcount


def db_assign_orphan_messages(chat_id: str, branch_id: str) -> int:
    """Attach every message of a chat without a branch to ``branch_id``."""
    with transaction() as conn:
        cursor = conn.execute(
            "UPDATE messages SET branch_id = ? WHERE chat_id = ? AND branch_id IS NULL",
            (branch_id, chat_id),
        )
        if cursor.rowcount:
            _touch("messages")
        return cursor.rowcount


# ============================================================================
# APP SETTINGS
# ============================================================================

def db_get_setting(key: str) -> Optional[str]:
    """Stored value for ``key``, or None when the key was never set."""
    with get_connection() as conn:
        row = conn.execute("SELECT value FROM app_settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None


def db_set_setting(key: str, value: str) -> None:
    with transaction() as conn:
        conn.execute("INSERT OR REPLACE INTO app_settings (key, value) VALUES (?, ?)", (key, value))
        _touch("app_settings")


def db_delete_setting(key: str) -> bool:
    with transaction() as conn:
        cursor = conn.execute("DELETE FROM app_settings WHERE key = ?", (key,))
        _touch("app_settings")
        return cursor.rowcount > 0
