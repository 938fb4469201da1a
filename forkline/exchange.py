"""
Forkline Import/Export

JSON envelope for moving records between installations:

    {"entity": "presets", "version": 1, "exportedAt": "<ISO-8601>", "items": [...]}

A bare JSON array is accepted on import for files written by older versions.
"""

import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from forkline.database import (
    transaction, db_bulk_put, generate_id,
    db_get_all_personas, db_get_all_characters, db_get_all_presets, db_get_all_lorebooks,
    db_set_active_persona, db_set_active_preset,
)
from forkline.errors import ImportFormatError

logger = logging.getLogger(__name__)

EXPORT_VERSION = 1


def build_export_envelope(entity: str, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "entity": entity,
        "version": EXPORT_VERSION,
        "exportedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "items": items,
    }


def export_filename(entity: str, when: Optional[datetime] = None) -> str:
    """``{entity}-YYYYMMDDHHMMSS.json``"""
    when = when or datetime.now()
    return f"{entity}-{when.strftime('%Y%m%d%H%M%S')}.json"


def parse_imported_entities(entity: str, text: str) -> List[Dict[str, Any]]:
    """Extract the item list from an export file.

    Raises:
        ImportFormatError: invalid JSON, an envelope for another entity, or no item list
    """
    try:
        payload = json.loads(text)
    except ValueError as e:
        raise ImportFormatError("Selected file is not valid JSON.") from e

    if isinstance(payload, list):
        return payload

    if isinstance(payload, dict):
        declared = payload.get("entity")
        if declared and declared != entity:
            raise ImportFormatError(f"Import data is for '{declared}', expected '{entity}'.")
        if isinstance(payload.get("items"), list):
            return payload["items"]

    raise ImportFormatError("Unsupported import structure. Expected an array or an object with an 'items' array.")


# ============================================================================
# SANITIZERS
# ============================================================================

def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _id_candidate(item: Dict[str, Any]) -> str:
    return _text(item.get("id")) or generate_id()


def _id_list(value: Any) -> List[str]:
    return [v for v in value if isinstance(v, str)] if isinstance(value, list) else []


def _number(value: Any, fallback: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    return float(value) if math.isfinite(value) else fallback


def _count(value: Any, fallback: int) -> int:
    return max(0, int(round(_number(value, fallback))))


def sanitize_persona(item: Dict[str, Any]) -> Dict[str, Any]:
    name = _text(item.get("name"))
    return {
        "id": _id_candidate(item),
        "name": name or "Unnamed Persona",
        "in_chat_name": _text(item.get("in_chat_name")) or name or "User",
        "description": item.get("description") or "",
        "avatar": item.get("avatar"),
        "is_active": bool(item.get("is_active")),
        "lorebook_ids": _id_list(item.get("lorebook_ids")),
    }


def sanitize_character(item: Dict[str, Any]) -> Dict[str, Any]:
    name = _text(item.get("name"))
    return {
        "id": _id_candidate(item),
        "name": name or "Unnamed Character",
        "in_chat_name": _text(item.get("in_chat_name")) or name or "Character",
        "avatar": item.get("avatar"),
        "description": item.get("description") or "",
        "init_message": item.get("init_message") or "",
        "scenario": item.get("scenario") or "",
        "lorebook_ids": _id_list(item.get("lorebook_ids")),
    }


def sanitize_preset(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": _id_candidate(item),
        "is_active": bool(item.get("is_active")),
        "name": _text(item.get("name")) or "Unnamed Preset",
        "model": _text(item.get("model")) or "unknown-model",
        "pre_history_instructions": item.get("pre_history_instructions") or "",
        "post_history_instructions": item.get("post_history_instructions") or "",
        "impersonation_prompt": item.get("impersonation_prompt") or "",
        "temperature": _number(item.get("temperature"), 0.7),
        "repetition_penalty": _number(item.get("repetition_penalty"), 1),
        "frequency_penalty": _number(item.get("frequency_penalty"), 0),
        "presence_penalty": _number(item.get("presence_penalty"), 0),
        "top_p": _number(item.get("top_p"), 1),
        "top_k": _count(item.get("top_k"), 40),
        "context_size": _count(item.get("context_size"), 2048),
        "max_new_token": _count(item.get("max_new_token"), 2048),
    }


def sanitize_lorebook(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": _id_candidate(item),
        "name": _text(item.get("name")) or "Untitled Lorebook",
        "description": item.get("description") or "",
        "content": item.get("content") or "",
    }


# entity name -> (table, sanitizer, exporter)
ENTITIES: Dict[str, tuple] = {
    "personas": ("personas", sanitize_persona, db_get_all_personas),
    "characters": ("characters", sanitize_character, db_get_all_characters),
    "presets": ("presets", sanitize_preset, db_get_all_presets),
    "lorebooks": ("lorebooks", sanitize_lorebook, db_get_all_lorebooks),
}


# Imported files may mark several records active; only the first one wins
ACTIVATORS = {
    "personas": db_set_active_persona,
    "presets": db_set_active_preset,
}


def _resolve_entity(entity: str) -> tuple:
    if entity not in ENTITIES:
        raise ImportFormatError(f"Unknown entity type: {entity}")
    return ENTITIES[entity]


def dedupe_ids(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Give a fresh id to every repeat of an id; repeats also lose ``is_active``."""
    seen = {}
    for record in records:
        if record["id"] in seen:
            record["id"] = generate_id()
            if "is_active" in record:
                record["is_active"] = False
        seen[record["id"]] = record
    return list(seen.values())


def import_entities(entity: str, text: str) -> int:
    """Parse, sanitize and store an export file; returns the number of records written."""
    table, sanitize, _ = _resolve_entity(entity)
    raw_items = parse_imported_entities(entity, text)
    if not raw_items:
        raise ImportFormatError(f"Import file does not contain any {entity}.")

    records = dedupe_ids([sanitize(item if isinstance(item, dict) else {}) for item in raw_items])
    activate = ACTIVATORS.get(table)
    first_active = next((r["id"] for r in records if r.get("is_active")), None)
    for record in records:
        if "is_active" in record:
            record["is_active"] = False

    with transaction():
        written = db_bulk_put(table, records)
        if activate and first_active:
            activate(first_active)
    logger.info(f"[IMPORT] Imported {written} {entity}")
    return written


def export_entities(entity: str) -> Dict[str, Any]:
    _, _, exporter = _resolve_entity(entity)
    return build_export_envelope(entity, exporter())
