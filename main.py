# Forkline FastAPI app: branching roleplay chats
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
from typing import Dict, List, Optional, Any, Literal
from pydantic import BaseModel

from forkline.config_loader import CONFIG
from forkline.database import (
    init_db, verify_database_health,
    # Personas
    db_get_all_personas, db_get_persona, db_save_persona, db_update_persona, db_delete_persona,
    db_set_active_persona, db_deactivate_personas,
    # Characters
    db_get_all_characters, db_get_character, db_save_character, db_update_character, db_delete_character,
    # Presets
    db_get_all_presets, db_get_preset, db_save_preset, db_update_preset, db_delete_preset,
    db_set_active_preset, db_deactivate_presets,
    # Lorebooks
    db_get_all_lorebooks, db_get_lorebook, db_save_lorebook, db_update_lorebook, db_delete_lorebook,
    # Chats
    db_get_all_chats, db_get_chat, db_create_chat, db_update_chat, db_delete_chat,
)
from forkline.branches import get_branch_tree, get_navigation, list_branches, rename_branch
from forkline.conversation import ChatSession
from forkline.errors import ForklineError, ChatNotFound
from forkline.exchange import export_entities, export_filename, import_entities
from forkline.openrouter import get_api_key, set_api_key, clear_api_key

logging.basicConfig(
    level=getattr(logging, str(CONFIG["server"]["log_level"]).upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "configuration": 400,
    "structural": 409,
    "gateway": 502,
    "busy": 409,
    "import": 400,
}

# One session per open chat (single writer per chat)
sessions: Dict[str, ChatSession] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    if not verify_database_health():
        logger.error("[STARTUP] Database health check failed - app may not function correctly")
    logger.info(f"[STARTUP] Database ready at {CONFIG['database']['path']}")
    yield
    sessions.clear()


app = FastAPI(title="Forkline", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CONFIG["server"]["cors_origins"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ForklineError)
async def forkline_error_handler(request: Request, exc: ForklineError):
    status = 404 if isinstance(exc, ChatNotFound) else STATUS_BY_KIND.get(exc.kind, 400)
    return JSONResponse(status_code=status, content={"success": False, "error": str(exc), "kind": exc.kind})


def _failure(result: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=STATUS_BY_KIND.get(result.get("kind"), 400), content=result)


def _not_found(what: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"success": False, "error": f"{what} not found"})


def get_session(chat_id: str) -> ChatSession:
    session = sessions.get(chat_id)
    if session is None:
        if db_get_chat(chat_id) is None:
            raise ChatNotFound(chat_id)
        session = ChatSession(chat_id)
        sessions[chat_id] = session
    return session


def session_view(session: ChatSession) -> Dict[str, Any]:
    state = session.state
    return {
        "success": True,
        "chat": state.get("chat"),
        "persona": state.get("persona"),
        "preset": state.get("preset"),
        "characters": state.get("characters", []),
        "lorebooks": state.get("lorebooks", []),
        "branches": state.get("branches", []),
        "active_branch_id": state.get("active_branch_id"),
        "navigation": state.get("navigation"),
        "messages": state.get("messages", []),
        "selected_character_id": session.selected_character_id,
        "missing_requirements": session.missing_requirements(),
        "error_message": session.error_message,
        "is_sending": session.is_sending,
    }


# Models
class PersonaPayload(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    in_chat_name: Optional[str] = None
    description: Optional[str] = None
    avatar: Optional[str] = None
    lorebook_ids: Optional[List[str]] = None


class CharacterPayload(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    in_chat_name: Optional[str] = None
    description: Optional[str] = None
    avatar: Optional[str] = None
    init_message: Optional[str] = None
    scenario: Optional[str] = None
    lorebook_ids: Optional[List[str]] = None


class PresetPayload(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    model: Optional[str] = None
    pre_history_instructions: Optional[str] = None
    post_history_instructions: Optional[str] = None
    impersonation_prompt: Optional[str] = None
    temperature: Optional[float] = None
    repetition_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    context_size: Optional[int] = None
    max_new_token: Optional[int] = None


class LorebookPayload(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None


class ChatPayload(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    character_ids: Optional[List[str]] = None
    lorebook_ids: Optional[List[str]] = None


class SendRequest(BaseModel):
    content: str


class SelectCharacterRequest(BaseModel):
    character_id: str


class BranchCreateRequest(BaseModel):
    pivot_message_id: str


class BranchSwitchRequest(BaseModel):
    branch_id: str


class BranchNavigateRequest(BaseModel):
    direction: Literal["previous", "next"]


class BranchRenameRequest(BaseModel):
    name: str


class ApiKeyRequest(BaseModel):
    api_key: str


def _fields(payload: BaseModel) -> Dict[str, Any]:
    return payload.model_dump(exclude_unset=True)


# ============================================================================
# PERSONAS
# ============================================================================

@app.get("/api/personas")
async def list_personas():
    return db_get_all_personas()


@app.get("/api/personas/{persona_id}")
async def get_persona(persona_id: str):
    persona = db_get_persona(persona_id)
    return persona if persona else _not_found("Persona")


@app.post("/api/personas")
async def save_persona(payload: PersonaPayload):
    fields = _fields(payload)
    existing = db_get_persona(fields["id"]) if fields.get("id") else None
    if existing:
        fields["is_active"] = existing["is_active"]
        fields["created_at"] = existing["created_at"]
    return {"success": True, "persona": db_save_persona(fields)}


@app.patch("/api/personas/{persona_id}")
async def update_persona(persona_id: str, payload: PersonaPayload):
    if not db_update_persona(persona_id, _fields(payload)):
        return _not_found("Persona")
    return {"success": True, "persona": db_get_persona(persona_id)}


@app.delete("/api/personas/{persona_id}")
async def delete_persona(persona_id: str):
    return {"success": db_delete_persona(persona_id)}


@app.post("/api/personas/{persona_id}/activate")
async def activate_persona(persona_id: str):
    if not db_set_active_persona(persona_id):
        return _not_found("Persona")
    return {"success": True}


@app.post("/api/personas/deactivate")
async def deactivate_personas():
    db_deactivate_personas()
    return {"success": True}


# ============================================================================
# CHARACTERS
# ============================================================================

@app.get("/api/characters")
async def list_characters():
    return db_get_all_characters()


@app.get("/api/characters/{character_id}")
async def get_character(character_id: str):
    character = db_get_character(character_id)
    return character if character else _not_found("Character")


@app.post("/api/characters")
async def save_character(payload: CharacterPayload):
    fields = _fields(payload)
    existing = db_get_character(fields["id"]) if fields.get("id") else None
    if existing:
        fields["created_at"] = existing["created_at"]
    return {"success": True, "character": db_save_character(fields)}


@app.patch("/api/characters/{character_id}")
async def update_character(character_id: str, payload: CharacterPayload):
    if not db_update_character(character_id, _fields(payload)):
        return _not_found("Character")
    return {"success": True, "character": db_get_character(character_id)}


@app.delete("/api/characters/{character_id}")
async def delete_character(character_id: str):
    return {"success": db_delete_character(character_id)}


# ============================================================================
# PRESETS
# ============================================================================

@app.get("/api/presets")
async def list_presets():
    return db_get_all_presets()


@app.get("/api/presets/{preset_id}")
async def get_preset(preset_id: str):
    preset = db_get_preset(preset_id)
    return preset if preset else _not_found("Preset")


@app.post("/api/presets")
async def save_preset(payload: PresetPayload):
    fields = _fields(payload)
    existing = db_get_preset(fields["id"]) if fields.get("id") else None
    if existing:
        fields["is_active"] = existing["is_active"]
        fields["created_at"] = existing["created_at"]
    return {"success": True, "preset": db_save_preset(fields)}


@app.patch("/api/presets/{preset_id}")
async def update_preset(preset_id: str, payload: PresetPayload):
    if not db_update_preset(preset_id, _fields(payload)):
        return _not_found("Preset")
    return {"success": True, "preset": db_get_preset(preset_id)}


@app.delete("/api/presets/{preset_id}")
async def delete_preset(preset_id: str):
    return {"success": db_delete_preset(preset_id)}


@app.post("/api/presets/{preset_id}/activate")
async def activate_preset(preset_id: str):
    if not db_set_active_preset(preset_id):
        return _not_found("Preset")
    return {"success": True}


@app.post("/api/presets/deactivate")
async def deactivate_presets():
    db_deactivate_presets()
    return {"success": True}


# ============================================================================
# LOREBOOKS
# ============================================================================

@app.get("/api/lorebooks")
async def list_lorebooks():
    return db_get_all_lorebooks()


@app.get("/api/lorebooks/{lorebook_id}")
async def get_lorebook(lorebook_id: str):
    lorebook = db_get_lorebook(lorebook_id)
    return lorebook if lorebook else _not_found("Lorebook")


@app.post("/api/lorebooks")
async def save_lorebook(payload: LorebookPayload):
    fields = _fields(payload)
    existing = db_get_lorebook(fields["id"]) if fields.get("id") else None
    if existing:
        fields["created_at"] = existing["created_at"]
    return {"success": True, "lorebook": db_save_lorebook(fields)}


@app.patch("/api/lorebooks/{lorebook_id}")
async def update_lorebook(lorebook_id: str, payload: LorebookPayload):
    if not db_update_lorebook(lorebook_id, _fields(payload)):
        return _not_found("Lorebook")
    return {"success": True, "lorebook": db_get_lorebook(lorebook_id)}


@app.delete("/api/lorebooks/{lorebook_id}")
async def delete_lorebook(lorebook_id: str):
    """Delete a lorebook and detach it from personas, characters and chats."""
    return {"success": db_delete_lorebook(lorebook_id)}


# ============================================================================
# CHATS
# ============================================================================

@app.get("/api/chats")
async def list_chats():
    return db_get_all_chats()


@app.post("/api/chats")
async def create_chat(payload: ChatPayload):
    fields = _fields(payload)
    if not (fields.get("name") or "").strip():
        return JSONResponse(status_code=400, content={"success": False, "error": "Name is required"})
    if not fields.get("character_ids"):
        return JSONResponse(status_code=400, content={"success": False, "error": "At least one character must be selected"})
    chat, branch = db_create_chat(fields)
    return {"success": True, "chat": chat, "branch": branch}


@app.get("/api/chats/{chat_id}")
async def get_chat(chat_id: str):
    chat = db_get_chat(chat_id)
    return chat if chat else _not_found("Chat")


@app.patch("/api/chats/{chat_id}")
async def update_chat(chat_id: str, payload: ChatPayload):
    fields = _fields(payload)
    fields.pop("id", None)
    if not db_update_chat(chat_id, fields):
        return _not_found("Chat")
    return {"success": True, "chat": db_get_chat(chat_id)}


@app.delete("/api/chats/{chat_id}")
async def delete_chat(chat_id: str):
    sessions.pop(chat_id, None)
    return {"success": db_delete_chat(chat_id)}


# ============================================================================
# CONVERSATION
# ============================================================================

@app.post("/api/chats/{chat_id}/open")
async def open_chat(chat_id: str):
    """Load a chat for display: repairs its active branch and seeds the opening line."""
    session = get_session(chat_id)
    session.open()
    return session_view(session)


@app.get("/api/chats/{chat_id}/state")
async def chat_state(chat_id: str):
    session = get_session(chat_id)
    session.refresh()
    return session_view(session)


@app.post("/api/chats/{chat_id}/select-character")
async def select_character(chat_id: str, request: SelectCharacterRequest):
    session = get_session(chat_id)
    if not session.state:
        session.refresh()
    if not session.select_character(request.character_id):
        return _not_found("Character")
    return session_view(session)


@app.post("/api/chats/{chat_id}/messages")
async def send_message(chat_id: str, request: SendRequest):
    session = get_session(chat_id)
    if not session.state:
        session.refresh()
    result = await session.send(request.content)
    if not result["success"]:
        return _failure(result)
    return result


@app.post("/api/chats/{chat_id}/messages/{message_id}/regenerate")
async def regenerate_message(chat_id: str, message_id: str):
    session = get_session(chat_id)
    if not session.state:
        session.refresh()
    result = await session.regenerate(message_id)
    if not result["success"]:
        return _failure(result)
    return result


@app.delete("/api/chats/{chat_id}/messages/{message_id}")
async def delete_messages_from(chat_id: str, message_id: str):
    """Delete a message and everything after it in the active branch."""
    deleted = get_session(chat_id).delete_from(message_id)
    return {"success": True, "deleted": deleted}


# ============================================================================
# BRANCHES
# ============================================================================

@app.get("/api/chats/{chat_id}/branches")
async def get_chat_branches(chat_id: str):
    if db_get_chat(chat_id) is None:
        raise ChatNotFound(chat_id)
    return {
        "success": True,
        "branches": list_branches(chat_id),
        "navigation": get_navigation(chat_id),
        "tree": get_branch_tree(chat_id),
    }


@app.post("/api/chats/{chat_id}/branches")
async def fork_chat(chat_id: str, request: BranchCreateRequest):
    result = get_session(chat_id).create_branch(request.pivot_message_id)
    if not result["success"]:
        return _failure(result)
    return result


@app.put("/api/chats/{chat_id}/branches/active")
async def switch_branch(chat_id: str, request: BranchSwitchRequest):
    switched = get_session(chat_id).switch_branch(request.branch_id)
    return {"success": switched, "navigation": get_navigation(chat_id)}


@app.post("/api/chats/{chat_id}/branches/navigate")
async def navigate_branches(chat_id: str, request: BranchNavigateRequest):
    branch = get_session(chat_id).navigate(request.direction)
    return {"success": branch is not None, "branch": branch, "navigation": get_navigation(chat_id)}


@app.put("/api/branches/{branch_id}/name")
async def rename_branch_endpoint(branch_id: str, request: BranchRenameRequest):
    try:
        renamed = rename_branch(branch_id, request.name)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"success": False, "error": str(e)})
    if not renamed:
        return _not_found("Branch")
    return {"success": True, "name": request.name.strip()}


# ============================================================================
# SETTINGS
# ============================================================================

@app.get("/api/settings/api-key")
async def api_key_status():
    # Never echo the key itself
    return {"configured": get_api_key() is not None}


@app.put("/api/settings/api-key")
async def save_api_key(request: ApiKeyRequest):
    set_api_key(request.api_key)
    return {"success": True, "configured": get_api_key() is not None}


@app.delete("/api/settings/api-key")
async def delete_api_key():
    return {"success": clear_api_key()}


# ============================================================================
# IMPORT / EXPORT
# ============================================================================

@app.get("/api/export/{entity}")
async def export_endpoint(entity: str):
    envelope = export_entities(entity)
    return JSONResponse(
        content=envelope,
        headers={"Content-Disposition": f'attachment; filename="{export_filename(entity)}"'},
    )


@app.post("/api/import/{entity}")
async def import_endpoint(entity: str, request: Request):
    body = await request.body()
    written = import_entities(entity, body.decode("utf-8", errors="replace"))
    return {"success": True, "imported": written}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=CONFIG["server"]["host"], port=CONFIG["server"]["port"])
