"""
Placeholder substitution for character/persona templates.

``{{char}}`` becomes the responding character's display name and ``{{user}}``
the active persona's display name.
"""

from typing import Any, Callable, Dict, Optional

DEFAULT_CHARACTER_NAME = "Assistant"
DEFAULT_USER_NAME = "You"


def normalize_name(value: Optional[str], fallback: str = "") -> str:
    return (value or "").strip() or fallback


def create_placeholder_resolver(character_name: Optional[str] = None,
                                user_name: Optional[str] = None) -> Callable[[Optional[str]], str]:
    """Build a resolver bound to the given names (blank names use the defaults)."""
    character = normalize_name(character_name, DEFAULT_CHARACTER_NAME)
    user = normalize_name(user_name, DEFAULT_USER_NAME)

    def resolve(text: Optional[str]) -> str:
        if not text:
            return ""
        return text.replace("{{char}}", character).replace("{{user}}", user)

    return resolve


def resolve_placeholders(text: Optional[str], character_name: Optional[str] = None,
                         user_name: Optional[str] = None) -> str:
    return create_placeholder_resolver(character_name, user_name)(text)


def character_display_name(character: Optional[Dict[str, Any]]) -> str:
    """In-chat name, then name, then "Assistant"."""
    if not character:
        return DEFAULT_CHARACTER_NAME
    return (normalize_name(character.get("in_chat_name"))
            or normalize_name(character.get("name"))
            or DEFAULT_CHARACTER_NAME)


def persona_display_name(persona: Optional[Dict[str, Any]]) -> str:
    """In-chat name, then name, then "You"."""
    if not persona:
        return DEFAULT_USER_NAME
    return (normalize_name(persona.get("in_chat_name"))
            or normalize_name(persona.get("name"))
            or DEFAULT_USER_NAME)


def resolver_for(character: Optional[Dict[str, Any]], persona: Optional[Dict[str, Any]]) -> Callable[[Optional[str]], str]:
    return create_placeholder_resolver(character_display_name(character), persona_display_name(persona))
