"""
Prompt Composer

Builds the system instruction and the message payload sent to the model.

System instruction blocks, in order (empty blocks are skipped, blocks are
separated by one blank line):
- Block 1: preset pre-history instructions
- Block 2: role-play directive for the responding character
- Block 3: the other characters of the chat
- Block 4: the user persona
- Block 5: preset impersonation prompt
- Block 6: preset post-history instructions
- Block 7: attached lorebooks
- Block 8: repetition penalty directive
"""

from typing import Any, Callable, Dict, List, Optional

from forkline.config_loader import CONFIG
from forkline.errors import NoPendingUserTurn
from forkline.placeholders import character_display_name, persona_display_name, resolver_for

CONVERSATIONAL_ROLES = ("user", "assistant")


def fallback_system_prompt() -> str:
    return CONFIG["chat"]["fallback_system_prompt"]


def _format_number(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def _trimmed(text: Optional[str]) -> str:
    return (text or "").strip()


def build_character_block(character: Dict[str, Any], resolve: Callable[[Optional[str]], str]) -> str:
    return (
        f'You are roleplaying as "{character_display_name(character)}" '
        f'(internal name: {character.get("name", "")}).\n'
        f'Description: {resolve(character.get("description"))}\n'
        f'Scenario: {resolve(character.get("scenario"))}\n'
        f'Initial message guidance: {resolve(character.get("init_message"))}'
    )


def build_other_characters_block(characters: List[Dict[str, Any]],
                                 selected_character: Optional[Dict[str, Any]],
                                 resolve: Callable[[Optional[str]], str]) -> str:
    if not selected_character or len(characters) < 2:
        return ""
    others = [
        f"{character_display_name(c)}: {resolve(c.get('description'))}"
        for c in characters if c.get("id") != selected_character.get("id")
    ]
    if not others:
        return ""
    return "Other characters in this chat:\n" + "\n".join(others)


def build_persona_block(persona: Optional[Dict[str, Any]], resolve: Callable[[Optional[str]], str]) -> str:
    if not persona:
        return ""
    return (
        f'The user persona is "{persona_display_name(persona)}".\n'
        f'Description: {resolve(persona.get("description"))}'
    )


def build_lorebook_block(lorebooks: List[Dict[str, Any]], resolve: Callable[[Optional[str]], str]) -> str:
    if not lorebooks:
        return ""
    entries = []
    for lorebook in lorebooks:
        lines = []
        if _trimmed(lorebook.get("description")):
            lines.append(f"Summary: {resolve(lorebook.get('description'))}")
        content = resolve(lorebook.get("content")).strip()
        if content:
            lines.append(content)
        entries.append(f"{lorebook.get('name', '')}\n" + "\n".join(lines))
    return "Relevant lorebooks:\n" + "\n\n".join(entries)


def compose_system_instruction(preset: Optional[Dict[str, Any]],
                               persona: Optional[Dict[str, Any]] = None,
                               characters: Optional[List[Dict[str, Any]]] = None,
                               selected_character: Optional[Dict[str, Any]] = None,
                               lorebooks: Optional[List[Dict[str, Any]]] = None) -> str:
    """Assemble the system instruction; without a preset the generic fallback is used."""
    if not preset:
        return fallback_system_prompt()

    characters = characters or []
    resolve = resolver_for(selected_character, persona)
    parts = []

    if _trimmed(preset.get("pre_history_instructions")):
        parts.append(f"Pre-history instructions:\n{resolve(_trimmed(preset['pre_history_instructions']))}")

    if selected_character:
        parts.append(build_character_block(selected_character, resolve))

    parts.append(build_other_characters_block(characters, selected_character, resolve))
    parts.append(build_persona_block(persona, resolve))

    if _trimmed(preset.get("impersonation_prompt")):
        parts.append(f"Impersonation prompt:\n{resolve(_trimmed(preset['impersonation_prompt']))}")

    if _trimmed(preset.get("post_history_instructions")):
        parts.append(f"Post-history instructions:\n{resolve(_trimmed(preset['post_history_instructions']))}")

    parts.append(build_lorebook_block(lorebooks or [], resolve))

    if preset.get("repetition_penalty") is not None:
        parts.append(f"Apply an implicit repetition penalty of {_format_number(preset['repetition_penalty'])}.")

    joined = "\n\n".join(part.strip() for part in parts if part and part.strip())
    return joined or fallback_system_prompt()


def build_conversational_history(history: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """User/assistant turns only; system failure records never reach the model.

    Raises:
        NoPendingUserTurn: if nothing is left or the last turn is not the user's
    """
    turns = [
        {"role": m["role"], "content": m.get("content", ""), "name": m.get("name", "")}
        for m in history if m.get("role") in CONVERSATIONAL_ROLES
    ]
    if not turns or turns[-1]["role"] != "user":
        raise NoPendingUserTurn()
    return turns


def compose(preset: Optional[Dict[str, Any]],
            persona: Optional[Dict[str, Any]],
            characters: List[Dict[str, Any]],
            selected_character: Optional[Dict[str, Any]],
            lorebooks: List[Dict[str, Any]],
            history: List[Dict[str, Any]]) -> Dict[str, Any]:
    """System instruction plus the ordered payload handed to the model gateway."""
    turns = build_conversational_history(history)
    system_instruction = compose_system_instruction(preset, persona, characters, selected_character, lorebooks)
    return {
        "system_instruction": system_instruction,
        "messages": [{"role": "system", "content": system_instruction}] + turns,
    }


def generation_parameters(preset: Dict[str, Any]) -> Dict[str, Any]:
    """Sampling parameters taken from a preset."""
    return {
        "temperature": preset.get("temperature"),
        "top_p": preset.get("top_p"),
        "frequency_penalty": preset.get("frequency_penalty"),
        "presence_penalty": preset.get("presence_penalty"),
        "max_tokens": preset.get("max_new_token"),
    }
