"""
Tests for system instruction and payload composition in forkline/prompt_builder.py
"""

import pytest

from forkline.errors import NoPendingUserTurn
from forkline.prompt_builder import (
    compose, compose_system_instruction, build_conversational_history,
    build_other_characters_block, build_lorebook_block, generation_parameters,
)
from forkline.placeholders import create_placeholder_resolver


PRESET = {
    "name": "Default",
    "model": "openrouter/test-model",
    "pre_history_instructions": "Stay in character as {{char}}.",
    "post_history_instructions": "Keep replies short for {{user}}.",
    "impersonation_prompt": "",
    "temperature": 0.8,
    "repetition_penalty": 1.1,
    "frequency_penalty": 0.2,
    "presence_penalty": 0.1,
    "top_p": 0.9,
    "top_k": 40,
    "context_size": 4096,
    "max_new_token": 300,
}

ARIA = {
    "id": "c-aria", "name": "Aria Vale", "in_chat_name": "Aria",
    "description": "A bard who sings to {{user}}.", "scenario": "A tavern.",
    "init_message": "Hi {{user}}!",
}
BRAM = {"id": "c-bram", "name": "Bram", "in_chat_name": "", "description": "The innkeeper."}
SAM = {"id": "p-sam", "name": "Sam", "in_chat_name": "Sam", "description": "A traveller meeting {{char}}."}


class TestComposeSystemInstruction:
    """Tests for compose_system_instruction."""

    def test_no_preset_uses_fallback(self):
        """Test the generic prompt is used when no preset is active."""
        assert compose_system_instruction(None, SAM, [ARIA], ARIA) == "You are a helpful AI assistant."

    def test_block_order(self):
        """Test blocks appear in their fixed order."""
        lore = [{"name": "World", "description": "Setting", "content": "Magic is rare."}]
        preset = {**PRESET, "impersonation_prompt": "Write as {{char}}."}

        text = compose_system_instruction(preset, SAM, [ARIA, BRAM], ARIA, lore)

        markers = [
            "Pre-history instructions:",
            'You are roleplaying as "Aria"',
            "Other characters in this chat:",
            'The user persona is "Sam"',
            "Impersonation prompt:",
            "Post-history instructions:",
            "Relevant lorebooks:",
            "Apply an implicit repetition penalty of 1.1.",
        ]
        positions = [text.index(marker) for marker in markers]
        assert positions == sorted(positions)

    def test_placeholders_resolved_in_blocks(self):
        text = compose_system_instruction(PRESET, SAM, [ARIA], ARIA)

        assert "Stay in character as Aria." in text
        assert "Keep replies short for Sam." in text
        assert "A bard who sings to Sam." in text
        assert "A traveller meeting Aria." in text
        assert "{{" not in text

    def test_character_block_lists_internal_name(self):
        text = compose_system_instruction(PRESET, None, [ARIA], ARIA)

        assert 'You are roleplaying as "Aria" (internal name: Aria Vale).' in text
        assert "Initial message guidance: Hi You!" in text

    def test_empty_blocks_skipped(self):
        preset = {**PRESET, "pre_history_instructions": "  ", "post_history_instructions": ""}

        text = compose_system_instruction(preset, None, [ARIA], ARIA)

        assert "Pre-history" not in text
        assert "Post-history" not in text
        assert "user persona" not in text
        assert "\n\n\n" not in text

    def test_repetition_penalty_zero_still_emitted(self):
        text = compose_system_instruction({**PRESET, "repetition_penalty": 0}, None, [ARIA], ARIA)
        assert text.endswith("Apply an implicit repetition penalty of 0.")

    def test_repetition_penalty_missing_omitted(self):
        text = compose_system_instruction({**PRESET, "repetition_penalty": None}, None, [ARIA], ARIA)
        assert "repetition penalty" not in text


class TestBlocks:

    def test_other_characters_exclude_responder(self):
        resolve = create_placeholder_resolver("Aria", "Sam")
        block = build_other_characters_block([ARIA, BRAM], ARIA, resolve)

        assert block == "Other characters in this chat:\nBram: The innkeeper."

    def test_single_character_has_no_other_block(self):
        resolve = create_placeholder_resolver("Aria", "Sam")
        assert build_other_characters_block([ARIA], ARIA, resolve) == ""

    def test_lorebook_entries_separated(self):
        resolve = create_placeholder_resolver("Aria", "Sam")
        block = build_lorebook_block([
            {"name": "World", "description": "", "content": "Magic is rare."},
            {"name": "Cities", "description": "Places", "content": "Port {{user}}"},
        ], resolve)

        assert block == "Relevant lorebooks:\nWorld\nMagic is rare.\n\nCities\nSummary: Places\nPort Sam"


class TestConversationalHistory:

    def test_system_records_excluded(self):
        history = [
            {"role": "assistant", "content": "Hi Sam!", "name": "Aria"},
            {"role": "user", "content": "Hello", "name": "Sam"},
            {"role": "system", "content": "Failed to fetch a response: timeout", "name": "System"},
            {"role": "user", "content": "Still there?", "name": "Sam"},
        ]

        turns = build_conversational_history(history)

        assert [t["content"] for t in turns] == ["Hi Sam!", "Hello", "Still there?"]

    def test_last_turn_must_be_user(self):
        with pytest.raises(NoPendingUserTurn):
            build_conversational_history([
                {"role": "user", "content": "Hello", "name": "Sam"},
                {"role": "assistant", "content": "Hi", "name": "Aria"},
            ])

    def test_empty_history_rejected(self):
        with pytest.raises(NoPendingUserTurn):
            build_conversational_history([])

    def test_trailing_failure_record_does_not_hide_user_turn(self):
        turns = build_conversational_history([
            {"role": "user", "content": "Hello", "name": "Sam"},
            {"role": "system", "content": "Failed to fetch a response: boom", "name": "System"},
        ])
        assert turns[-1]["role"] == "user"


class TestCompose:

    def test_payload_starts_with_system_instruction(self):
        history = [{"role": "user", "content": "Hello", "name": "Sam"}]

        payload = compose(PRESET, SAM, [ARIA], ARIA, [], history)

        assert payload["messages"][0] == {"role": "system", "content": payload["system_instruction"]}
        assert payload["messages"][1] == {"role": "user", "content": "Hello", "name": "Sam"}

    def test_generation_parameters_from_preset(self):
        assert generation_parameters(PRESET) == {
            "temperature": 0.8,
            "top_p": 0.9,
            "frequency_penalty": 0.2,
            "presence_penalty": 0.1,
            "max_tokens": 300,
        }
