"""
Tests for system prompt assembly in companion/prompt_builder.py
"""

import random
import sys
import os
from datetime import datetime, timezone
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from companion.prompt_builder import (
    PromptBuilder, RESPONSE_FORMATS, WRITING_STYLES, character_image_description, chat_data_to_string,
    current_time_in_japanese, user_details_to_string,
)

CHAT = {
    "name": "Hana",
    "short_intro": "A cheerful barista",
    "system_prompt": "Be Hana.",
    "gender": "female",
    "nsfw": False,
    "tags": ["cafe", "cute"],
    "details_description": {
        "personality": {
            "personality": "cheerful",
            "hobbies": ["coffee", "music"],
            "reference_character": "Nami",
        },
    },
}


class TestCompletionSystemContent:
    """Tests for PromptBuilder.completion_system_content."""

    def _build(self, seed=3, **kwargs):
        builder = PromptBuilder(random.Random(seed), image_points_threshold=50)
        params = dict(chat_document=CHAT, chat_description="desc", current_time="1月1日 10:00",
                      language="english", user_points=100, subscription_status=True)
        params.update(kwargs)
        return builder.completion_system_content(**params)

    def test_same_seed_same_prompt(self):
        """Test that a seeded rng makes prompts reproducible."""
        assert self._build(seed=11) == self._build(seed=11)

    def test_style_and_format_come_from_tables(self):
        """Test that vibe and format lines come from the known tables."""
        prompt = self._build()
        assert any(f"# Your vibe right now: {style}" in prompt for style in WRITING_STYLES)
        assert any(fmt in prompt for fmt in RESPONSE_FORMATS)

    def test_affordable_images(self):
        """Test the points line for a user who can afford images."""
        prompt = self._build(user_points=50)
        assert "- User has 50 points, pics are good to go." in prompt
        assert "Premium user." in prompt

    def test_unaffordable_images(self):
        """Test the points line for a user below the image threshold."""
        prompt = self._build(user_points=49, subscription_status=False)
        assert "- User has 49 points, no pics until they get coins." in prompt
        assert "Free user." in prompt

    def test_nsfw_branch(self):
        """Test the SFW and NSFW content rules."""
        assert "Stay SFW" in self._build()
        assert "explicit" in self._build(chat_document={**CHAT, "nsfw": True})

    def test_upsell_section_only_when_given(self):
        """Test that the upsell section appears only when given and before Remember."""
        assert "# Premium Upsell" not in self._build()
        prompt = self._build(upsell_prompt="Go premium")
        assert "# Premium Upsell (this reply only):\n- Go premium" in prompt
        assert prompt.index("# Premium Upsell") < prompt.index("# Remember:")

    def test_language_line(self):
        """Test that the starting language is named."""
        assert "- Start the conversation in french." in self._build(language="french")


class TestApplyUserSettings:
    """Tests for PromptBuilder.apply_user_settings_to_prompt."""

    def test_relationship_and_character_context(self):
        """Test relationship and character context blocks from the document."""
        builder = PromptBuilder(random.Random(1))
        prompt = builder.apply_user_settings_to_prompt(
            "BASE", {**CHAT, "relationship": "friend", "chatPurpose": "Run a cafe"},
            {"occupation": "barista", "customInstructions": "  be brief  "})
        assert prompt.startswith("BASE\n# Relationship Context:\nYou are the user's close female friend.")
        assert "Occupation: You work as a barista." in prompt
        assert "Character Background: Run a cafe" in prompt
        assert "User's Special Instructions:   be brief  " in prompt

    def test_customization_overrides_document(self):
        """Test that a lover customization adds the NSFW relationship block."""
        builder = PromptBuilder(random.Random(1))
        prompt = builder.apply_user_settings_to_prompt("BASE", {**CHAT, "relationship": "friend"},
                                                       {"relationship": "lover"})
        assert "# NSFW Relationship Context:\nYou are in a lover relationship." in prompt

    def test_no_character_context_block_when_empty(self):
        """Test that no character block is added without character fields."""
        builder = PromptBuilder(random.Random(1))
        prompt = builder.apply_user_settings_to_prompt("BASE", {"gender": "male"})
        assert "# Character Context" not in prompt
        assert "caring male companion" in prompt

    def test_fail_open(self):
        """Test that an error in the relationship lookup leaves the prompt unchanged."""
        builder = PromptBuilder(random.Random(1))
        with patch("companion.prompt_builder.get_relationship_instruction", side_effect=KeyError("boom")):
            assert builder.apply_user_settings_to_prompt("BASE", CHAT) == "BASE"


class TestContextBlocks:
    """Tests for the goal, scenario, language and user blocks."""

    def test_goal_context(self):
        """Test the goal block and its empty case."""
        goal = {"goal_description": "Ask for a beach photo", "goal_type": "image request",
                "completion_condition": "user asks", "difficulty": "easy", "estimated_messages": 4,
                "target_phrase": "beach"}
        block = PromptBuilder.goal_context(goal)
        assert block.startswith("\n\n# Current Conversation Goal:\nGoal: Ask for a beach photo")
        assert "Target phrase to include: beach" in block
        assert "User should:" not in block
        assert PromptBuilder.goal_context(None) == ""

    def test_goal_status_hidden_when_completed(self):
        """Test that completed goals add no status block."""
        assert PromptBuilder.goal_status_context({"completed": True, "reason": "done"}) == ""
        assert "Status: halfway" in PromptBuilder.goal_status_context({"completed": False, "reason": "halfway"})

    def test_scenario_context(self):
        """Test the scenario block contents."""
        block = PromptBuilder.scenario_context({"scenario_title": "Rainy day", "scenario_description": "Stuck inside",
                                                "emotional_tone": "cozy", "conversation_direction": "talk",
                                                "system_prompt_addition": "Be cozy"}, "Hana")
        assert "you are Hana" in block
        assert "Title: Rainy day" in block
        assert block.endswith("Scenario Instructions:\nBe cozy")

    def test_language_block(self):
        """Test the language directive block for an unknown language."""
        assert PromptBuilder.language_block("klingon") == (
            "\n\n# Language Directive:\nStart responding in klingon. However, if the user writes in another "
            "language, naturally switch to their language and continue the conversation in that language.\n")

    def test_user_details_block(self):
        """Test that blank user details add nothing."""
        assert PromptBuilder.user_details_block("   ") == ""
        assert "Call me Taro." in PromptBuilder.user_details_block("Call me Taro.")

    def test_fill_points(self):
        """Test the userPoints placeholder substitution."""
        assert PromptBuilder.fill_points("You have {{userPoints}} pts", 30) == "You have 30 pts"


class TestDocumentRendering:
    """Tests for chat and user rendering helpers."""

    def test_chat_data_to_string(self):
        """Test the character sheet rendering."""
        text = chat_data_to_string(CHAT)
        assert text.startswith("Name: Hana\nShort Introduction: A cheerful barista\nInstructions: Be Hana.\n\n")
        assert "Hobbies: coffee, music" in text
        assert "Overall you act like Nami." in text
        assert text.endswith("Tags: cafe, cute")
        assert chat_data_to_string(None) == ""

    def test_user_details_regular(self):
        """Test user details for a regular profile."""
        user = {"nickname": "Taro", "gender": "male", "birthDate": {"year": 1990, "month": 4, "day": 2},
                "bio": "I like cats."}
        assert user_details_to_string(user) == "Call me Taro. I am a male. My birthday is 1990/4/2. I like cats."

    def test_user_details_persona(self):
        """Test user details for a custom persona."""
        persona = {"isCustomPersona": True, "name": "Kai", "short_intro": "A traveler"}
        assert user_details_to_string(persona) == (
            "Name: Kai\nAge Range: Not specified\nType: Custom Persona\nShort Introduction: A traveler")

    def test_user_details_image_model_and_temporary(self):
        """Test user details for image model characters and temporary users."""
        assert user_details_to_string({"imageModel": "x", "name": "Rin", "gender": "female"}) == \
            "My name is Rin. I am a female."
        assert user_details_to_string({"isTemporary": True, "nickname": "guest"}) == ""

    def test_character_image_description(self):
        """Test the character appearance summary."""
        doc = {"characterPrompt": "young woman", "details_description": {
            "hair": {"hairColor": "black"}, "face": {"eyeColor": "brown"}}}
        assert character_image_description(doc) == "young woman Eyes: brown, Hair Color: black"

    def test_current_time_in_japanese(self):
        """Test the Japanese date line in Tokyo time."""
        # 2025-01-06 is a Monday; 01:05 UTC is 10:05 in Tokyo
        now = datetime(2025, 1, 6, 1, 5, tzinfo=timezone.utc)
        assert current_time_in_japanese(now) == "1月6日月曜日 10:05"
