"""
Tests for chat suggestions (defaults table, visibility rule and the service)
"""

import os
import sys

import pytest
from bson import ObjectId

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from companion.chat_settings import get_user_chat_tool_settings, save_user_chat_tool_settings
from companion.suggestions import SuggestionService, get_default_suggestions, should_show_suggestions

from conftest import make_chat, make_user, make_user_chat

CONVERSATION = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello!"}]


def _body(user, chat, user_chat, **extra):
    return {"userId": str(user["_id"]), "chatId": str(chat["_id"]), "userChatId": str(user_chat["_id"]), **extra}


class TestDefaults:
    """Tests for get_default_suggestions."""

    def test_english_companion(self):
        """Test the English companion defaults."""
        assert get_default_suggestions("companion", "english") == [
            "Tell me more about that", "That's interesting", "What's your opinion?"]

    def test_language_code_is_accepted(self):
        """Test that a language code selects the same table as its name."""
        assert get_default_suggestions("friend", "ja")[0] == "面白い話だね！"

    def test_french(self):
        """Test the French wife defaults."""
        assert get_default_suggestions("wife", "french")[2] == "Comment s'est passée ta journée ?"

    def test_unknown_language_and_type(self):
        """Test that unknown language and type fall back to English companion."""
        assert get_default_suggestions("pirate", "klingon") == get_default_suggestions("companion", "english")

    def test_returns_a_fresh_list(self):
        """Test that callers cannot mutate the defaults table."""
        first = get_default_suggestions("companion", "english")
        first.append("extra")
        assert len(get_default_suggestions("companion", "english")) == 3


class TestShouldShowSuggestions:
    def test_after_assistant_message(self):
        """Test that suggestions show after an assistant message."""
        assert should_show_suggestions(CONVERSATION, {})

    def test_disabled(self):
        """Test that disableSuggestions hides them."""
        assert not should_show_suggestions(CONVERSATION, {"disableSuggestions": True})

    def test_too_short(self):
        """Test that a single message is too short."""
        assert not should_show_suggestions(CONVERSATION[-1:], {})

    def test_last_message_from_user(self):
        """Test that a trailing user message hides them."""
        assert not should_show_suggestions(list(reversed(CONVERSATION)), None)


@pytest.mark.asyncio
class TestSuggestionService:
    """Tests for SuggestionService."""

    async def test_missing_parameters(self, services):
        """Test that missing ids are rejected."""
        result = await SuggestionService(services).suggest({"userId": str(ObjectId())})
        assert result.status_code == 400
        assert result.body["success"] is False

    async def test_invalid_ids(self, services):
        """Test that malformed ids are rejected."""
        result = await SuggestionService(services).suggest({"userId": "x", "chatId": "y", "userChatId": "z"})
        assert result.status_code == 400
        assert result.body["error"] == "Invalid ObjectId format"

    async def test_not_found_chain(self, services):
        """Test the not found errors for user, character and conversation."""
        service = SuggestionService(services)
        user = make_user(services.db)
        chat = make_chat(services.db)

        missing_user = await service.suggest({"userId": str(ObjectId()), "chatId": str(chat["_id"]),
                                              "userChatId": str(ObjectId())})
        assert (missing_user.status_code, missing_user.body["error"]) == (404, "User not found")

        missing_chat = await service.suggest({"userId": str(user["_id"]), "chatId": str(ObjectId()),
                                              "userChatId": str(ObjectId())})
        assert missing_chat.body["error"] == "Chat/Character not found"

        missing_user_chat = await service.suggest({"userId": str(user["_id"]), "chatId": str(chat["_id"]),
                                                   "userChatId": str(ObjectId())})
        assert missing_user_chat.body["error"] == "User chat not found"

    async def test_hidden_when_last_message_is_from_user(self, services):
        """Test that no generation happens when the user spoke last."""
        user = make_user(services.db)
        chat = make_chat(services.db)
        user_chat = make_user_chat(services.db, user, chat, messages=CONVERSATION[:1])

        result = await SuggestionService(services).suggest(_body(user, chat, user_chat))

        assert result.body == {"success": True, "showSuggestions": False, "suggestions": []}
        services.classifiers.generate_chat_suggestions.assert_not_awaited()

    async def test_generated_suggestions(self, services):
        """Test generated suggestions with the user's language and stored preset."""
        user = make_user(services.db, lang="fr")
        chat = make_chat(services.db)
        user_chat = make_user_chat(services.db, user, chat, messages=CONVERSATION, suggestionPreset="flirty")
        services.classifiers.generate_chat_suggestions.return_value = ["a", "b", "c"]

        result = await SuggestionService(services).suggest(_body(user, chat, user_chat))

        assert result.status_code == 200
        assert result.body["suggestions"] == ["a", "b", "c"]
        assert result.body["suggestionPreset"] == "flirty"
        assert result.body["relationshipType"] == "companion"
        args = services.classifiers.generate_chat_suggestions.await_args.args
        assert args[3] == "french"
        assert args[4] == "flirty"

    async def test_body_preset_wins(self, services):
        """Test that the request preset overrides the stored one."""
        user = make_user(services.db)
        chat = make_chat(services.db)
        user_chat = make_user_chat(services.db, user, chat, messages=CONVERSATION, suggestionPreset="flirty")

        result = await SuggestionService(services).suggest(_body(user, chat, user_chat, suggestionPreset="romantic"))

        assert result.body["suggestionPreset"] == "romantic"

    async def test_fallback_to_defaults(self, services):
        """Test the defaults when generation returns nothing."""
        user = make_user(services.db)
        chat = make_chat(services.db)
        user_chat = make_user_chat(services.db, user, chat, messages=CONVERSATION)
        save_user_chat_tool_settings(services.db, user["_id"], {"relationshipType": "friend"})

        result = await SuggestionService(services).suggest(_body(user, chat, user_chat))

        assert result.body["showSuggestions"] is True
        assert result.body["suggestions"] == get_default_suggestions("friend", "english")

    async def test_classifier_error_is_500(self, services):
        """Test that a generator error gives the 500 body."""
        user = make_user(services.db)
        chat = make_chat(services.db)
        user_chat = make_user_chat(services.db, user, chat, messages=CONVERSATION)
        services.classifiers.generate_chat_suggestions.side_effect = RuntimeError("boom")

        result = await SuggestionService(services).suggest(_body(user, chat, user_chat))

        assert result.status_code == 500
        assert result.body == {"success": False, "error": "Internal server error while generating suggestions"}

    async def test_send_appends_message(self, services):
        """Test that sending stores a trimmed suggestion message."""
        user = make_user(services.db)
        chat = make_chat(services.db)
        user_chat = make_user_chat(services.db, user, chat, messages=CONVERSATION)

        result = await SuggestionService(services).send(_body(user, chat, user_chat, message="  Tell me more  "))

        assert result.body["message"] == "Suggested message sent successfully"
        assert result.body["messageData"]["content"] == "Tell me more"
        stored = services.db["userChat"].find_one({"_id": user_chat["_id"]})["messages"]
        assert stored[-1]["suggestion"] is True
        assert len(stored) == 3

    async def test_send_requires_message(self, services):
        """Test that sending requires a message."""
        user = make_user(services.db)
        chat = make_chat(services.db)
        user_chat = make_user_chat(services.db, user, chat)
        result = await SuggestionService(services).send(_body(user, chat, user_chat))
        assert result.status_code == 400

    async def test_send_unknown_user_chat(self, services):
        """Test that sending to a missing conversation gives 404."""
        user = make_user(services.db)
        result = await SuggestionService(services).send(
            {"userId": str(user["_id"]), "chatId": str(ObjectId()), "userChatId": str(ObjectId()), "message": "x"})
        assert result.status_code == 404

    async def test_update_preferences(self, services):
        """Test saving preferences per chat and per user."""
        user = make_user(services.db)
        chat = make_chat(services.db)
        service = SuggestionService(services)

        result = await service.update_preferences(
            {"userId": str(user["_id"]), "chatId": str(chat["_id"]), "disableSuggestions": True,
             "suggestionPreset": "Flirty"})
        assert result.status_code == 200

        settings = get_user_chat_tool_settings(services.db, user["_id"], chat["_id"])
        assert settings["disableSuggestions"] is True
        assert settings["suggestionPreset"] == "flirty"

        await service.update_preferences({"userId": str(user["_id"]), "disableSuggestions": False})
        assert get_user_chat_tool_settings(services.db, user["_id"])["disableSuggestions"] is False
        assert services.db["chatToolSettings"].count_documents({}) == 2

    async def test_update_preferences_requires_boolean(self, services):
        """Test that disableSuggestions must be a boolean."""
        result = await SuggestionService(services).update_preferences(
            {"userId": str(ObjectId()), "disableSuggestions": "yes"})
        assert result.status_code == 400
