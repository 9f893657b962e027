"""
Chat suggestions: three short replies the user can send with one tap.

Generated by the suggestions classifier after an assistant message, with a
static per-language fallback table when generation fails.
"""

import logging
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, List, Optional

from companion.chat_settings import get_preferred_chat_language, get_user_chat_tool_settings
from companion.database import (
    db_append_user_chat_message, db_get_persona, db_get_user, db_get_user_chat,
    is_valid_object_id, to_object_id,
)
from companion.languages import get_language_name
from companion.outcome import ApiResponse, api_error
from companion.prompt_builder import chat_data_to_string, user_details_to_string
from companion.services import Services
from companion.transcript import tokyo_timestamp

logger = logging.getLogger(__name__)

DEFAULT_SUGGESTIONS = MappingProxyType({
    'ja': MappingProxyType({
        'companion': ("それについてもっと教えて", "興味深いですね", "あなたの意見は？"),
        'friend': ("面白い話だね！", "今度一緒にやろう", "他に何かある？"),
        'wife': ("君のことが大好き", "一緒にいると幸せ", "今日はどうだった？"),
        'husband': ("君のことが大好き", "一緒にいると幸せ", "何か手伝えることある？"),
        'stepmom': ("ありがとう", "心配してくれてありがとう", "今日は楽しかった"),
        'first_date': ("これ面白いね", "もっと教えてほしい", "一緒にいると楽しい"),
    }),
    'en': MappingProxyType({
        'companion': ("Tell me more about that", "That's interesting", "What's your opinion?"),
        'friend': ("That's a fun story!", "Let's do that together", "What else is going on?"),
        'wife': ("I love you so much", "You make me happy", "How was your day?"),
        'husband': ("I love you so much", "You mean everything to me", "Can I help with anything?"),
        'stepmom': ("Thank you so much", "I appreciate you caring", "That was a great day"),
        'first_date': ("That's really interesting", "Tell me more", "I'm having a great time"),
    }),
    'fr': MappingProxyType({
        'companion': ("Raconte-moi en plus", "C'est intéressant", "Qu'en penses-tu ?"),
        'friend': ("C'est une histoire amusante !", "Faisons ça ensemble", "Quoi d'autre se passe ?"),
        'wife': ("Je t'aime tellement", "Tu me rends heureuse", "Comment s'est passée ta journée ?"),
        'husband': ("Je t'aime tellement", "Tu es tout pour moi", "Je peux t'aider ?"),
        'stepmom': ("Merci beaucoup", "J'apprécie ton soutien", "C'était une belle journée"),
        'first_date': ("C'est vraiment intéressant", "Raconte-moi plus", "Je m'amuse beaucoup"),
    }),
})


def _suggestion_language(language: Optional[str]) -> str:
    name = str(language or '').lower()
    if len(name) == 2:
        name = get_language_name(name)
    if name == 'japanese':
        return 'ja'
    if name == 'french':
        return 'fr'
    return 'en'


def get_default_suggestions(relationship_type: Optional[str], language: Optional[str],
                            gender: str = 'female') -> List[str]:
    table = DEFAULT_SUGGESTIONS[_suggestion_language(language)]
    return list(table.get(relationship_type or 'companion') or table['companion'])


def should_show_suggestions(messages: List[Dict[str, Any]], settings: Optional[Dict[str, Any]]) -> bool:
    if (settings or {}).get('disableSuggestions') is True:
        return False
    if len(messages or []) < 2:
        return False
    return messages[-1].get('role') == 'assistant'


def _missing(message: str) -> ApiResponse:
    return api_error(400, message, success=False)


class SuggestionService:
    def __init__(self, services: Services):
        self.services = services

    async def suggest(self, body: Dict[str, Any]) -> ApiResponse:
        db = self.services.db
        user_id, chat_id, user_chat_id = body.get('userId'), body.get('chatId'), body.get('userChatId')
        if not user_id or not chat_id or not user_chat_id:
            return _missing('Missing required parameters: userId, chatId, userChatId')
        if not all(is_valid_object_id(v) for v in (user_id, chat_id, user_chat_id)):
            return _missing('Invalid ObjectId format')

        try:
            user = db_get_user(db, user_id)
            if not user:
                return api_error(404, 'User not found', success=False)
            chat_document = db_get_persona(db, chat_id)
            if not chat_document:
                return api_error(404, 'Chat/Character not found', success=False)
            user_chat = db_get_user_chat(db, user_id, user_chat_id)
            if not user_chat:
                return api_error(404, 'User chat not found', success=False)

            settings = get_user_chat_tool_settings(db, user_id, chat_id)
            messages = user_chat.get('messages') or []
            if not should_show_suggestions(messages, settings):
                return ApiResponse(200, {'success': True, 'showSuggestions': False, 'suggestions': []})

            language = (get_preferred_chat_language(db, user_id, chat_id)
                        or (get_language_name(user.get('lang')) if user.get('lang') else '')
                        or 'japanese')
            preset = (body.get('suggestionPreset') or user_chat.get('suggestionPreset')
                      or settings.get('suggestionPreset') or 'neutral')
            relationship_type = settings.get('relationshipType') or 'companion'

            suggestions = await self.services.classifiers.generate_chat_suggestions(
                chat_data_to_string(chat_document), user_details_to_string(user), messages,
                language, preset, relationship_type)
            if not suggestions:
                logger.warning(f"[SUGGESTIONS] Generation failed for {user_chat_id}, using defaults")
                suggestions = get_default_suggestions(relationship_type, language, chat_document.get('gender'))

            return ApiResponse(200, {
                'success': True,
                'showSuggestions': True,
                'suggestions': suggestions,
                'relationshipType': relationship_type,
                'suggestionPreset': preset,
            })
        except Exception as e:
            logger.exception(f"[SUGGESTIONS] Error: {e}")
            return api_error(500, 'Internal server error while generating suggestions', success=False)

    async def send(self, body: Dict[str, Any]) -> ApiResponse:
        db = self.services.db
        user_id, chat_id, user_chat_id = body.get('userId'), body.get('chatId'), body.get('userChatId')
        message = body.get('message')
        if not user_id or not chat_id or not user_chat_id or not message:
            return _missing('Missing required parameters: userId, chatId, userChatId, message')
        if not all(is_valid_object_id(v) for v in (user_id, chat_id, user_chat_id)):
            return _missing('Invalid ObjectId format')

        try:
            if not db_get_user_chat(db, user_id, user_chat_id):
                return api_error(404, 'User chat not found', success=False)
            new_message = {
                'role': 'user',
                'content': str(message).strip(),
                'timestamp': tokyo_timestamp(),
                'suggestion': True,
            }
            async with self.services.locks.hold(user_chat_id):
                db_append_user_chat_message(db, user_id, user_chat_id, new_message, new_message['timestamp'])
            return ApiResponse(200, {
                'success': True,
                'message': 'Suggested message sent successfully',
                'messageData': new_message,
            })
        except Exception as e:
            logger.exception(f"[SUGGESTIONS] Send error: {e}")
            return api_error(500, 'Internal server error while sending suggestion', success=False)

    async def update_preferences(self, body: Dict[str, Any]) -> ApiResponse:
        db = self.services.db
        user_id, chat_id = body.get('userId'), body.get('chatId')
        disable = body.get('disableSuggestions')
        if not user_id or not isinstance(disable, bool):
            return _missing('Missing required parameters: userId, disableSuggestions (boolean)')
        if not is_valid_object_id(user_id) or (chat_id and not is_valid_object_id(chat_id)):
            return _missing('Invalid ObjectId format')

        try:
            update: Dict[str, Any] = {'disableSuggestions': disable, 'updatedAt': datetime.utcnow()}
            if body.get('suggestionPreset'):
                update['suggestionPreset'] = str(body['suggestionPreset']).lower()
            query: Dict[str, Any] = {'userId': to_object_id(user_id)}
            query['chatId'] = to_object_id(chat_id) if chat_id else {'$exists': False}
            db['chatToolSettings'].update_one(query, {'$set': update}, upsert=True)
            return ApiResponse(200, {'success': True, 'message': 'Suggestion preferences updated successfully'})
        except Exception as e:
            logger.exception(f"[SUGGESTIONS] Preferences error: {e}")
            return api_error(500, 'Internal server error while updating preferences', success=False)
