"""
Chat tool settings

Per-user and per-(user, chat) overrides stored in `chatToolSettings`.
Resolution order: chat-specific record, then the user-level record (no
chatId), then the built-in defaults from data/default_chat_settings.json.
Stored records are always merged over the defaults.
"""

import json
import logging
import os
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Optional

from pymongo.database import Database

from companion.database import is_valid_object_id, to_object_id
from companion.providers import ProviderRegistry

logger = logging.getLogger(__name__)

_DEFAULTS_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "default_chat_settings.json")

with open(_DEFAULTS_PATH, "r", encoding="utf-8") as _f:
    DEFAULT_CHAT_SETTINGS = MappingProxyType(json.load(_f))

_RECORD_FIELDS = ("_id", "userId", "chatId", "createdAt", "updatedAt")


def _defaults() -> Dict[str, Any]:
    return dict(DEFAULT_CHAT_SETTINGS)


def _merge(record: Dict[str, Any]) -> Dict[str, Any]:
    settings = _defaults()
    settings.update({k: v for k, v in record.items() if k not in _RECORD_FIELDS})
    return settings


def get_user_chat_tool_settings(db: Database, user_id: Any, chat_id: Any = None) -> Dict[str, Any]:
    """Resolved settings for a user (and optionally a chat). Never raises."""
    if not user_id or not is_valid_object_id(user_id):
        logger.warning(f"[SETTINGS] Invalid userId provided: {user_id!r}")
        return _defaults()

    collection = db["chatToolSettings"]
    try:
        if chat_id and is_valid_object_id(chat_id):
            chat_settings = collection.find_one({
                "userId": to_object_id(user_id),
                "chatId": to_object_id(chat_id),
            })
            if chat_settings:
                return _merge(chat_settings)

        user_settings = collection.find_one({
            "userId": to_object_id(user_id),
            "chatId": {"$exists": False},
        })
        if user_settings:
            return _merge(user_settings)
    except Exception as e:
        logger.error(f"[SETTINGS] Error fetching settings: {e}")
    return _defaults()


def save_user_chat_tool_settings(db: Database, user_id: Any, updates: Dict[str, Any],
                                 chat_id: Any = None) -> Dict[str, Any]:
    """
    Upsert a settings record. With chat_id the chat-specific record is
    written, otherwise the user-level one.

    Raises:
        ValueError: malformed user or chat id
    """
    query: Dict[str, Any] = {"userId": to_object_id(user_id)}
    if chat_id:
        query["chatId"] = to_object_id(chat_id)
    else:
        query["chatId"] = {"$exists": False}

    fields = {k: v for k, v in updates.items() if k not in _RECORD_FIELDS}
    now = datetime.utcnow()
    collection = db["chatToolSettings"]
    existing = collection.find_one(query)
    if existing:
        collection.update_one({"_id": existing["_id"]}, {"$set": {**fields, "updatedAt": now}})
    else:
        record = {"userId": query["userId"], **fields, "createdAt": now, "updatedAt": now}
        if chat_id:
            record["chatId"] = query["chatId"]
        collection.insert_one(record)
    return get_user_chat_tool_settings(db, user_id, chat_id)


def get_preferred_chat_language(db: Database, user_id: Any, chat_id: Any = None) -> str:
    """Settings first, then the user's profile; '' when neither is set."""
    settings = get_user_chat_tool_settings(db, user_id, chat_id)
    if settings.get("preferredChatLanguage"):
        return settings["preferredChatLanguage"]

    if user_id and is_valid_object_id(user_id):
        user = db["users"].find_one({"_id": to_object_id(user_id)})
        if user and user.get("preferredChatLanguage"):
            return user["preferredChatLanguage"]
    return ""


def get_auto_image_generation_setting(db: Database, user_id: Any, chat_id: Any = None) -> bool:
    settings = get_user_chat_tool_settings(db, user_id, chat_id)
    value = settings.get("autoImageGeneration")
    return DEFAULT_CHAT_SETTINGS["autoImageGeneration"] if value is None else bool(value)


def get_user_min_images(db: Database, user_id: Any, chat_id: Any = None) -> int:
    settings = get_user_chat_tool_settings(db, user_id, chat_id)
    try:
        return int(settings.get("minImages") or DEFAULT_CHAT_SETTINGS["minImages"])
    except (TypeError, ValueError):
        return DEFAULT_CHAT_SETTINGS["minImages"]


def get_user_selected_model(db: Database, registry: ProviderRegistry, user_id: Any, chat_id: Any = None) -> str:
    """Selected model key, else the first free catalog model, else 'openai'."""
    selected = get_user_chat_tool_settings(db, user_id, chat_id).get("selectedModel")
    if selected:
        return selected
    for key, model in registry.get_available_models_formatted().items():
        if model.get("category") != "premium":
            return key
    return "openai"


def get_user_premium_status(db: Database, user_id: Any) -> bool:
    if not user_id or not is_valid_object_id(user_id):
        return False
    user = db["users"].find_one({"_id": to_object_id(user_id)})
    return bool(user and user.get("subscriptionStatus") == "active")


def get_user_chat_customizations(db: Database, user_id: Any, chat_id: Any) -> Optional[Dict[str, Any]]:
    """Per-conversation character customizations stored on the userChat document."""
    if not (user_id and chat_id and is_valid_object_id(user_id) and is_valid_object_id(chat_id)):
        return None
    user_chat = db["userChat"].find_one({
        "$or": [
            {"userId": to_object_id(user_id), "chatId": to_object_id(chat_id)},
            {"userId": to_object_id(user_id), "chatId": str(chat_id)},
        ]
    })
    return (user_chat or {}).get("userCustomizations") or None
