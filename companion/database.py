"""
Companion Database Module
Centralized MongoDB operations for users, characters, conversations and settings.

Collections:
- users            : accounts (points, subscriptionStatus, lang, preferredChatLanguage)
- chats            : character documents (and custom personas)
- userChat         : one conversation per (user, character) with the message transcript
- chatToolSettings : per-user / per-(user, chat) overrides
- chatLastMessage  : last assistant message cache per (user, chat)
- gallery          : character image galleries
- chat_goal        : goal completion counters
- tasks            : image generation tasks
- points_history   : point movements
- chatProviders / chatModels : LLM provider catalog (see providers.py)
"""

import logging
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient, ASCENDING
from pymongo.database import Database

from companion.transcript import merge_messages, remove_content_between_stars

logger = logging.getLogger(__name__)

IdLike = Union[str, ObjectId]


# ============================================================================
# CONNECTION
# ============================================================================

def connect(config: Dict[str, Any], client: Optional[MongoClient] = None) -> Database:
    """Open (or reuse) a MongoClient and return the configured database."""
    mongo_cfg = config.get("mongo", {})
    if client is None:
        client = MongoClient(mongo_cfg.get("uri", "mongodb://127.0.0.1:27017"), tz_aware=False)
    return client[mongo_cfg.get("database", "companion")]


def init_indexes(db: Database) -> None:
    """Create the lookup indexes used by the pipeline."""
    db["userChat"].create_index([("userId", ASCENDING), ("chatId", ASCENDING)])
    db["chatToolSettings"].create_index([("userId", ASCENDING), ("chatId", ASCENDING)])
    db["chatLastMessage"].create_index([("chatId", ASCENDING), ("userId", ASCENDING)])
    db["chatModels"].create_index([("key", ASCENDING)])
    db["chatProviders"].create_index([("name", ASCENDING)])
    db["tasks"].create_index([("userId", ASCENDING), ("status", ASCENDING)])
    logger.info("[DB] Indexes ensured")


def verify_database_health(db: Database) -> bool:
    try:
        db.command("ping")
        return True
    except Exception as e:
        logger.error(f"[DB] Health check failed: {e}")
        return False


# ============================================================================
# IDS
# ============================================================================

def is_valid_object_id(value: Any) -> bool:
    if isinstance(value, ObjectId):
        return True
    return isinstance(value, str) and ObjectId.is_valid(value)


def to_object_id(value: IdLike) -> ObjectId:
    """Convert to ObjectId; raises ValueError for malformed ids."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError) as e:
        raise ValueError(f"Invalid ObjectId: {value!r}") from e


# ============================================================================
# READS
# ============================================================================

def db_get_user(db: Database, user_id: IdLike) -> Optional[Dict[str, Any]]:
    return db["users"].find_one({"_id": to_object_id(user_id)})


def db_get_user_chat(db: Database, user_id: IdLike, user_chat_id: IdLike) -> Optional[Dict[str, Any]]:
    return db["userChat"].find_one({
        "userId": to_object_id(user_id),
        "_id": to_object_id(user_chat_id),
    })


def db_get_chat(db: Database, chat_id: IdLike) -> Optional[Dict[str, Any]]:
    return db["chats"].find_one({"_id": to_object_id(chat_id)})


def db_get_persona(db: Database, persona_id: IdLike) -> Optional[Dict[str, Any]]:
    """Personas live in the chats collection. Returns None when missing or malformed."""
    try:
        persona = db["chats"].find_one({"_id": to_object_id(persona_id)})
    except ValueError as e:
        logger.warning(f"[DB] Persona lookup failed: {e}")
        return None
    if not persona:
        logger.info(f"[DB] Persona {persona_id} not found")
    return persona


def db_get_prompt(db: Database, prompt_id: IdLike) -> Optional[Dict[str, Any]]:
    try:
        return db["prompts"].find_one({"_id": to_object_id(prompt_id)})
    except ValueError:
        return None


def db_get_tasks(db: Database, status: Optional[str], user_id: IdLike) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"userId": to_object_id(user_id)}
    if status:
        query["status"] = status
    return list(db["tasks"].find(query))


def db_get_gallery(db: Database, chat_id: IdLike) -> Optional[Dict[str, Any]]:
    return db["gallery"].find_one({"chatId": to_object_id(chat_id)})


# ============================================================================
# CHAT / CONVERSATION WRITES
# ============================================================================

def db_increment_messages_count(db: Database, chat_id: IdLike) -> None:
    db["chats"].update_one({"_id": to_object_id(chat_id)}, {"$inc": {"messagesCount": 1}})


def db_update_chat_last_message(db: Database, chat_id: IdLike, user_id: IdLike,
                                content: str, updated_at: str) -> None:
    db["chatLastMessage"].update_one(
        {"chatId": to_object_id(chat_id), "userId": to_object_id(user_id)},
        {"$set": {"lastMessage": {
            "role": "assistant",
            "content": remove_content_between_stars(content),
            "updatedAt": updated_at,
        }}},
        upsert=True,
    )


def db_update_user_chat(db: Database, user_id: IdLike, user_chat_id: IdLike,
                        new_messages: List[Dict[str, Any]], updated_at: str) -> int:
    """
    Merge new_messages into the stored transcript and write it back.

    Read-modify-write: callers must hold the conversation lock
    (background.KeyedLock) to avoid lost updates.

    Returns:
        Number of user/assistant messages that were appended (not replaced)
    """
    query = {"userId": to_object_id(user_id), "_id": to_object_id(user_chat_id)}
    user_chat = db["userChat"].find_one(query)
    if not user_chat:
        raise LookupError("User chat not found")

    combined, added = merge_messages(user_chat.get("messages") or [], new_messages)
    db["userChat"].update_one(query, {"$set": {"messages": combined, "updatedAt": updated_at}})

    if added and user_chat.get("chatId"):
        db["user_chat_stats"].update_one(
            {"userId": to_object_id(user_id), "chatId": user_chat["chatId"]},
            {"$inc": {"messageCount": added}, "$set": {"userChatId": to_object_id(user_chat_id)}},
            upsert=True,
        )
    return added


def db_append_user_chat_message(db: Database, user_id: IdLike, user_chat_id: IdLike,
                                message: Dict[str, Any], updated_at: str) -> bool:
    """Atomically append one message to the transcript."""
    result = db["userChat"].update_one(
        {"userId": to_object_id(user_id), "_id": to_object_id(user_chat_id)},
        {"$push": {"messages": message}, "$set": {"updatedAt": updated_at}},
    )
    return result.modified_count > 0


def db_set_user_chat_fields(db: Database, user_chat_id: IdLike, fields: Dict[str, Any]) -> None:
    db["userChat"].update_one({"_id": to_object_id(user_chat_id)}, {"$set": fields})


def db_push_gallery_image_once(db: Database, user_id: IdLike, user_chat_id: IdLike,
                               image_message: Dict[str, Any], updated_at: str) -> bool:
    """
    Append an image message unless one with the same imageId is already present.

    The duplicate check is part of the update filter, so two concurrent calls
    insert at most once. $ne on an array field would match any element that
    differs, so $not + $elemMatch is required here.
    """
    result = db["userChat"].update_one(
        {
            "userId": to_object_id(user_id),
            "_id": to_object_id(user_chat_id),
            "messages": {"$not": {"$elemMatch": {"imageId": image_message["imageId"]}}},
        },
        {"$push": {"messages": image_message}, "$set": {"updatedAt": updated_at}},
    )
    return result.modified_count > 0


def db_increment_goal_completion(db: Database, user_id: IdLike, chat_id: IdLike) -> None:
    db["chat_goal"].update_one(
        {"userId": to_object_id(user_id), "chatId": to_object_id(chat_id)},
        {"$inc": {"completionCount": 1}},
        upsert=True,
    )


def db_record_upsell_event(db: Database, user_chat_id: IdLike, events: List[Dict[str, Any]]) -> None:
    db["userChat"].update_one({"_id": to_object_id(user_chat_id)}, {"$set": {"upsellEvents": events}})


