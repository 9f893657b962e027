"""
Tests for database operations in companion/database.py
"""

import os
import sys

import mongomock
import pytest
from bson import ObjectId

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from companion.database import (
    connect, db_append_user_chat_message, db_get_persona, db_get_prompt, db_get_tasks,
    db_increment_goal_completion, db_push_gallery_image_once,
    db_update_chat_last_message, db_update_user_chat, init_indexes, is_valid_object_id, to_object_id,
    verify_database_health,
)

from conftest import make_chat, make_user, make_user_chat


class TestConnection:
    """Tests for connection handling."""

    def test_connect_uses_configured_database(self):
        """Test that connect selects the database named in config."""
        client = mongomock.MongoClient()
        db = connect({"mongo": {"database": "companion_x"}}, client=client)
        assert db.name == "companion_x"

    def test_health_and_indexes(self, db):
        """Test the health ping and the userChat compound index."""
        assert verify_database_health(db)
        init_indexes(db)
        assert "userId_1_chatId_1" in db["userChat"].index_information()


class TestIds:
    def test_valid_ids(self):
        """Test ObjectId validation for objects, strings and junk."""
        oid = ObjectId()
        assert is_valid_object_id(oid)
        assert is_valid_object_id(str(oid))
        assert not is_valid_object_id("123")
        assert not is_valid_object_id(None)

    def test_to_object_id(self):
        """Test conversion of valid strings and rejection of malformed ones."""
        oid = ObjectId()
        assert to_object_id(str(oid)) == oid
        with pytest.raises(ValueError):
            to_object_id("not-an-id")

    def test_lookups_tolerate_malformed_ids(self, db):
        """Test that lookups with malformed ids return None."""
        assert db_get_persona(db, "bad") is None
        assert db_get_prompt(db, "bad") is None


class TestUserChatWrites:
    """Tests for transcript writes."""

    def test_update_user_chat_merges_and_counts(self, db):
        """Test that merging replaces matching text and counts only appended turns."""
        user = make_user(db)
        chat = make_chat(db)
        user_chat = make_user_chat(db, user, chat, messages=[{"role": "user", "content": "hi"}])

        added = db_update_user_chat(db, user["_id"], user_chat["_id"], [
            {"role": "user", "content": "hi", "name": "context"},
            {"role": "assistant", "content": "hello"},
        ], "now")

        assert added == 1
        stored = db["userChat"].find_one({"_id": user_chat["_id"]})
        assert stored["messages"] == [
            {"role": "user", "content": "hi", "name": "context"},
            {"role": "assistant", "content": "hello"},
        ]
        assert stored["updatedAt"] == "now"
        stats = db["user_chat_stats"].find_one({"userId": user["_id"], "chatId": chat["_id"]})
        assert stats["messageCount"] == 1

    def test_update_user_chat_keeps_concurrent_appends(self, db):
        """Test that a stale snapshot does not erase a message appended meanwhile."""
        user = make_user(db)
        chat = make_chat(db)
        user_chat = make_user_chat(db, user, chat, messages=[{"role": "user", "content": "hi"}])
        snapshot = [{"role": "user", "content": "hi"}]

        db_append_user_chat_message(db, user["_id"], user_chat["_id"],
                                    {"role": "user", "content": "suggested"}, "t1")
        db_update_user_chat(db, user["_id"], user_chat["_id"],
                            snapshot + [{"role": "assistant", "content": "reply"}], "t2")

        contents = [m["content"] for m in db["userChat"].find_one({"_id": user_chat["_id"]})["messages"]]
        assert contents == ["hi", "suggested", "reply"]

    def test_update_missing_user_chat(self, db):
        """Test that updating a missing conversation raises LookupError."""
        with pytest.raises(LookupError):
            db_update_user_chat(db, ObjectId(), ObjectId(), [], "now")

    def test_gallery_image_inserted_once(self, db):
        """Test that a gallery image is pushed once per imageId."""
        user = make_user(db)
        chat = make_chat(db)
        user_chat = make_user_chat(db, user, chat, messages=[{"role": "user", "content": "hi"}])
        image = {"role": "assistant", "type": "image", "imageId": "img-1", "content": "pic"}

        assert db_push_gallery_image_once(db, user["_id"], user_chat["_id"], dict(image), "t1")
        assert not db_push_gallery_image_once(db, user["_id"], user_chat["_id"], dict(image), "t2")
        assert db_push_gallery_image_once(db, user["_id"], user_chat["_id"], {**image, "imageId": "img-2"}, "t3")
        assert len(db["userChat"].find_one({"_id": user_chat["_id"]})["messages"]) == 3


class TestOtherWrites:
    def test_last_message_strips_actions(self, db):
        """Test that the last message cache is upserted per chat and user."""
        user_id, chat_id = ObjectId(), ObjectId()
        db_update_chat_last_message(db, chat_id, user_id, '*waves* "Hi"', "now")
        db_update_chat_last_message(db, chat_id, user_id, "Bye", "later")

        rows = list(db["chatLastMessage"].find({"chatId": chat_id}))
        assert len(rows) == 1
        assert rows[0]["lastMessage"] == {"role": "assistant", "content": "Bye", "updatedAt": "later"}

    def test_goal_completion_counter(self, db):
        """Test that goal completions increment one counter row."""
        user_id, chat_id = ObjectId(), ObjectId()
        db_increment_goal_completion(db, user_id, chat_id)
        db_increment_goal_completion(db, str(user_id), str(chat_id))
        assert db["chat_goal"].find_one({"userId": user_id})["completionCount"] == 2

    def test_tasks_by_status(self, db):
        """Test task lookup by user with and without a status filter."""
        user_id = ObjectId()
        db["tasks"].insert_many([
            {"userId": user_id, "status": "pending"},
            {"userId": user_id, "status": "completed"},
            {"userId": ObjectId(), "status": "pending"},
        ])
        assert len(db_get_tasks(db, "pending", str(user_id))) == 1
        assert len(db_get_tasks(db, None, user_id)) == 2
