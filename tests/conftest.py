"""
Shared fixtures: an in-memory MongoDB (mongomock), a notification hub that
records events, and stub collaborators for the LLM and image services.
"""

import copy
import os
import random
import sys
from unittest.mock import AsyncMock, MagicMock

import mongomock
import pytest
from bson import ObjectId

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from companion.config_loader import DEFAULT_CONFIG
from companion.notifications import NotificationHub
from companion.outcome import ErrorKind, Outcome
from companion.services import build_services


class RecordingHub(NotificationHub):
    """NotificationHub that keeps every event instead of writing to sockets."""

    def __init__(self):
        super().__init__()
        self.events = []

    async def send_notification_to_user(self, user_id, event, payload=None):
        self.events.append((str(user_id), event, payload))
        return 1

    def of_type(self, event):
        return [payload for _, name, payload in self.events if name == event]


class StubCompletion:
    """CompletionClient stand-in returning queued replies."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []
        self.default_max_tokens = 600

    async def complete(self, messages, max_tokens=None, model=None, lang="en",
                       user_model_preference=None, is_premium=False, response_format=None,
                       temperature=None):
        self.calls.append({"messages": messages, "model": model, "lang": lang, "is_premium": is_premium})
        reply = self.replies.pop(0) if self.replies else None
        if reply is None:
            return Outcome.failure(ErrorKind.EMPTY_RESPONSE, "no content")
        return Outcome.success(reply)

    async def generate_completion(self, messages, max_tokens=None, model=None, lang="en",
                                  user_model_preference=None, is_premium=False):
        return (await self.complete(messages, max_tokens, model, lang)).unwrap_or(None)


class StubImages:
    def __init__(self, task_id="task-1"):
        self.task_id = task_id
        self.calls = []

    async def generate_img(self, **params):
        self.calls.append(params)
        return {"taskId": self.task_id}


def stub_classifiers():
    classifiers = MagicMock()
    classifiers.check_image_request = AsyncMock(return_value={})
    classifiers.check_early_nsfw_upsell = AsyncMock(return_value={"trigger": False, "confidence": 0})
    classifiers.generate_chat_goal = AsyncMock(return_value=None)
    classifiers.check_goal_completion = AsyncMock(return_value={"completed": False, "confidence": 0})
    classifiers.generate_chat_scenarios = AsyncMock(return_value=[])
    classifiers.create_image_prompt = AsyncMock(return_value="a girl waving, smiling")
    classifiers.generate_chat_suggestions = AsyncMock(return_value=None)
    return classifiers


@pytest.fixture
def config():
    return copy.deepcopy(DEFAULT_CONFIG)


@pytest.fixture
def db():
    return mongomock.MongoClient()["companion_test"]


@pytest.fixture
def hub():
    return RecordingHub()


@pytest.fixture
def completion():
    return StubCompletion()


@pytest.fixture
def images():
    return StubImages()


@pytest.fixture
def services(db, config, hub, completion, images):
    services = build_services(db, config, rng=random.Random(7), hub=hub, images=images,
                              completion=completion, env={})
    services.classifiers = stub_classifiers()
    services.registry.seed_defaults()
    return services


def make_user(db, points=0, premium=False, lang="en", **fields):
    user = {
        "_id": ObjectId(),
        "nickname": "Taro",
        "gender": "male",
        "points": points,
        "subscriptionStatus": "active" if premium else "inactive",
        "lang": lang,
        **fields,
    }
    db["users"].insert_one(user)
    return user


def make_chat(db, **fields):
    chat = {
        "_id": ObjectId(),
        "name": "Hana",
        "gender": "female",
        "nsfw": False,
        "short_intro": "A cheerful barista",
        "system_prompt": "Be Hana.",
        "characterPrompt": "young woman, short black hair",
        "details_description": {
            "personality": {
                "personality": "cheerful",
                "reference_character": "Nami",
                "hobbies": ["coffee", "music"],
            },
        },
        **fields,
    }
    db["chats"].insert_one(chat)
    return chat


def make_user_chat(db, user, chat, messages=None, **fields):
    user_chat = {
        "_id": ObjectId(),
        "userId": user["_id"],
        "chatId": chat["_id"],
        "messages": messages if messages is not None else [],
        **fields,
    }
    db["userChat"].insert_one(user_chat)
    return user_chat
