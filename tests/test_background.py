"""
Tests for the background runner, the per-conversation lock and the notification hub
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from companion.background import FAILURE, SUCCESS, TIMEOUT, BackgroundRunner, KeyedLock
from companion.notifications import NotificationHub


@pytest.mark.asyncio
class TestBackgroundRunner:
    """Tests for BackgroundRunner."""

    async def test_success_outcome(self):
        """Test that a finished task yields a SUCCESS outcome and runs on_done."""
        runner = BackgroundRunner()
        seen = []

        async def work():
            return 42

        task = runner.spawn("answer", work, on_done=seen.append)
        outcome = await task

        assert outcome.status == SUCCESS
        assert outcome.ok
        assert outcome.value == 42
        assert seen == [outcome]

    async def test_failure_is_captured(self):
        """Test that an exception becomes a FAILURE outcome instead of propagating."""
        runner = BackgroundRunner()

        async def work():
            raise RuntimeError("boom")

        outcome = await runner.spawn("broken", work)

        assert outcome.status == FAILURE
        assert not outcome.ok
        assert isinstance(outcome.error, RuntimeError)

    async def test_timeout(self):
        """Test that work exceeding its timeout is reported as TIMEOUT."""
        runner = BackgroundRunner()

        async def work():
            await asyncio.sleep(5)

        outcome = await runner.spawn("slow", work, timeout=0.01)
        assert outcome.status == TIMEOUT

    async def test_async_on_done(self):
        """Test that a coroutine on_done callback is awaited with the outcome."""
        runner = BackgroundRunner()
        callback = AsyncMock()

        async def work():
            return "ok"

        await runner.spawn("cb", work, on_done=callback)
        callback.assert_awaited_once()
        assert callback.await_args.args[0].value == "ok"

    async def test_on_done_errors_do_not_escape(self):
        """Test that a failing callback does not change the task outcome."""
        runner = BackgroundRunner()

        async def work():
            return 1

        def bad_callback(outcome):
            raise ValueError("callback failed")

        outcome = await runner.spawn("cb", work, on_done=bad_callback)
        assert outcome.ok

    async def test_drain_waits_for_nested_tasks(self):
        """Test that drain also waits for tasks spawned by other tasks."""
        runner = BackgroundRunner()
        finished = []

        async def child():
            await asyncio.sleep(0)
            finished.append("child")

        async def parent():
            runner.spawn("child", child)
            finished.append("parent")

        runner.spawn("parent", parent)
        await runner.drain()

        assert finished == ["parent", "child"]
        assert runner.pending == 0


@pytest.mark.asyncio
class TestKeyedLock:
    """Tests for KeyedLock."""

    async def test_same_key_is_serialized(self):
        """Test that two holders of the same key never overlap."""
        locks = KeyedLock()
        order = []

        async def critical(name):
            async with locks.hold("chat-1"):
                order.append(f"{name}:start")
                await asyncio.sleep(0.01)
                order.append(f"{name}:end")

        await asyncio.gather(critical("a"), critical("b"))

        assert order == ["a:start", "a:end", "b:start", "b:end"]
        assert len(locks) == 0

    async def test_different_keys_interleave(self):
        """Test that different keys do not block each other."""
        locks = KeyedLock()
        order = []

        async def critical(key):
            async with locks.hold(key):
                order.append(f"{key}:start")
                await asyncio.sleep(0.01)
                order.append(f"{key}:end")

        await asyncio.gather(critical("x"), critical("y"))
        assert order[:2] == ["x:start", "y:start"]

    async def test_released_after_exception(self):
        """Test that the lock entry is released when the body raises."""
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("k"):
                raise RuntimeError("fail")
        assert len(locks) == 0


def _socket(fail=False):
    websocket = MagicMock()
    websocket.send_json = AsyncMock(side_effect=RuntimeError("closed") if fail else None)
    return websocket


@pytest.mark.asyncio
class TestNotificationHub:
    """Tests for NotificationHub."""

    async def test_send_to_all_connections(self):
        """Test that every socket of a user receives the typed envelope."""
        hub = NotificationHub()
        first, second = _socket(), _socket()
        await hub.register("u1", first)
        await hub.register("u1", second)

        delivered = await hub.send_notification_to_user("u1", "displayCompletionMessage", {"message": "hi"})

        assert delivered == 2
        first.send_json.assert_awaited_once_with(
            {"type": "displayCompletionMessage", "notification": {"message": "hi"}})

    async def test_no_connection(self):
        """Test that sending to an unknown user delivers nothing."""
        hub = NotificationHub()
        assert await hub.send_notification_to_user("nobody", "x") == 0

    async def test_failing_socket_is_dropped(self):
        """Test that a socket that fails to send is unregistered."""
        hub = NotificationHub()
        good, bad = _socket(), _socket(fail=True)
        await hub.register("u1", good)
        await hub.register("u1", bad)

        assert await hub.send_notification_to_user("u1", "ping") == 1
        assert hub.connection_count("u1") == 1

    async def test_unregister(self):
        """Test that unregister removes the connection."""
        hub = NotificationHub()
        websocket = _socket()
        await hub.register("u1", websocket)
        await hub.unregister("u1", websocket)
        assert hub.connection_count("u1") == 0
