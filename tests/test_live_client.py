#---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Tests for the live channel: state machine, reconnect backoff,
#     subscription replay and frame handling.  The websocket is faked.
#---------------------------------------------------------------------
import asyncio
import json
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, call

import os
import sys

import aiohttp

sys.path.insert(1, os.path.join(os.path.dirname(__file__), '..'))
from definitions import CHANNEL_STATE
from live_client import LiveChannel, make_connector
from utilities.statistics import StatisticsManager


class FakeWebSocket(object):

    def __init__(self):
        self.sent = []
        self.closed = False
        self._queue = asyncio.Queue()

    def feed(self, data, msg_type=aiohttp.WSMsgType.TEXT):
        self._queue.put_nowait(SimpleNamespace(type=msg_type, data=data))

    def drop(self):
        """Server side close"""
        self._queue.put_nowait(None)

    async def send_str(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self._queue.get()
        if msg is None:
            raise StopAsyncIteration
        return msg


async def settle():
    for _ in range(10):
        await asyncio.sleep(0)


class TestBackoff(unittest.IsolatedAsyncioTestCase):

    async def test_backoff_sequence(self):
        channel = LiveChannel("ws://test", AsyncMock(), 1.0, 30.0, 10)
        delays = [channel.get_backoff_delay(n) for n in range(8)]
        self.assertEqual(delays, [1, 2, 4, 8, 16, 30, 30, 30])

    async def test_backoff_large_attempts(self):
        channel = LiveChannel("ws://test", AsyncMock(), 1.0, 30.0, 10)
        self.assertEqual(channel.get_backoff_delay(5000), 30.0)

    async def test_invalid_transition(self):
        channel = LiveChannel("ws://test", AsyncMock())
        with self.assertRaises(ValueError):
            channel._set_state(CHANNEL_STATE.OPEN)


class TestLiveChannel(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self) -> None:
        self.ws = FakeWebSocket()
        self.connector = AsyncMock(return_value=self.ws)
        self.stats = StatisticsManager()
        self.channel = LiveChannel(
            "ws://test/v1/ws/live",
            self.connector,
            reconnect_base_delay=0.001,
            reconnect_max_delay=0.01,
            max_reconnect_attempts=3,
            stats=self.stats,
        )
        self.on_values = MagicMock()
        self.on_connection = MagicMock()
        self.on_reconnect = MagicMock()
        self.channel.add_callback_values(self.on_values)
        self.channel.add_callback_connection(self.on_connection)
        self.channel.add_callback_reconnect(self.on_reconnect)

    async def asyncTearDown(self) -> None:
        await self.channel.disconnect()

    async def test_connect(self):
        self.channel.connect()
        self.assertEqual(self.channel.get_state(), CHANNEL_STATE.CONNECTING)

        self.assertTrue(await self.channel.wait_open(1))
        self.assertTrue(self.channel.is_connected())
        self.connector.assert_awaited_once_with("ws://test/v1/ws/live")
        self.on_connection.assert_called_once_with(True)

    async def test_connect_is_idempotent(self):
        self.channel.connect()
        self.channel.connect()
        await self.channel.wait_open(1)
        self.channel.connect()
        await settle()
        self.connector.assert_awaited_once()

    async def test_wait_open_timeout(self):
        self.assertFalse(await self.channel.wait_open(0.01))

    async def test_subscriptions_queued_until_open(self):
        self.channel.subscribe(["A", "B"])
        self.channel.subscribe(["B", "C"])
        self.channel.unsubscribe(["A"])

        self.channel.connect()
        await self.channel.wait_open(1)
        await settle()

        self.assertEqual(self.ws.sent, [{"type": "subscribe", "pvNames": ["B", "C"]}])

    async def test_incremental_subscribe_while_open(self):
        self.channel.subscribe(["A"])
        self.channel.connect()
        await self.channel.wait_open(1)

        self.channel.subscribe(["A", "B"])
        self.channel.unsubscribe(["A", "Z"])
        await settle()

        self.assertEqual(
            self.ws.sent,
            [
                {"type": "subscribe", "pvNames": ["A"]},
                {"type": "subscribe", "pvNames": ["B"]},
                {"type": "unsubscribe", "pvNames": ["A"]},
            ],
        )
        self.assertEqual(self.channel.get_wanted(), ["B"])

    async def test_values_dispatched(self):
        self.channel.connect()
        await self.channel.wait_open(1)

        self.ws.feed(json.dumps({"type": "initial", "data": {"A": {"value": 1}}}))
        self.ws.feed(json.dumps({"type": "diff", "data": {"A": {"value": 2}}}))
        await settle()

        self.assertEqual(self.on_values.call_count, 2)
        name, value = self.on_values.call_args[0]
        self.assertEqual(name, "A")
        self.assertEqual(value.value, 2)
        self.assertIsNotNone(self.channel.get_last_frame_time())

    async def test_malformed_frame_not_fatal(self):
        self.channel.connect()
        await self.channel.wait_open(1)

        self.ws.feed("not json")
        self.ws.feed(json.dumps({"type": "error", "message": "oops"}))
        self.ws.feed(json.dumps({"type": "heartbeat"}))
        self.ws.feed(json.dumps({"type": "snapshot", "data": {"A": {"value": 1}}}))
        await settle()

        self.on_values.assert_called_once()
        self.assertTrue(self.channel.is_connected())
        self.assertEqual(self.stats.get("Frames malformed"), 1)
        self.assertEqual(self.stats.get("Server errors"), 1)

    async def test_callback_error_isolated(self):
        good = MagicMock()
        self.channel.add_callback_values(MagicMock(side_effect=RuntimeError("boom")))
        self.channel.add_callback_values(good)
        self.channel.connect()
        await self.channel.wait_open(1)

        self.ws.feed(json.dumps({"type": "diff", "data": {"A": {"value": 1}}}))
        await settle()

        good.assert_called_once()
        self.assertEqual(self.stats.get("Channel callback errors"), 1)

    async def test_remove_callback(self):
        removed = MagicMock()
        remove = self.channel.add_callback_values(removed)
        remove()
        remove()
        self.channel.connect()
        await self.channel.wait_open(1)

        self.ws.feed(json.dumps({"type": "diff", "data": {"A": {"value": 1}}}))
        await settle()

        removed.assert_not_called()
        self.on_values.assert_called_once()

    async def test_reconnect_after_drop(self):
        ws2 = FakeWebSocket()
        self.connector.side_effect = [self.ws, ws2]
        self.channel.subscribe(["A"])

        self.channel.connect()
        await self.channel.wait_open(1)
        self.ws.drop()
        await asyncio.sleep(0.05)

        self.assertTrue(self.channel.is_connected())
        self.assertEqual(
            self.on_connection.call_args_list, [call(True), call(False), call(True)]
        )
        self.on_reconnect.assert_called_once_with(1, 0.001)
        self.assertEqual(ws2.sent, [{"type": "subscribe", "pvNames": ["A"]}])
        self.assertEqual(self.channel.get_reconnect_attempts(), 0)

    async def test_attempts_reset_on_open(self):
        self.connector.side_effect = [OSError("refused")] * 3 + [self.ws]

        self.channel.connect()
        await asyncio.sleep(0.05)

        self.assertTrue(self.channel.is_connected())
        self.assertEqual(self.channel.get_reconnect_attempts(), 0)
        self.assertEqual(
            self.on_reconnect.call_args_list,
            [call(1, 0.001), call(2, 0.002), call(3, 0.004)],
        )
        self.assertEqual(self.stats.get("Connect failures"), 3)

    async def test_gives_up(self):
        self.connector.side_effect = OSError("refused")

        self.channel.connect()
        await asyncio.sleep(0.1)

        self.assertEqual(self.channel.get_state(), CHANNEL_STATE.DISCONNECTED)
        self.assertEqual(self.channel.get_reconnect_attempts(), 3)
        self.assertEqual(self.connector.await_count, 4)
        self.assertEqual(self.stats.get("Reconnect give-ups"), 1)

        # A caller initiated connect starts over
        self.channel.connect()
        await settle()
        self.assertEqual(self.connector.await_count, 5)

    async def test_reconnect_scheduled_state(self):
        channel = LiveChannel("ws://test", AsyncMock(side_effect=OSError()), 1.0, 30.0, 10)

        channel.connect()
        await settle()

        self.assertEqual(channel.get_state(), CHANNEL_STATE.RECONNECT_SCHEDULED)
        self.assertEqual(channel.get_reconnect_attempts(), 1)
        self.assertEqual(channel.get_last_reconnect_delay(), 1.0)

        await channel.disconnect()
        self.assertEqual(channel.get_state(), CHANNEL_STATE.DISCONNECTED)
        self.assertEqual(channel.get_reconnect_attempts(), 10)

    async def test_disconnect(self):
        self.channel.connect()
        await self.channel.wait_open(1)

        await self.channel.disconnect()
        await asyncio.sleep(0.02)

        self.assertTrue(self.ws.closed)
        self.assertEqual(self.channel.get_state(), CHANNEL_STATE.DISCONNECTED)
        self.assertEqual(self.channel.get_reconnect_attempts(), 3)
        self.on_reconnect.assert_not_called()
        self.connector.assert_awaited_once()

    async def test_disconnect_while_connecting(self):
        self.channel.connect()
        await self.channel.disconnect()

        self.assertEqual(self.channel.get_state(), CHANNEL_STATE.DISCONNECTED)
        self.on_reconnect.assert_not_called()

    async def test_reset(self):
        ws2 = FakeWebSocket()
        self.connector.side_effect = [self.ws, ws2]
        self.channel.connect()
        await self.channel.wait_open(1)

        await self.channel.reset()
        self.assertTrue(await self.channel.wait_open(1))

        self.assertTrue(self.ws.closed)
        self.assertEqual(self.connector.await_count, 2)
        self.assertEqual(self.channel.get_reconnect_attempts(), 0)


class TestMakeConnector(unittest.IsolatedAsyncioTestCase):

    async def test_uses_session(self):
        session = MagicMock()
        session.ws_connect = AsyncMock(return_value="ws")

        connector = make_connector(session, ping_interval=5.0)

        self.assertEqual(await connector("ws://x"), "ws")
        session.ws_connect.assert_awaited_once_with("ws://x", heartbeat=5.0)


if __name__ == "__main__":
    unittest.main()
