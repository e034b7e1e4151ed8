# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Client side of the backend's live PV feed.  Keeps one websocket open,
#     reconnects with exponential backoff, and turns received frames into
#     (pv_name, PVValue) callbacks.
# ---------------------------------------------------------------------
import asyncio
import functools
import logging
import time

import aiohttp

from definitions import CHANNEL_STATE, CHANNEL_TRANSITIONS, LOGGER_NAME, SETTINGS
from live_data.frames import (ErrorFrame, FrameError, HeartbeatFrame,
                              UnknownFrame, ValuesFrame, decode_frame,
                              encode_subscribe, encode_unsubscribe)
from utilities.statistics import StatisticsManager
from utilities.utils import normalize_pv_names

log = logging.getLogger(LOGGER_NAME)

# Above this many attempts the delay is always the cap
MAX_BACKOFF_EXPONENT = 30


def make_connector(session, ping_interval=SETTINGS.WS_PING_INTERVAL):
    """
    Return a coroutine function that opens a websocket on the given aiohttp
    session.  The connect timeout is the session's own.
    """

    async def connector(url):
        return await session.ws_connect(url, heartbeat=ping_interval)

    return connector


class LiveChannel(object):
    """
    One logical connection to the live feed.

    State is kept explicitly (see CHANNEL_TRANSITIONS); the receive task is
    the only place that moves the channel out of CONNECTING or OPEN, and
    disconnect() is the only place that moves it to CLOSING.

    The channel remembers which PV names are wanted.  Subscribe and
    unsubscribe messages are only sent while open; every (re)open subscribes
    to the whole wanted set.
    """

    def __init__(
        self,
        url,
        connector,
        reconnect_base_delay=SETTINGS.RECONNECT_BASE_DELAY,
        reconnect_max_delay=SETTINGS.RECONNECT_MAX_DELAY,
        max_reconnect_attempts=SETTINGS.MAX_RECONNECT_ATTEMPTS,
        stats=None,
    ):
        self._url = url
        self._connector = connector
        self._base_delay = float(reconnect_base_delay)
        self._max_delay = float(reconnect_max_delay)
        self._max_attempts = int(max_reconnect_attempts)

        if stats is None:
            stats = StatisticsManager()
        self._stats = stats

        self._state = CHANNEL_STATE.DISCONNECTED
        self._attempts = 0
        self._reconnect_enabled = True
        self._reconnect_handle = None
        self._last_delay = None

        self._ws = None
        self._task_rx = None
        self._task_tx = None
        self._queue_tx = None
        self._open_event = asyncio.Event()
        self._last_frame_time = None

        # Used as an ordered set
        self._wanted = {}

        self._callback_values = []
        self._callback_connection = []
        self._callback_reconnect = []

        self._frame_map = {
            ValuesFrame: self.handle_frame_values,
            HeartbeatFrame: self.handle_frame_heartbeat,
            ErrorFrame: self.handle_frame_error,
            UnknownFrame: self.handle_frame_unknown,
        }

    # ------------------------------------------------------------------
    # Callback registration
    # ------------------------------------------------------------------

    def add_callback_values(self, func):
        """
        func(pv_name, pv_value) for every PV value received
        """
        return self._add_callback(self._callback_values, func)

    def add_callback_connection(self, func):
        """
        func(connected) whenever the channel opens or closes
        """
        return self._add_callback(self._callback_connection, func)

    def add_callback_reconnect(self, func):
        """
        func(attempt, delay) whenever a reconnect is scheduled
        """
        return self._add_callback(self._callback_reconnect, func)

    def _add_callback(self, callbacks, func):
        callbacks.append(func)
        return functools.partial(self._remove_callback, callbacks, func)

    @staticmethod
    def _remove_callback(callbacks, func):
        try:
            callbacks.remove(func)
        except ValueError:
            pass

    def _call_callbacks(self, callbacks, *args):
        for func in list(callbacks):
            try:
                func(*args)
            except Exception as err:
                self._stats.increment("Channel callback errors")
                log.exception("Exception in channel callback %r: %r", func, err)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_state(self):
        return self._state

    def is_connected(self):
        return self._state == CHANNEL_STATE.OPEN

    def get_reconnect_attempts(self):
        return self._attempts

    def get_last_reconnect_delay(self):
        return self._last_delay

    def get_last_frame_time(self):
        return self._last_frame_time

    def get_wanted(self):
        return list(self._wanted)

    def _set_state(self, state):
        if state == self._state:
            return

        if state not in CHANNEL_TRANSITIONS.get(self._state, ()):
            raise ValueError(
                "Invalid channel transition: %s -> %s" % (self._state, state)
            )

        log.debug("channel state: %s -> %s", self._state, state)
        self._state = state

    def get_backoff_delay(self, attempts):
        if attempts >= MAX_BACKOFF_EXPONENT:
            return self._max_delay
        return min(self._base_delay * (2 ** attempts), self._max_delay)

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def connect(self):
        """
        Start connecting unless already open or connecting.  Re-enables
        automatic reconnection after disconnect() or after giving up.
        Must be called with a running event loop.
        """
        if self._state in (CHANNEL_STATE.OPEN, CHANNEL_STATE.CONNECTING):
            return

        self._reconnect_enabled = True
        if self._attempts >= self._max_attempts:
            self._attempts = 0

        if self._state == CHANNEL_STATE.CLOSING:
            # The receive task schedules the reconnect once the close is done
            return

        self._start_connect()

    def _start_connect(self):
        self._cancel_reconnect()
        self._set_state(CHANNEL_STATE.CONNECTING)
        loop = asyncio.get_running_loop()
        self._task_rx = loop.create_task(self._worker_rx())

    def _reconnect(self):
        self._reconnect_handle = None
        if self._state != CHANNEL_STATE.RECONNECT_SCHEDULED:
            return
        self._start_connect()

    def _cancel_reconnect(self):
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    async def disconnect(self):
        """
        Close the connection, if any, and suppress automatic reconnection
        """
        self._reconnect_enabled = False
        self._attempts = self._max_attempts
        self._cancel_reconnect()

        if self._state == CHANNEL_STATE.RECONNECT_SCHEDULED:
            self._set_state(CHANNEL_STATE.DISCONNECTED)
            return

        if self._state == CHANNEL_STATE.DISCONNECTED:
            return

        task = self._task_rx

        if self._state != CHANNEL_STATE.CLOSING:
            self._set_state(CHANNEL_STATE.CLOSING)
            ws = self._ws
            if ws is not None:
                try:
                    await ws.close()
                except Exception as err:
                    log.warning("Exception closing live channel: %r", err)
            elif task is not None:
                task.cancel()

        if task is None or task is asyncio.current_task():
            return

        try:
            await task
        except asyncio.CancelledError:
            pass

        # A task cancelled before it first ran never reaches its cleanup
        if self._state == CHANNEL_STATE.CLOSING:
            self._ws = None
            self._task_rx = None
            self._open_event.clear()
            self._set_state(CHANNEL_STATE.DISCONNECTED)

    async def reset(self):
        """
        Drop the current connection and start a fresh attempt with the
        attempt counter at zero
        """
        await self.disconnect()
        self._attempts = 0
        self.connect()

    async def wait_open(self, timeout=None):
        try:
            await asyncio.wait_for(self._open_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker_rx(self):
        was_open = False
        try:
            try:
                ws = await self._connector(self._url)
            except asyncio.CancelledError:
                raise
            except Exception as err:
                self._stats.increment("Connect failures")
                log.warning("Failed to connect to %s: %r", self._url, err)
                return

            if self._state == CHANNEL_STATE.CLOSING:
                await ws.close()
                return

            self._ws = ws
            self._on_open()
            was_open = True

            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    self.handle_message(msg.data)

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self._stats.increment("Channel socket errors")
                    log.warning("Live channel socket error: %r", msg.data)
                    break

        except asyncio.CancelledError:
            raise

        except Exception as err:
            self._stats.increment("Channel socket errors")
            log.warning("Live channel receive failed: %r", err)

        finally:
            self._on_closed(was_open)

    async def _worker_tx(self, ws, queue_tx):
        # Single writer so that messages go out in the order they were queued
        while True:
            message = await queue_tx.get()
            try:
                await ws.send_str(message)
                self._stats.increment("Frames TX")
            except asyncio.CancelledError:
                raise
            except Exception as err:
                self._stats.increment("TX errors")
                log.warning("Live channel send failed: %r", err)

    def _on_open(self):
        self._set_state(CHANNEL_STATE.OPEN)
        self._attempts = 0
        self._last_delay = None
        self._stats.increment("Connects")
        log.info("Live channel connected to %s", self._url)

        loop = asyncio.get_running_loop()
        self._queue_tx = asyncio.Queue()
        self._task_tx = loop.create_task(self._worker_tx(self._ws, self._queue_tx))

        self._open_event.set()
        self._call_callbacks(self._callback_connection, True)

        if self._wanted:
            log.debug("Subscribing to %d wanted PVs", len(self._wanted))
            self._send(encode_subscribe(list(self._wanted)))

    def _on_closed(self, was_open):
        self._ws = None
        self._task_rx = None
        if self._task_tx is not None:
            self._task_tx.cancel()
            self._task_tx = None
        self._queue_tx = None
        self._open_event.clear()

        self._set_state(CHANNEL_STATE.DISCONNECTED)
        if was_open:
            log.info("Live channel disconnected from %s", self._url)

        self._call_callbacks(self._callback_connection, False)
        self._schedule_reconnect()

    def _schedule_reconnect(self):
        if not self._reconnect_enabled:
            return None

        if self._attempts >= self._max_attempts:
            self._stats.increment("Reconnect give-ups")
            log.warning(
                "Max reconnect attempts (%d) reached; live channel disabled",
                self._max_attempts,
            )
            return None

        delay = self.get_backoff_delay(self._attempts)
        self._attempts += 1
        self._last_delay = delay

        if self._attempts <= SETTINGS.RECONNECT_LOG_ATTEMPTS:
            log.info(
                "Reconnecting in %.1fs (attempt %d/%d)",
                delay,
                self._attempts,
                self._max_attempts,
            )
        else:
            log.debug(
                "Reconnecting in %.1fs (attempt %d/%d)",
                delay,
                self._attempts,
                self._max_attempts,
            )

        self._set_state(CHANNEL_STATE.RECONNECT_SCHEDULED)
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._reconnect)
        self._stats.increment("Reconnects scheduled")

        self._call_callbacks(self._callback_reconnect, self._attempts, delay)
        return delay

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, pv_names):
        new_names = []
        for pv_name in normalize_pv_names(pv_names):
            if pv_name in self._wanted:
                continue
            self._wanted[pv_name] = True
            new_names.append(pv_name)

        if new_names and self._state == CHANNEL_STATE.OPEN:
            self._send(encode_subscribe(new_names))

    def unsubscribe(self, pv_names):
        removed = []
        for pv_name in normalize_pv_names(pv_names):
            if self._wanted.pop(pv_name, None) is not None:
                removed.append(pv_name)

        if removed and self._state == CHANNEL_STATE.OPEN:
            self._send(encode_unsubscribe(removed))

    def _send(self, message):
        if self._queue_tx is None:
            return
        self._queue_tx.put_nowait(message)

    # ------------------------------------------------------------------
    # Incoming frames
    # ------------------------------------------------------------------

    def handle_message(self, raw):
        self._last_frame_time = time.time()
        self._stats.increment("Frames RX")

        try:
            frame = decode_frame(raw)
        except FrameError as err:
            self._stats.increment("Frames malformed")
            log.error("Failed to decode live frame: %s", err)
            return

        handler = self._frame_map[type(frame)]
        handler(frame)

    def handle_frame_values(self, frame):
        log.debug("%s frame: %d values", frame.kind, len(frame.values))
        self._stats.increment("PV values RX", len(frame.values))

        for pv_name, value in frame.values:
            self._call_callbacks(self._callback_values, pv_name, value)

    def handle_frame_heartbeat(self, frame):
        log.debug("%s frame", frame.kind)

    def handle_frame_error(self, frame):
        self._stats.increment("Server errors")
        log.error("Live feed server error: %s", frame.message)

    def handle_frame_unknown(self, frame):
        self._stats.increment("Frames unknown")
        log.debug("Ignoring frame of unknown type: %r", frame.kind)
