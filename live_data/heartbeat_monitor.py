# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Polls the backend's heartbeat endpoint to find out whether the process
#     that produces live PV values is still running.  The live channel can
#     be connected while that process is dead, so this is tracked separately.
# ---------------------------------------------------------------------
import asyncio
import logging
import numbers
import time
from collections import namedtuple

from definitions import KEY, LOGGER_NAME, SETTINGS
from utilities.statistics import StatisticsManager
from utilities.utils import make_age_str

log = logging.getLogger(LOGGER_NAME)

HeartbeatState = namedtuple(
    "HeartbeatState", ["alive", "age_seconds", "last_checked", "timestamp"]
)

# Nothing is assumed alive until a poll says so
INITIAL_STATE = HeartbeatState(
    alive=False, age_seconds=None, last_checked=None, timestamp=None
)


def _is_number(value):
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def parse_heartbeat(body):
    """
    Return (alive, age_seconds, timestamp) from a heartbeat response body.
    Raises ValueError if the body is not what the backend sends.
    """
    if not isinstance(body, dict):
        raise ValueError("heartbeat response is not an object")

    payload = body.get(KEY.PAYLOAD)
    if not isinstance(payload, dict):
        raise ValueError("heartbeat response has no payload")

    alive = payload.get(KEY.ALIVE)
    if not isinstance(alive, bool):
        raise ValueError("heartbeat alive is not a bool: %r" % (alive,))

    age_seconds = payload.get(KEY.AGE_SECONDS)
    if age_seconds is not None and not _is_number(age_seconds):
        raise ValueError("heartbeat age is not a number: %r" % (age_seconds,))

    timestamp = payload.get(KEY.TIMESTAMP)
    if timestamp is not None and not _is_number(timestamp):
        raise ValueError("heartbeat timestamp is not a number: %r" % (timestamp,))

    return alive, age_seconds, timestamp


def make_banner_text(state):
    """
    Text for the "live data disconnected" warning, or None when no warning
    should be shown
    """
    if state.alive or state.last_checked is None:
        return None

    return "LIVE DATA DISCONNECTED - Last update: %s" % make_age_str(
        state.age_seconds
    )


class HeartbeatMonitor(object):
    """
    fetch is a coroutine function returning the decoded JSON body of the
    heartbeat endpoint; it may raise anything on failure.
    """

    def __init__(
        self, fetch, interval=SETTINGS.HEARTBEAT_INTERVAL, stats=None, clock=time.time
    ):
        self._fetch = fetch
        self._interval = float(interval)
        self._clock = clock

        if stats is None:
            stats = StatisticsManager()
        self._stats = stats

        self._state = INITIAL_STATE
        self._callbacks = []
        self._task = None

    def get_state(self):
        return self._state

    def is_running(self):
        return self._task is not None

    def subscribe(self, func):
        """
        func(state) now with the last known state, then after every poll.
        Returns a function that removes the subscription.
        """
        self._callbacks.append(func)
        self._call(func, self._state)

        def unsubscribe():
            try:
                self._callbacks.remove(func)
            except ValueError:
                pass

        return unsubscribe

    def start(self):
        if self._task is not None:
            return
        log.debug("heartbeat polling started (%.1fs)", self._interval)
        self._task = asyncio.get_running_loop().create_task(self._worker())

    def stop(self):
        if self._task is None:
            return
        log.debug("heartbeat polling stopped")
        self._task.cancel()
        self._task = None

    async def _worker(self):
        while True:
            await self.check()
            await asyncio.sleep(self._interval)

    async def check(self):
        """
        Poll once and notify subscribers.  Never raises (except cancellation).
        """
        now = self._clock()
        try:
            body = await self._fetch()
            alive, age_seconds, timestamp = parse_heartbeat(body)
            state = HeartbeatState(alive, age_seconds, now, timestamp)

        except asyncio.CancelledError:
            raise

        except Exception as err:
            self._stats.increment("Heartbeat failures")
            log.warning("Heartbeat check failed: %r", err)
            state = HeartbeatState(False, None, now, None)

        if state.alive != self._state.alive:
            if state.alive:
                log.info("PV monitor heartbeat is alive")
            else:
                log.warning(
                    "PV monitor heartbeat lost (age: %s)",
                    make_age_str(state.age_seconds),
                )

        self._stats.increment("Heartbeat checks")
        self._state = state

        for func in list(self._callbacks):
            self._call(func, state)

        return state

    def _call(self, func, state):
        try:
            func(state)
        except Exception as err:
            self._stats.increment("Heartbeat callback errors")
            log.exception("Exception in heartbeat callback: %r", err)
