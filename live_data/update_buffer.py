# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Coalescing buffer between the live feed and its readers.
#
#     Values arriving from the feed are staged without notifying anyone.
#     On a fixed interval the staged values are merged into a new published
#     map and listeners are told once, so the refresh rate of the readers
#     does not depend on how fast updates arrive.  Only the latest value
#     staged for a PV between two flushes is ever published.
# ---------------------------------------------------------------------
import asyncio
import logging
import types

from definitions import LOGGER_NAME, SETTINGS
from utilities.statistics import StatisticsManager

log = logging.getLogger(LOGGER_NAME)


class UpdateBuffer(object):

    def __init__(self, flush_interval=SETTINGS.FLUSH_INTERVAL, stats=None):

        self._flush_interval = float(flush_interval)

        if stats is None:
            stats = StatisticsManager()
        self._stats = stats

        self._staged = {}

        # Never mutated once published; flush() and discard() build a new one
        self._published = {}
        self._published_view = types.MappingProxyType(self._published)

        # Set when discard() removed published entries since the last flush
        self._removed = False

        self._listeners = []
        self._task = None

    def stage(self, pv_name, value):
        if pv_name in self._staged:
            self._stats.increment("Values coalesced")
        self._staged[pv_name] = value

    def flush(self):
        """
        Publish everything staged since the last flush.  Returns True if
        listeners were notified.
        """
        if not self._staged and not self._removed:
            return False

        published = dict(self._published)
        published.update(self._staged)
        count = len(self._staged)

        self._staged = {}
        self._removed = False
        self._publish(published)

        self._stats.increment("Flushes")
        log.debug("flushed %d values, published: %d", count, len(published))

        for func in list(self._listeners):
            try:
                func(self._published_view)
            except Exception as err:
                self._stats.increment("Buffer listener errors")
                log.exception("Exception in flush listener: %r", err)

        return True

    def discard(self, pv_names):
        """
        Forget staged and published values for pv_names right away
        """
        pv_names = list(pv_names)
        for pv_name in pv_names:
            self._staged.pop(pv_name, None)

        removed = [name for name in pv_names if name in self._published]
        if not removed:
            return

        published = dict(self._published)
        for pv_name in removed:
            del published[pv_name]

        self._publish(published)
        self._removed = True

    def clear(self):
        self._staged = {}
        if self._published:
            self._publish({})
            self._removed = True

    def _publish(self, published):
        self._published = published
        self._published_view = types.MappingProxyType(published)

    def get_values(self):
        """
        Read-only view of the values as of the last flush
        """
        return self._published_view

    def get(self, pv_name, default=None):
        return self._published.get(pv_name, default)

    def get_pending_count(self):
        return len(self._staged)

    def add_listener(self, func):
        """
        func(values) after every flush that changed something.  Returns a
        function that removes the listener.
        """
        self._listeners.append(func)

        def remove():
            try:
                self._listeners.remove(func)
            except ValueError:
                pass

        return remove

    # ------------------------------------------------------------------
    # Flush timer
    # ------------------------------------------------------------------

    def is_running(self):
        return self._task is not None

    def start(self):
        if self._task is not None:
            return
        log.debug("flush timer started (%.3fs)", self._flush_interval)
        self._task = asyncio.get_running_loop().create_task(self._worker())

    def stop(self):
        if self._task is None:
            return
        log.debug("flush timer stopped")
        self._task.cancel()
        self._task = None

    async def _worker(self):
        while True:
            await asyncio.sleep(self._flush_interval)
            self.flush()
