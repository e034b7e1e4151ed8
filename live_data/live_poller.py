# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     REST polling of live values.  Only used while the live channel is
#     down; the websocket push is the normal path.
# ---------------------------------------------------------------------
import asyncio
import logging

from definitions import ENDPOINT, KEY, LOGGER_NAME, SETTINGS
from live_data.api_client import ApiError
from live_data.pv_value import PVValue
from utilities.statistics import StatisticsManager
from utilities.utils import chunk_list

log = logging.getLogger(LOGGER_NAME)


class LivePoller(object):
    """
    get_pv_names() returns the names to poll; callback_values(pv_name, value)
    is called for every value received.
    """

    def __init__(
        self,
        client,
        get_pv_names,
        callback_values,
        interval=SETTINGS.POLL_INTERVAL,
        chunk_size=SETTINGS.POLL_CHUNK_SIZE,
        stats=None,
    ):
        self._client = client
        self._get_pv_names = get_pv_names
        self._callback_values = callback_values
        self._interval = float(interval)
        self._chunk_size = int(chunk_size)

        if stats is None:
            stats = StatisticsManager()
        self._stats = stats

        self._task = None

    def is_running(self):
        return self._task is not None

    def start(self):
        if self._task is not None:
            return
        log.info("REST polling of live values started (%.1fs)", self._interval)
        self._task = asyncio.get_running_loop().create_task(self._worker())

    def stop(self):
        if self._task is None:
            return
        log.info("REST polling of live values stopped")
        self._task.cancel()
        self._task = None

    async def _worker(self):
        while True:
            await self.poll()
            await asyncio.sleep(self._interval)

    async def fetch(self, pv_names):
        """
        One-shot read of live values.  Returns {pv_name: PVValue}; raises
        ApiError.
        """
        result = {}

        for chunk in chunk_list(list(pv_names), self._chunk_size):
            payload = await self._client.get(
                ENDPOINT.PVS_LIVE, params={KEY.QUERY_PV_NAMES: chunk}
            )

            if not isinstance(payload, dict):
                raise ApiError("Malformed live values payload")

            for pv_name, data in payload.items():
                try:
                    result[pv_name] = PVValue.from_wire(data)
                except ValueError as err:
                    self._stats.increment("Poll values malformed")
                    log.error("Bad live value for %s: %r", pv_name, err)

        return result

    async def poll(self):
        """
        Poll once and hand the values on.  Failures are logged, not raised.
        Returns the number of values received.
        """
        pv_names = self._get_pv_names()
        if not pv_names:
            return 0

        try:
            values = await self.fetch(pv_names)

        except ApiError as err:
            self._stats.increment("Poll failures")
            log.warning("Live value poll failed: %s", err)
            return 0

        self._stats.increment("Polls")

        for pv_name, value in values.items():
            try:
                self._callback_values(pv_name, value)
            except Exception as err:
                self._stats.increment("Poll callback errors")
                log.exception("Exception in poll callback: %r", err)

        return len(values)
