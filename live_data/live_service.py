# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Builds and owns the live-data pipeline:
#
#       LiveChannel -> SubscriptionRegistry -> LiveView -> UpdateBuffer
#
#     plus the heartbeat monitor and the REST polling fallback.  Consumers
#     get a LiveView, tell it which PVs they want, and read the buffered
#     values (or listen for flushes).
# ---------------------------------------------------------------------
import functools
import logging

import aiohttp

from definitions import ENDPOINT, LOGGER_NAME, SETTINGS
from live_client import LiveChannel, make_connector
from live_data.api_client import ApiClient
from live_data.heartbeat_monitor import HeartbeatMonitor, make_banner_text
from live_data.live_poller import LivePoller
from live_data.subscription_registry import SubscriptionRegistry
from live_data.update_buffer import UpdateBuffer
from utilities.statistics import StatisticsManager
from utilities.utils import make_ws_url, normalize_pv_names

log = logging.getLogger(LOGGER_NAME)


class LiveView(object):
    """
    One consumer's window on the live values, e.g. the rows of a table.
    """

    def __init__(self, registry, buffer, pv_names=None, on_close=None):
        self._registry = registry
        self._buffer = buffer
        self._on_close = on_close

        self._pv_names = []

        # pv_name -> Subscription; one handle may cover several names
        self._handles = {}

        self._listener_removers = []
        self._closed = False

        if pv_names:
            self.set_pv_names(pv_names)

    def get_pv_names(self):
        return list(self._pv_names)

    def is_closed(self):
        return self._closed

    def set_pv_names(self, pv_names):
        """
        Change the PVs this view follows.  Only the difference from the
        current set is subscribed or released.
        """
        if self._closed:
            raise ValueError("LiveView is closed")

        pv_names = normalize_pv_names(pv_names)
        wanted = dict.fromkeys(pv_names)

        added = [name for name in pv_names if name not in self._handles]
        removed = [name for name in self._handles if name not in wanted]

        self._pv_names = pv_names

        if not added and not removed:
            return

        if added:
            handle = self._registry.subscribe_many(added, self._on_value)
            for name in added:
                self._handles[name] = handle

        # Handle -> names to let go of; the handle keeps its other names
        dropped = {}
        for name in removed:
            dropped.setdefault(self._handles.pop(name), []).append(name)

        for handle, names in dropped.items():
            handle.release(names)

        log.debug(
            "view: %d PVs (+%d, -%d)", len(pv_names), len(added), len(removed)
        )

    def _on_value(self, pv_name, value):
        self._buffer.stage(pv_name, value)

    def get_values(self):
        """
        {pv_name: PVValue} for this view's PVs, as of the last flush
        """
        published = self._buffer.get_values()
        return {
            name: published[name] for name in self._pv_names if name in published
        }

    def get(self, pv_name, default=None):
        if pv_name not in self._handles:
            return default
        return self._buffer.get(pv_name, default)

    def add_listener(self, func):
        """
        func(values) after every flush, with this view's values only
        """

        def listener(_published):
            func(self.get_values())

        remove = self._buffer.add_listener(listener)
        self._listener_removers.append(remove)
        return remove

    def close(self):
        if self._closed:
            return
        self._closed = True

        for remove in self._listener_removers:
            remove()
        self._listener_removers = []

        for handle in set(self._handles.values()):
            handle.cancel()
        self._handles = {}
        self._pv_names = []

        if self._on_close is not None:
            self._on_close(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


class LiveDataService(object):
    """
    Composition root.  Without a session argument an aiohttp session is
    created (and later closed) by the service, so it must then be built
    inside a running event loop.
    """

    def __init__(
        self,
        base_url=SETTINGS.BASE_URL,
        ws_url=None,
        session=None,
        connector=None,
        flush_interval=SETTINGS.FLUSH_INTERVAL,
        heartbeat_interval=SETTINGS.HEARTBEAT_INTERVAL,
        poll_interval=SETTINGS.POLL_INTERVAL,
        reconnect_base_delay=SETTINGS.RECONNECT_BASE_DELAY,
        reconnect_max_delay=SETTINGS.RECONNECT_MAX_DELAY,
        max_reconnect_attempts=SETTINGS.MAX_RECONNECT_ATTEMPTS,
        request_timeout=SETTINGS.REQUEST_TIMEOUT,
        poll_chunk_size=SETTINGS.POLL_CHUNK_SIZE,
        use_poll_fallback=SETTINGS.USE_POLL_FALLBACK,
    ):
        base_url = base_url.rstrip("/")
        if ws_url is None:
            ws_url = make_ws_url(base_url, ENDPOINT.WS_LIVE)

        self._owns_session = session is None
        if session is None:
            session = aiohttp.ClientSession()
        self._session = session

        if connector is None:
            connector = make_connector(session)

        self._stats = StatisticsManager()
        self._use_poll_fallback = use_poll_fallback
        self._running = False
        self._disposed = False
        self._views = []

        self._client = ApiClient(base_url, session, timeout=request_timeout)

        self._channel = LiveChannel(
            ws_url,
            connector,
            reconnect_base_delay=reconnect_base_delay,
            reconnect_max_delay=reconnect_max_delay,
            max_reconnect_attempts=max_reconnect_attempts,
            stats=self._stats,
        )

        self._registry = SubscriptionRegistry(self._channel, stats=self._stats)
        self._buffer = UpdateBuffer(flush_interval, stats=self._stats)

        self._heartbeat = HeartbeatMonitor(
            functools.partial(self._client.request_json, "GET", ENDPOINT.HEARTBEAT),
            interval=heartbeat_interval,
            stats=self._stats,
        )

        self._poller = LivePoller(
            self._client,
            self._registry.get_pv_names,
            self._registry.dispatch,
            interval=poll_interval,
            chunk_size=poll_chunk_size,
            stats=self._stats,
        )

        # Released PVs disappear from the buffer right away
        self._registry.add_callback_release(self._buffer.discard)
        self._registry.add_callback_active(self.handle_registry_active)
        self._channel.add_callback_connection(self.handle_connection)

    @classmethod
    def from_config(cls, cfg, session=None, connector=None):
        """
        Build a service from a settings.Configuration
        """
        return cls(
            base_url=cfg.BASE_URL,
            ws_url=cfg.WS_URL,
            session=session,
            connector=connector,
            flush_interval=cfg.FLUSH_INTERVAL,
            heartbeat_interval=cfg.HEARTBEAT_INTERVAL,
            poll_interval=cfg.POLL_INTERVAL,
            reconnect_base_delay=cfg.RECONNECT_BASE_DELAY,
            reconnect_max_delay=cfg.RECONNECT_MAX_DELAY,
            max_reconnect_attempts=cfg.MAX_RECONNECT_ATTEMPTS,
            request_timeout=cfg.REQUEST_TIMEOUT,
            poll_chunk_size=cfg.POLL_CHUNK_SIZE,
            use_poll_fallback=cfg.USE_POLL_FALLBACK,
        )

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def get_channel(self):
        return self._channel

    def get_registry(self):
        return self._registry

    def get_buffer(self):
        return self._buffer

    def get_heartbeat(self):
        return self._heartbeat

    def get_poller(self):
        return self._poller

    def get_client(self):
        return self._client

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def handle_registry_active(self, active):
        if not self._running:
            return
        if active:
            self._buffer.start()
        else:
            self._buffer.stop()

    def handle_connection(self, connected):
        if not self._running or not self._use_poll_fallback:
            return
        if connected:
            self._poller.stop()
        else:
            self._poller.start()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def is_running(self):
        return self._running

    async def start(self):
        if self._disposed:
            raise ValueError("LiveDataService has been disposed")
        if self._running:
            return

        log.info("Starting live data service")
        self._running = True

        self._heartbeat.start()
        if self._registry.get_pv_names():
            self._buffer.start()
        self._channel.connect()

    async def stop(self):
        if not self._running:
            return

        log.info("Stopping live data service")
        self._running = False

        self._poller.stop()
        self._heartbeat.stop()
        self._buffer.stop()
        await self._channel.disconnect()

    async def dispose(self):
        if self._disposed:
            return

        await self.stop()
        self._disposed = True

        for view in list(self._views):
            view.close()

        self._registry.close()
        self._buffer.clear()

        if self._owns_session:
            await self._session.close()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.dispose()

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def view(self, pv_names=None):
        if self._disposed:
            raise ValueError("LiveDataService has been disposed")
        view = LiveView(
            self._registry, self._buffer, pv_names, on_close=self._views.remove
        )
        self._views.append(view)
        return view

    def subscribe_heartbeat(self, func):
        return self._heartbeat.subscribe(func)

    def add_callback_connection(self, func):
        return self._channel.add_callback_connection(func)

    async def fetch(self, pv_names):
        """
        One-shot REST read of live values; raises ApiError
        """
        return await self._poller.fetch(normalize_pv_names(pv_names))

    def get_status(self):
        heartbeat = self._heartbeat.get_state()
        return {
            "connected": self._channel.is_connected(),
            "state": self._channel.get_state(),
            "reconnect_attempts": self._channel.get_reconnect_attempts(),
            "polling": self._poller.is_running(),
            "heartbeat": heartbeat._asdict(),
            "banner": make_banner_text(heartbeat),
            "pv_count": len(self._registry.get_pv_names()),
            "pending": self._buffer.get_pending_count(),
            "published": len(self._buffer.get_values()),
            "stats": self._stats.get(),
        }
