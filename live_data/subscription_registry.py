# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Reference counted interest in PV names.  However many consumers ask
#     for a PV, the live channel is asked to subscribe to it once, and to
#     unsubscribe only when the last consumer lets go.
# ---------------------------------------------------------------------
import logging

from definitions import LOGGER_NAME
from utilities.statistics import StatisticsManager
from utilities.utils import normalize_pv_names

log = logging.getLogger(LOGGER_NAME)


class Subscription(object):
    """
    Handle returned by SubscriptionRegistry.subscribe().  Calling it (or
    cancel()) removes the callback; doing so more than once is harmless.
    release() lets go of some of the handle's PVs and keeps the rest.
    """

    def __init__(self, registry, pv_names, callback):
        self._registry = registry
        # Used as an ordered set
        self._pv_names = dict.fromkeys(pv_names)
        self._callback = callback
        self._active = True

    @property
    def pv_names(self):
        return list(self._pv_names)

    @property
    def callback(self):
        return self._callback

    def is_active(self):
        return self._active

    def release(self, pv_names):
        if not self._active:
            return

        released = []
        for pv_name in normalize_pv_names(pv_names):
            if pv_name in self._pv_names:
                del self._pv_names[pv_name]
                released.append(pv_name)

        if not self._pv_names:
            self._active = False

        if released:
            self._registry._release(self, released)

    def cancel(self):
        if not self._active:
            return
        self._active = False
        self._registry._release(self, list(self._pv_names))

    def __call__(self):
        self.cancel()


class SubscriptionRegistry(object):

    def __init__(self, channel, stats=None):

        self._channel = channel

        if stats is None:
            stats = StatisticsManager()
        self._stats = stats

        # pv_name -> {Subscription: None}, insertion ordered
        self._subscriptions = {}

        self._callback_release = []
        self._callback_active = []

        self._remove_channel_callback = channel.add_callback_values(self.dispatch)

    def add_callback_release(self, func):
        """
        func(pv_names) after the last consumer of those PVs is gone
        """
        self._callback_release.append(func)

    def add_callback_active(self, func):
        """
        func(True) when the first PV is registered, func(False) when the last
        one is released
        """
        self._callback_active.append(func)

    def subscribe(self, pv_name, callback):
        return self.subscribe_many([pv_name], callback)

    def subscribe_many(self, pv_names, callback):
        """
        Register callback(pv_name, pv_value) for all pv_names.  The channel
        is asked, in one message, to subscribe only to the names that had no
        consumer yet.
        """
        pv_names = normalize_pv_names(pv_names)
        subscription = Subscription(self, pv_names, callback)

        was_empty = not self._subscriptions
        new_names = []

        for pv_name in pv_names:
            handles = self._subscriptions.get(pv_name)
            if handles is None:
                handles = {}
                self._subscriptions[pv_name] = handles
                new_names.append(pv_name)
            handles[subscription] = None

        log.debug(
            "subscribe: %d PVs (%d new), total: %d",
            len(pv_names),
            len(new_names),
            len(self._subscriptions),
        )

        if new_names:
            self._channel.subscribe(new_names)

        if was_empty and self._subscriptions:
            self._notify_active(True)

        return subscription

    def _release(self, subscription, pv_names):
        released = []

        for pv_name in pv_names:
            handles = self._subscriptions.get(pv_name)
            if handles is None:
                continue

            handles.pop(subscription, None)
            if not handles:
                del self._subscriptions[pv_name]
                released.append(pv_name)

        if not released:
            return

        log.debug(
            "release: %d PVs, remaining: %d",
            len(released),
            len(self._subscriptions),
        )

        self._channel.unsubscribe(released)

        for func in list(self._callback_release):
            try:
                func(released)
            except Exception as err:
                self._stats.increment("Registry callback errors")
                log.exception("Exception in release callback: %r", err)

        if not self._subscriptions:
            self._notify_active(False)

    def _notify_active(self, active):
        for func in list(self._callback_active):
            try:
                func(active)
            except Exception as err:
                self._stats.increment("Registry callback errors")
                log.exception("Exception in active callback: %r", err)

    def dispatch(self, pv_name, value):
        """
        Hand a received value to every consumer of pv_name.  Iterates over a
        copy, so a callback may subscribe or unsubscribe; handles cancelled
        part way through are skipped.
        """
        handles = self._subscriptions.get(pv_name)
        if not handles:
            self._stats.increment("Values unrouted")
            return

        for subscription in list(handles):
            if not subscription.is_active():
                continue
            try:
                subscription.callback(pv_name, value)
            except Exception as err:
                self._stats.increment("Consumer callback errors")
                log.exception(
                    "Exception in callback for PV %s: %r", pv_name, err
                )

    def get_pv_names(self):
        return list(self._subscriptions)

    def get_ref_count(self, pv_name):
        return len(self._subscriptions.get(pv_name, ()))

    def is_subscribed(self, pv_name):
        return pv_name in self._subscriptions

    def close(self):
        """
        Cancel every subscription and detach from the channel
        """
        handles = {}
        for pv_handles in self._subscriptions.values():
            handles.update(pv_handles)

        for subscription in handles:
            subscription.cancel()

        self._remove_channel_callback()
