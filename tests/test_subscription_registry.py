#---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Tests for reference counted PV subscriptions.
#---------------------------------------------------------------------
import unittest
from unittest.mock import MagicMock, call

import os
import sys

sys.path.insert(1, os.path.join(os.path.dirname(__file__), '..'))
from live_data.pv_value import PVValue
from live_data.subscription_registry import SubscriptionRegistry
from utilities.statistics import StatisticsManager


class TestSubscriptionRegistry(unittest.TestCase):

    def setUp(self) -> None:
        self.channel = MagicMock()
        self.remove_values = MagicMock()
        self.channel.add_callback_values.return_value = self.remove_values
        self.stats = StatisticsManager()
        self.registry = SubscriptionRegistry(self.channel, stats=self.stats)

    def test_registers_with_channel(self):
        self.channel.add_callback_values.assert_called_once_with(
            self.registry.dispatch
        )

    def test_first_subscribe_sends(self):
        self.registry.subscribe("X", MagicMock())
        self.channel.subscribe.assert_called_once_with(["X"])

    def test_reference_counting(self):
        """A subscribes, B subscribes, A cancels: still subscribed; B cancels: released"""
        a = self.registry.subscribe("X", MagicMock())
        b = self.registry.subscribe("X", MagicMock())

        self.channel.subscribe.assert_called_once_with(["X"])
        self.assertEqual(self.registry.get_ref_count("X"), 2)

        a()
        self.channel.unsubscribe.assert_not_called()
        self.assertTrue(self.registry.is_subscribed("X"))

        b.cancel()
        self.channel.unsubscribe.assert_called_once_with(["X"])
        self.assertFalse(self.registry.is_subscribed("X"))

    def test_cancel_twice(self):
        handle = self.registry.subscribe("X", MagicMock())
        handle()
        handle()
        self.channel.unsubscribe.assert_called_once_with(["X"])
        self.assertFalse(handle.is_active())

    def test_partial_release(self):
        """Releasing some names of a handle leaves the others registered"""
        callback = MagicMock()
        handle = self.registry.subscribe_many(["A", "B", "C"], callback)

        handle.release(["B", "Z"])

        self.channel.unsubscribe.assert_called_once_with(["B"])
        self.assertTrue(handle.is_active())
        self.assertEqual(handle.pv_names, ["A", "C"])
        self.assertEqual(self.registry.get_pv_names(), ["A", "C"])

        self.registry.dispatch("B", PVValue(value=1))
        self.registry.dispatch("A", PVValue(value=2))
        callback.assert_called_once_with("A", PVValue(value=2))

        handle.release(["A", "C"])
        self.assertFalse(handle.is_active())
        self.assertEqual(self.registry.get_pv_names(), [])

        handle.cancel()
        self.assertEqual(self.channel.unsubscribe.call_count, 2)

    def test_partial_release_shared_name(self):
        a = self.registry.subscribe_many(["A", "B"], MagicMock())
        self.registry.subscribe("B", MagicMock())

        a.release(["B"])

        self.channel.unsubscribe.assert_not_called()
        self.assertEqual(self.registry.get_ref_count("B"), 1)

    def test_subscribe_many_batches_new_names(self):
        self.registry.subscribe("B", MagicMock())
        self.channel.subscribe.reset_mock()

        handle = self.registry.subscribe_many(["A", "B", "C", "A"], MagicMock())

        self.channel.subscribe.assert_called_once_with(["A", "C"])
        self.assertEqual(handle.pv_names, ["A", "B", "C"])

        handle.cancel()
        self.channel.unsubscribe.assert_called_once_with(["A", "C"])

    def test_dispatch(self):
        callback = MagicMock()
        self.registry.subscribe_many(["A", "B"], callback)
        value = PVValue(value=1)

        self.registry.dispatch("A", value)
        self.registry.dispatch("Z", value)

        callback.assert_called_once_with("A", value)
        self.assertEqual(self.stats.get("Values unrouted"), 1)

    def test_dispatch_error_isolated(self):
        bad = MagicMock(side_effect=RuntimeError("boom"))
        good = MagicMock()
        self.registry.subscribe("A", bad)
        self.registry.subscribe("A", good)

        self.registry.dispatch("A", PVValue(value=1))

        good.assert_called_once()
        self.assertEqual(self.stats.get("Consumer callback errors"), 1)

    def test_cancel_during_dispatch(self):
        """A callback cancelling a later handle stops that handle being called"""
        second = MagicMock()
        handles = []

        def first(pv_name, value):
            handles[1].cancel()

        handles.append(self.registry.subscribe("A", first))
        handles.append(self.registry.subscribe("A", second))

        self.registry.dispatch("A", PVValue(value=1))

        second.assert_not_called()
        self.assertEqual(self.registry.get_ref_count("A"), 1)

    def test_subscribe_during_dispatch(self):
        late = MagicMock()

        def first(pv_name, value):
            self.registry.subscribe("A", late)

        self.registry.subscribe("A", first)
        self.registry.dispatch("A", PVValue(value=1))

        late.assert_not_called()
        self.assertEqual(self.registry.get_ref_count("A"), 2)

    def test_release_callback(self):
        released = MagicMock()
        self.registry.add_callback_release(released)

        a = self.registry.subscribe_many(["A", "B"], MagicMock())
        self.registry.subscribe("B", MagicMock())
        a.cancel()

        released.assert_called_once_with(["A"])

    def test_active_callback(self):
        active = MagicMock()
        self.registry.add_callback_active(active)

        a = self.registry.subscribe("A", MagicMock())
        b = self.registry.subscribe("B", MagicMock())
        a.cancel()
        b.cancel()

        self.assertEqual(active.call_args_list, [call(True), call(False)])

    def test_close(self):
        self.registry.subscribe("A", MagicMock())
        self.registry.subscribe_many(["A", "B"], MagicMock())

        self.registry.close()

        self.assertEqual(self.registry.get_pv_names(), [])
        self.remove_values.assert_called_once()


if __name__ == "__main__":
    unittest.main()
