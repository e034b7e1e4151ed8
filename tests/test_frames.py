#---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Tests for decoding live feed frames and PV values.
#---------------------------------------------------------------------
import json
import unittest

import os
import sys

sys.path.insert(1, os.path.join(os.path.dirname(__file__), '..'))
from definitions import SEVERITY
from live_data.frames import (ErrorFrame, FrameError, HeartbeatFrame,
                              UnknownFrame, ValuesFrame, decode_frame,
                              encode_subscribe, encode_unsubscribe)
from live_data.pv_value import PVValue


class TestPVValue(unittest.TestCase):

    def test_from_wire(self):
        value = PVValue.from_wire({
            "value": 1.5,
            "status": 0,
            "severity": 1,
            "connected": True,
            "updated_at": 1000,
            "units": "mA",
            "extra": "ignored",
        })
        self.assertEqual(value.value, 1.5)
        self.assertEqual(value.severity, SEVERITY.MINOR)
        self.assertIs(value.connected, True)
        self.assertEqual(value.updated_at, 1000.0)
        self.assertEqual(value.units, "mA")

    def test_defaults(self):
        value = PVValue.from_wire({"value": 2})
        self.assertEqual(value.severity, SEVERITY.INVALID)
        self.assertIsNone(value.connected)
        self.assertIsNone(value.updated_at)

    def test_camel_case_timestamp(self):
        value = PVValue.from_wire({"value": 2, "updatedAt": 12.5})
        self.assertEqual(value.updated_at, 12.5)

    def test_array_value_is_immutable(self):
        value = PVValue.from_wire({"value": [1, 2, 3]})
        self.assertEqual(value.value, (1, 2, 3))
        self.assertEqual(value.to_dict()["value"], [1, 2, 3])

    def test_not_an_object(self):
        with self.assertRaises(ValueError):
            PVValue.from_wire(5)

    def test_bad_timestamp(self):
        with self.assertRaises(ValueError):
            PVValue.from_wire({"value": 1, "updated_at": "yesterday"})

    def test_get_age(self):
        self.assertEqual(PVValue(updated_at=100.0).get_age(130.0), 30.0)
        self.assertIsNone(PVValue().get_age(130.0))


class TestDecodeFrame(unittest.TestCase):

    def test_initial(self):
        frame = decode_frame(json.dumps({
            "type": "initial",
            "data": {"A": {"value": 1}, "B": {"value": 2}},
        }))
        self.assertIsInstance(frame, ValuesFrame)
        self.assertEqual(frame.kind, "initial")
        self.assertEqual([name for name, _ in frame.values], ["A", "B"])
        self.assertEqual(frame.values[1][1].value, 2)

    def test_diff_and_snapshot(self):
        for kind in ("diff", "snapshot"):
            frame = decode_frame(json.dumps({"type": kind, "data": {"A": {"value": 1}}}))
            self.assertIsInstance(frame, ValuesFrame)

    def test_values_fallback(self):
        frame = decode_frame(json.dumps({"type": "update", "values": {"A": {"value": 1}}}))
        self.assertEqual(len(frame.values), 1)

    def test_no_data(self):
        frame = decode_frame(json.dumps({"type": "diff"}))
        self.assertEqual(frame.values, [])

    def test_pv_update(self):
        frame = decode_frame(json.dumps({
            "type": "pv_update",
            "pvName": "A",
            "value": {"value": 3},
        }))
        self.assertEqual(frame.values[0][0], "A")
        self.assertEqual(frame.values[0][1].value, 3)

    def test_bytes(self):
        frame = decode_frame(b'{"type": "heartbeat"}')
        self.assertIsInstance(frame, HeartbeatFrame)

    def test_pong(self):
        self.assertIsInstance(decode_frame('{"type": "pong"}'), HeartbeatFrame)

    def test_error(self):
        frame = decode_frame('{"type": "error", "message": "bad PV"}')
        self.assertIsInstance(frame, ErrorFrame)
        self.assertEqual(frame.message, "bad PV")

    def test_unknown(self):
        frame = decode_frame('{"type": "something_new"}')
        self.assertIsInstance(frame, UnknownFrame)
        self.assertEqual(frame.kind, "something_new")

    def test_not_json(self):
        with self.assertRaises(FrameError):
            decode_frame("not json")

    def test_not_an_object(self):
        with self.assertRaises(FrameError):
            decode_frame("[1, 2]")

    def test_bad_value(self):
        with self.assertRaises(FrameError):
            decode_frame('{"type": "diff", "data": {"A": 5}}')

    def test_bad_data(self):
        with self.assertRaises(FrameError):
            decode_frame('{"type": "diff", "data": [1]}')


class TestEncode(unittest.TestCase):

    def test_subscribe(self):
        self.assertEqual(
            json.loads(encode_subscribe(["A", "B"])),
            {"type": "subscribe", "pvNames": ["A", "B"]},
        )

    def test_unsubscribe(self):
        self.assertEqual(
            json.loads(encode_unsubscribe(["A"])),
            {"type": "unsubscribe", "pvNames": ["A"]},
        )


if __name__ == "__main__":
    unittest.main()
