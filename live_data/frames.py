# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     JSON frames exchanged with the backend's live PV feed.
#
#     Incoming frames are decoded into one of a small set of frame classes
#     so that the channel can dispatch on the class instead of on strings:
#
#       ValuesFrame     - PV name -> PVValue pairs (initial, diff, snapshot)
#       HeartbeatFrame  - keep-alive, no PV data
#       ErrorFrame      - error reported by the server, non-fatal
#       UnknownFrame    - anything else; ignored by the channel
# ---------------------------------------------------------------------
import json
from collections import namedtuple

from definitions import KEEPALIVE_MSG_TYPES, KEY, MSG_TYPE, VALUE_MSG_TYPES
from live_data.pv_value import PVValue


class FrameError(ValueError):
    pass


ValuesFrame = namedtuple("ValuesFrame", ["kind", "values"])
HeartbeatFrame = namedtuple("HeartbeatFrame", ["kind"])
ErrorFrame = namedtuple("ErrorFrame", ["kind", "message"])
UnknownFrame = namedtuple("UnknownFrame", ["kind"])


def decode_frame(raw):
    """
    Decode one text (or utf-8 bytes) frame.  Raises FrameError if the frame
    is not a JSON object or a values frame carries a malformed PV value.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as err:
            raise FrameError("frame is not utf-8: %s" % err)

    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as err:
        raise FrameError("frame is not JSON: %s" % err)

    if not isinstance(msg, dict):
        raise FrameError("frame is not an object: %r" % (msg,))

    kind = msg.get(KEY.TYPE)

    if kind in VALUE_MSG_TYPES:
        data = msg.get(KEY.DATA)
        if data is None:
            data = msg.get(KEY.VALUES)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise FrameError("%s frame data is not an object" % kind)
        return ValuesFrame(kind, _decode_values(kind, data))

    if kind == MSG_TYPE.PV_UPDATE:
        pv_name = msg.get(KEY.PV_NAME)
        value = msg.get(KEY.VALUE)
        if not pv_name or value is None:
            return ValuesFrame(kind, [])
        return ValuesFrame(kind, _decode_values(kind, {pv_name: value}))

    if kind in KEEPALIVE_MSG_TYPES:
        return HeartbeatFrame(kind)

    if kind == MSG_TYPE.ERROR:
        message = msg.get(KEY.MESSAGE)
        if message is None:
            message = msg.get(KEY.ERROR)
        return ErrorFrame(kind, message)

    return UnknownFrame(kind)


def _decode_values(kind, data):
    values = []
    for pv_name, raw_value in data.items():
        try:
            values.append((pv_name, PVValue.from_wire(raw_value)))
        except ValueError as err:
            raise FrameError(
                "%s frame has bad value for %s: %s" % (kind, pv_name, err)
            )
    return values


def encode_subscribe(pv_names):
    return json.dumps({KEY.TYPE: MSG_TYPE.SUBSCRIBE, KEY.PV_NAMES: list(pv_names)})


def encode_unsubscribe(pv_names):
    return json.dumps(
        {KEY.TYPE: MSG_TYPE.UNSUBSCRIBE, KEY.PV_NAMES: list(pv_names)}
    )
