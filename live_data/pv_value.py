# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Immutable live sample of a single PV as delivered by the backend.
# ---------------------------------------------------------------------
from collections import namedtuple

from definitions import KEY, SEVERITY

_PVValueBase = namedtuple(
    "PVValue",
    ["value", "status", "severity", "connected", "updated_at", "units", "error"],
)


class PVValue(_PVValueBase):
    """
    One live sample.  A later sample for the same PV supersedes it; a sample
    is never modified after it is received.

    connected is None when the backend did not report it.
    """

    __slots__ = ()

    def __new__(
        cls,
        value=None,
        status=None,
        severity=SEVERITY.INVALID,
        connected=None,
        updated_at=None,
        units=None,
        error=None,
    ):
        return super(PVValue, cls).__new__(
            cls, value, status, severity, connected, updated_at, units, error
        )

    @classmethod
    def from_wire(cls, data):
        if isinstance(data, PVValue):
            return data

        if not isinstance(data, dict):
            raise ValueError("PV value is not an object: %r" % (data,))

        severity = data.get(KEY.SEVERITY)
        if severity is None:
            severity = SEVERITY.INVALID

        updated_at = data.get(KEY.UPDATED_AT)
        if updated_at is None:
            updated_at = data.get(KEY.UPDATED_AT_ALT)

        if updated_at is not None:
            try:
                updated_at = float(updated_at)
            except (TypeError, ValueError):
                raise ValueError("bad updated_at: %r" % (updated_at,))

        connected = data.get(KEY.CONNECTED)
        if connected is not None:
            connected = bool(connected)

        value = data.get(KEY.VALUE)
        if isinstance(value, list):
            value = tuple(value)

        return cls(
            value=value,
            status=data.get(KEY.STATUS),
            severity=severity,
            connected=connected,
            updated_at=updated_at,
            units=data.get(KEY.UNITS),
            error=data.get(KEY.ERROR),
        )

    def to_dict(self):
        result = {
            KEY.VALUE: list(self.value)
            if isinstance(self.value, tuple)
            else self.value,
            KEY.STATUS: self.status,
            KEY.SEVERITY: self.severity,
            KEY.CONNECTED: self.connected,
            KEY.UPDATED_AT: self.updated_at,
        }
        if self.units is not None:
            result[KEY.UNITS] = self.units
        if self.error is not None:
            result[KEY.ERROR] = self.error
        return result

    def get_age(self, now):
        if self.updated_at is None:
            return None
        return now - self.updated_at
