# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Pure functions deciding how a live value should be displayed: whether
#     it differs from a saved value beyond tolerance, and whether it is stale.
# ---------------------------------------------------------------------
import math
import numbers
import time

from definitions import CONNECTION, ROW_STATE, SETTINGS
from utilities.utils import make_stale_age_str


def _is_number(value):
    # bool is an int subclass but is never compared numerically
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _is_sequence(value):
    return isinstance(value, (list, tuple))


def _strict_equal(saved, live):
    if _is_sequence(saved) and _is_sequence(live):
        return tuple(saved) == tuple(live)
    return type(saved) is type(live) and saved == live


def within_tolerance(saved, live, abs_tol=0, rel_tol=0):
    """
    True if live is close enough to saved.

    Both None counts as a match (nothing to compare); only one None is not.
    Strings must match exactly.  Numbers match exactly, or within abs_tol,
    or within rel_tol as a fraction of |saved|; with no tolerance given only
    an exact match counts.
    """
    if saved is None and live is None:
        return True

    if saved is None or live is None:
        return False

    if isinstance(saved, str) or isinstance(live, str):
        return str(saved) == str(live)

    if not (_is_number(saved) and _is_number(live)):
        return _strict_equal(saved, live)

    if math.isnan(saved) or math.isnan(live):
        return False

    if saved == live:
        return True

    abs_tol = abs_tol or 0
    rel_tol = rel_tol or 0
    diff = abs(saved - live)

    if abs_tol > 0 and diff <= abs_tol:
        return True

    if rel_tol > 0 and saved != 0:
        if diff / abs(saved) <= rel_tol:
            return True

    return False


def is_stale(updated_at, threshold_seconds, now=None):
    """
    True if the value is older than threshold_seconds.  A value that was
    never received (updated_at None) is not stale; callers show that state
    separately.
    """
    if updated_at is None:
        return False

    if now is None:
        now = time.time()

    return now - updated_at > threshold_seconds


def is_value_different(saved, live, abs_tol=None, rel_tol=None):
    """
    True if a live cell should be highlighted as differing from the saved
    value.  Nothing is highlighted while either side is missing.
    """
    if saved is None or live is None:
        return False

    if isinstance(saved, str) or isinstance(live, str):
        return str(saved) != str(live)

    if _is_number(saved) and _is_number(live):
        diff = abs(saved - live)

        if abs_tol is not None and diff <= abs_tol:
            return False

        if rel_tol is not None and saved != 0:
            if diff / abs(saved) <= rel_tol:
                return False

        if abs_tol is None and rel_tol is None:
            return saved != live

        return True

    if _is_sequence(saved) and _is_sequence(live):
        if len(saved) != len(live):
            return True
        return any(s != l for s, l in zip(saved, live))

    return not _strict_equal(saved, live)


def _get_data(item):
    if item is None:
        return None
    if isinstance(item, dict):
        return item.get("data")
    return getattr(item, "value", None)


def check_pv_tolerance(pv, live_values, setpoint_pv):
    """
    Compare a saved PV's setpoint with its live value.

    pv is a saved PV record (dict) with optional setpoint_data, abs_tolerance
    and rel_tolerance.  live_values maps PV names to PVValue (or to dicts
    with a "data" key).
    """
    saved = _get_data(pv.get("setpoint_data"))
    live = _get_data(live_values.get(setpoint_pv))

    return within_tolerance(
        saved,
        live,
        pv.get("abs_tolerance") or 0,
        pv.get("rel_tolerance") or 0,
    )


def get_connection_state(
    connected, updated_at, threshold_seconds=SETTINGS.STALE_THRESHOLD, now=None
):
    """
    Per-PV indicator state.  Returns (state, tooltip).
    """
    if connected is None:
        return CONNECTION.UNKNOWN, "Connection status unknown"

    if not connected:
        return CONNECTION.DISCONNECTED, "Disconnected from IOC"

    if updated_at and is_stale(updated_at, threshold_seconds, now=now):
        if now is None:
            now = time.time()
        age = now - updated_at
        return (
            CONNECTION.STALE,
            "Connected but stale (%s old)" % make_stale_age_str(age),
        )

    return CONNECTION.CONNECTED, "Connected"


def get_row_state(
    connected, updated_at, threshold_seconds=SETTINGS.ROW_STALE_THRESHOLD, now=None
):
    if connected is False:
        return ROW_STATE.DISCONNECTED

    if updated_at and is_stale(updated_at, threshold_seconds, now=now):
        return ROW_STATE.STALE

    return ROW_STATE.NORMAL
