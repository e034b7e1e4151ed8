# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Small helpers for formatting ages and cleaning up PV name lists.
# ---------------------------------------------------------------------
import math


def make_age_str(age_seconds):
    """
    Short form used by the disconnected banner: "12s ago", "5m ago", "2h ago"
    """
    if age_seconds is None:
        return "unknown"

    try:
        age_seconds = float(age_seconds)
    except (TypeError, ValueError):
        return "unknown"

    if math.isnan(age_seconds):
        return "unknown"

    if age_seconds < 60:
        return "%ds ago" % round(age_seconds)

    if age_seconds < 3600:
        return "%dm ago" % round(age_seconds / 60)

    return "%dh ago" % round(age_seconds / 3600)


def make_stale_age_str(age_seconds):
    """
    Compact age shown beside a stale PV, e.g. "45s", "5m" or "2h"
    """
    if age_seconds < 60:
        return "%ds" % round(age_seconds)

    if age_seconds < 3600:
        return "%dm" % round(age_seconds / 60)

    return "%dh" % round(age_seconds / 3600)


def make_duration_string(duration):
    if duration is None:
        return ""

    try:
        duration = int(duration)
    except (TypeError, ValueError):
        return ""

    if duration < 60:
        return "%d sec" % duration

    if duration < 3600:
        minutes = int(duration / 60)
        seconds = duration - (minutes * 60)
        return "%d min %d sec" % (minutes, seconds)

    hours = int(duration / 3600)
    minutes = int((duration - hours * 3600) / 60)

    days = int(hours / 24)
    if days > 0:
        hours -= days * 24
        if days == 1:
            return "1 day %d hours %d min" % (hours, minutes)
        return "%d days %d hours %d min" % (days, hours, minutes)

    return "%d hr %d min" % (hours, minutes)


def normalize_pv_names(pv_names):
    """
    Return the PV names as a list with duplicates and blanks removed,
    keeping the order in which they were first seen.
    """
    if pv_names is None:
        return []

    if isinstance(pv_names, (str, bytes)):
        pv_names = [pv_names]

    result = []
    seen = set()
    for pv_name in pv_names:
        if isinstance(pv_name, bytes):
            pv_name = pv_name.decode("utf-8")

        if not isinstance(pv_name, str):
            raise ValueError("PV name not a string: %r" % (pv_name,))

        pv_name = pv_name.strip()
        if not pv_name:
            continue

        if pv_name in seen:
            continue

        seen.add(pv_name)
        result.append(pv_name)

    return result


def chunk_list(items, size):
    if size <= 0:
        raise ValueError("chunk size must be positive: %r" % size)

    for i in range(0, len(items), size):
        yield items[i : i + size]


def make_ws_url(base_url, path):
    """
    Websocket URL for a path on the same host as the HTTP base URL
    """
    if base_url.startswith("https://"):
        base = "wss://" + base_url[len("https://") :]
    elif base_url.startswith("http://"):
        base = "ws://" + base_url[len("http://") :]
    else:
        base = base_url

    return base.rstrip("/") + path
