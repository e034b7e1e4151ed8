# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Command line monitor: follows a list of PVs through the live-data
#     service and prints their values on every flush.
# ---------------------------------------------------------------------
import logging

from utilities.squirrel_logger import SquirrelLogger

logging.setLoggerClass(SquirrelLogger)

import argparse
import asyncio
import sys
import time

import aiohttp

from definitions import (ENDPOINT, LOGGER_NAME, ROW_STATE, SETTINGS, SEVERITY,
                         STATUS)
from live_data.heartbeat_monitor import make_banner_text
from live_data.live_service import LiveDataService
from live_data.tolerance import get_connection_state, get_row_state
from settings import Configuration, config_log
from utilities.utils import make_duration_string, make_ws_url, normalize_pv_names

log = logging.getLogger(LOGGER_NAME)

MAX_ARRAY_ITEMS = 5

ROW_MARKERS = {
    ROW_STATE.NORMAL: " ",
    ROW_STATE.STALE: "*",
    ROW_STATE.DISCONNECTED: "x",
}


def read_pv_file(path):
    """
    One PV name per line; blank lines and lines starting with # are skipped
    """
    pv_names = []
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            pv_names.append(line)
    return pv_names


def format_value(value):
    if value is None:
        return "---"

    if isinstance(value, (list, tuple)):
        items = ", ".join(format_value(item) for item in value[:MAX_ARRAY_ITEMS])
        if len(value) > MAX_ARRAY_ITEMS:
            items += ", ... (%d)" % len(value)
        return "[%s]" % items

    if isinstance(value, float):
        return "%g" % value

    return str(value)


def format_alarm(pv_value):
    """
    e.g. "MAJOR/HIHI"; the status is left off when the backend sent none
    """
    severity = SEVERITY.name(pv_value.severity).split(".")[-1]
    if pv_value.status is None:
        return severity
    return "%s/%s" % (severity, STATUS.name(pv_value.status).split(".")[-1])


def format_rows(
    pv_names,
    values,
    stale_threshold,
    now,
    row_stale_threshold=SETTINGS.ROW_STALE_THRESHOLD,
):
    """
    One line per PV.  The first column marks rows that are disconnected (x)
    or older than row_stale_threshold (*).
    """
    lines = []
    width = max([len(name) for name in pv_names] + [2])

    for pv_name in pv_names:
        pv_value = values.get(pv_name)
        if pv_value is None:
            lines.append("  %-*s  %s" % (width, pv_name, "(no data)"))
            continue

        state, _ = get_connection_state(
            pv_value.connected, pv_value.updated_at, stale_threshold, now=now
        )
        row_state = get_row_state(
            pv_value.connected, pv_value.updated_at, row_stale_threshold, now=now
        )

        value = format_value(pv_value.value)
        if pv_value.units:
            value = "%s %s" % (value, pv_value.units)

        lines.append(
            "%s %-*s  %-24s  %-16s  %s"
            % (
                ROW_MARKERS[row_state],
                width,
                pv_name,
                value,
                format_alarm(pv_value),
                state,
            )
        )

    return lines


def apply_url(cfg, url):
    """
    Point cfg at another backend.  A WS_URL set in the config file is kept.
    """
    cfg.BASE_URL = url.rstrip("/")
    if not cfg.config.BACKEND.WS_URL.value:
        cfg.WS_URL = make_ws_url(cfg.BASE_URL, ENDPOINT.WS_LIVE)


class Monitor(object):

    def __init__(self, cfg, pv_names, duration=None):
        self._cfg = cfg
        self._pv_names = pv_names
        self._duration = duration
        self._start_time = None

    def print_values(self, values):
        now = time.time()
        print(
            "--- %s (%s) ---"
            % (
                time.strftime("%H:%M:%S", time.localtime(now)),
                make_duration_string(now - self._start_time),
            )
        )
        for line in format_rows(
            self._pv_names,
            values,
            self._cfg.STALE_THRESHOLD,
            now,
            self._cfg.ROW_STALE_THRESHOLD,
        ):
            print(line)

    def print_heartbeat(self, state):
        banner = make_banner_text(state)
        if banner:
            print("*** %s ***" % banner)

    async def run(self):
        self._start_time = time.time()

        async with aiohttp.ClientSession() as session:
            service = LiveDataService.from_config(self._cfg, session=session)

            async with service:
                service.subscribe_heartbeat(self.print_heartbeat)

                with service.view(self._pv_names) as view:
                    view.add_listener(self.print_values)

                    if self._duration:
                        await asyncio.sleep(self._duration)
                    else:
                        await asyncio.Event().wait()

                log.info("Live monitor status: %r", service.get_status())


def main():
    parser = argparse.ArgumentParser(
        description="Monitor live EPICS PV values from the Squirrel backend"
    )
    parser.add_argument(
        "--config",
        help="Configuration yml file",
        type=str,
        required=False,
    )
    parser.add_argument(
        "--url",
        help="Backend base URL (overrides the config file)",
        type=str,
        required=False,
    )
    parser.add_argument(
        "-p",
        "--pv",
        help="PV name to monitor (may be repeated)",
        action="append",
        default=[],
    )
    parser.add_argument(
        "--pv-file",
        help="File with one PV name per line",
        type=str,
        required=False,
    )
    parser.add_argument(
        "--duration",
        help="Seconds to run for (default: until interrupted)",
        type=float,
        required=False,
    )
    parser.add_argument(
        "-l",
        "--loglevel",
        default="CRITICAL",
        help="Set the logging level (e.g. NOTSET, DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    parser.add_argument(
        "-s",
        "--stackinfo",
        action="store_true",
        help="Include stack information in logging output",
    )

    args = parser.parse_args()
    config_log(args.loglevel, args.stackinfo)

    cfg = Configuration()
    cfg.load_config(args.config)
    if args.url:
        apply_url(cfg, args.url)

    pv_names = list(args.pv)
    if args.pv_file:
        pv_names.extend(read_pv_file(args.pv_file))
    pv_names = normalize_pv_names(pv_names)

    if not pv_names:
        parser.error("no PV names given (use -p or --pv-file)")

    monitor = Monitor(cfg, pv_names, args.duration)
    try:
        asyncio.run(monitor.run())
    except KeyboardInterrupt:
        pass

    return 0


if __name__ == "__main__":
    sys.exit(main())
