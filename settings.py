# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Runtime configuration (YAML file on top of built-in defaults) and
#     logging setup.
# ---------------------------------------------------------------------
import logging
import os
import sys

from configmanager import Config

from definitions import ENDPOINT, LOGGER_NAME, SETTINGS
from utilities.squirrel_logger import SquirrelLogger
from utilities.utils import make_ws_url


def _make_interval(seconds):
    return {"MILLISECONDS": 0.0, "SECONDS": float(seconds), "MINUTES": 0.0}


# Float defaults so that fractional values in the YAML file are accepted
DEFAULTS = {
    "BACKEND": {
        "BASE_URL": SETTINGS.BASE_URL,
        "WS_URL": "",
        "REQUEST_TIMEOUT": _make_interval(SETTINGS.REQUEST_TIMEOUT),
    },
    "LIVE": {
        "USE_POLL_FALLBACK": SETTINGS.USE_POLL_FALLBACK,
        "POLL_CHUNK_SIZE": SETTINGS.POLL_CHUNK_SIZE,
        "MAX_RECONNECT_ATTEMPTS": SETTINGS.MAX_RECONNECT_ATTEMPTS,
    },
    "FLUSH_INTERVAL": _make_interval(SETTINGS.FLUSH_INTERVAL),
    "HEARTBEAT_INTERVAL": _make_interval(SETTINGS.HEARTBEAT_INTERVAL),
    "POLL_INTERVAL": _make_interval(SETTINGS.POLL_INTERVAL),
    "RECONNECT_BASE_DELAY": _make_interval(SETTINGS.RECONNECT_BASE_DELAY),
    "RECONNECT_MAX_DELAY": _make_interval(SETTINGS.RECONNECT_MAX_DELAY),
    "STALE_THRESHOLD": _make_interval(SETTINGS.STALE_THRESHOLD),
    "ROW_STALE_THRESHOLD": _make_interval(SETTINGS.ROW_STALE_THRESHOLD),
}


# Converts the intervals entered in the config file to seconds
def calculate_time(time):
    millisecond, second, minute = 0.001, 1, 60

    return (
        (float(time.MILLISECONDS.value) * millisecond)
        + (float(time.SECONDS.value) * second)
        + (float(time.MINUTES.value) * minute)
    )


class Configuration:
    def __init__(self) -> None:
        self.config = None
        self.load_config(None)

    def load_config(self, config_file) -> None:
        """
        Load config_file over the built-in defaults.  A relative path is
        taken relative to the current directory.  With no file only the
        defaults are used.
        """
        self.config = Config(DEFAULTS)

        if config_file:
            config_path = os.path.abspath(config_file)
            if not os.path.isfile(config_path):
                raise FileNotFoundError("No such config file: %s" % config_path)
            self.config.yaml.load(config_path, as_defaults=True)

        backend = self.config.BACKEND
        live = self.config.LIVE

        self.BASE_URL = backend.BASE_URL.value.rstrip("/")
        self.WS_URL = backend.WS_URL.value or make_ws_url(
            self.BASE_URL, ENDPOINT.WS_LIVE
        )
        self.REQUEST_TIMEOUT = calculate_time(backend.REQUEST_TIMEOUT)

        self.USE_POLL_FALLBACK = bool(live.USE_POLL_FALLBACK.value)
        self.POLL_CHUNK_SIZE = int(live.POLL_CHUNK_SIZE.value)
        self.MAX_RECONNECT_ATTEMPTS = int(live.MAX_RECONNECT_ATTEMPTS.value)

        self.FLUSH_INTERVAL = calculate_time(self.config.FLUSH_INTERVAL)
        self.HEARTBEAT_INTERVAL = calculate_time(self.config.HEARTBEAT_INTERVAL)
        self.POLL_INTERVAL = calculate_time(self.config.POLL_INTERVAL)
        self.RECONNECT_BASE_DELAY = calculate_time(self.config.RECONNECT_BASE_DELAY)
        self.RECONNECT_MAX_DELAY = calculate_time(self.config.RECONNECT_MAX_DELAY)
        self.STALE_THRESHOLD = calculate_time(self.config.STALE_THRESHOLD)
        self.ROW_STALE_THRESHOLD = calculate_time(self.config.ROW_STALE_THRESHOLD)

        if self.FLUSH_INTERVAL <= 0:
            raise ValueError("FLUSH_INTERVAL must be positive")

        if self.RECONNECT_MAX_DELAY < self.RECONNECT_BASE_DELAY:
            raise ValueError("RECONNECT_MAX_DELAY is less than RECONNECT_BASE_DELAY")


def config_log(level="CRITICAL", stack_info=False) -> None:
    logging.setLoggerClass(SquirrelLogger)
    try:
        logging.basicConfig(
            level=level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
    except ValueError:
        print(
            "Level should be one of NOTSET, DEBUG, INFO, WARNING, ERROR, CRITICAL"
            "\nYou entered:",
            level,
        )
        sys.exit(1)

    logger = logging.getLogger(LOGGER_NAME)
    if isinstance(logger, SquirrelLogger):
        logger.setStackInfo(stack_info)
