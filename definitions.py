# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Constants shared by the live-data client: wire keys, message types,
#     EPICS alarm codes, channel states and default timings.
# ---------------------------------------------------------------------


class Constant(object):

    @classmethod
    def validate(cls, value):

        for k, v in list(cls.__dict__.items()):
            if value == v:
                if not k.startswith("_"):
                    return True
        return False

    @classmethod
    def name(cls, value):

        for k, v in list(cls.__dict__.items()):
            if value == v:
                if not k.startswith("_"):
                    return "%s.%s" % (cls.__name__, k)

        return "%s.UNKNOWN" % cls.__name__

    @classmethod
    def items(cls):
        result = {}
        for k, v in list(cls.__dict__.items()):
            if not k.startswith("_"):
                result[k] = v
        return result


# Keys used in the JSON frames and REST envelopes.  These are defined by the
# backend and cannot be changed here


class KEY(object):
    TYPE = "type"
    PV_NAMES = "pvNames"
    PV_NAME = "pvName"
    DATA = "data"
    VALUES = "values"
    VALUE = "value"
    MESSAGE = "message"
    ERROR = "error"
    PAYLOAD = "payload"
    ERROR_CODE = "errorCode"
    ERROR_MESSAGE = "errorMessage"
    ALIVE = "alive"
    TIMESTAMP = "timestamp"
    AGE_SECONDS = "age_seconds"
    STATUS = "status"
    SEVERITY = "severity"
    CONNECTED = "connected"
    UPDATED_AT = "updated_at"
    UPDATED_AT_ALT = "updatedAt"
    UNITS = "units"
    QUERY_PV_NAMES = "pv_names"


class MSG_TYPE(Constant):
    # Client -> server
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"

    # Server -> client, batches of PV values
    INITIAL = "initial"
    DIFF = "diff"
    SNAPSHOT = "snapshot"
    INITIAL_VALUES = "initial_values"
    ALL_VALUES = "all_values"
    SUBSCRIBE_ACK = "subscribe_ack"
    UPDATE = "update"

    # Server -> client, single PV value
    PV_UPDATE = "pv_update"

    # Server -> client, no PV data
    HEARTBEAT = "heartbeat"
    PONG = "pong"
    ERROR = "error"


VALUE_MSG_TYPES = (
    MSG_TYPE.INITIAL,
    MSG_TYPE.DIFF,
    MSG_TYPE.SNAPSHOT,
    MSG_TYPE.INITIAL_VALUES,
    MSG_TYPE.ALL_VALUES,
    MSG_TYPE.SUBSCRIBE_ACK,
    MSG_TYPE.UPDATE,
)

KEEPALIVE_MSG_TYPES = (
    MSG_TYPE.HEARTBEAT,
    MSG_TYPE.PONG,
)


class SEVERITY(Constant):
    NO_ALARM = 0
    MINOR = 1
    MAJOR = 2
    INVALID = 3


class STATUS(Constant):
    NO_ALARM = 0
    READ = 1
    WRITE = 2
    HIHI = 3
    HIGH = 4
    LOLO = 5
    LOW = 6
    STATE = 7
    COS = 8
    COMM = 9
    TIMEOUT = 10
    HWLIMIT = 11
    CALC = 12
    SCAN = 13
    LINK = 14
    SOFT = 15
    BAD_SUB = 16
    UDF = 17
    DISABLE = 18
    SIMM = 19
    READ_ACCESS = 20
    WRITE_ACCESS = 21


class CHANNEL_STATE(Constant):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECT_SCHEDULED = "reconnect-scheduled"


# Allowed transitions of the live channel state machine
CHANNEL_TRANSITIONS = {
    CHANNEL_STATE.DISCONNECTED: (
        CHANNEL_STATE.CONNECTING,
        CHANNEL_STATE.RECONNECT_SCHEDULED,
    ),
    CHANNEL_STATE.CONNECTING: (
        CHANNEL_STATE.OPEN,
        CHANNEL_STATE.DISCONNECTED,
        CHANNEL_STATE.CLOSING,
    ),
    CHANNEL_STATE.OPEN: (
        CHANNEL_STATE.CLOSING,
        CHANNEL_STATE.DISCONNECTED,
    ),
    CHANNEL_STATE.CLOSING: (CHANNEL_STATE.DISCONNECTED,),
    CHANNEL_STATE.RECONNECT_SCHEDULED: (
        CHANNEL_STATE.CONNECTING,
        CHANNEL_STATE.DISCONNECTED,
    ),
}


class CONNECTION(Constant):
    """
    Per-PV connection indicator states
    """

    UNKNOWN = "unknown"
    DISCONNECTED = "disconnected"
    STALE = "stale"
    CONNECTED = "connected"


class ROW_STATE(Constant):
    NORMAL = "normal"
    STALE = "stale"
    DISCONNECTED = "disconnected"


class ENDPOINT(object):
    WS_LIVE = "/v1/ws/live"
    HEARTBEAT = "/v1/health/heartbeat"
    PVS_LIVE = "/v1/pvs/live"


class SETTINGS(object):
    BASE_URL = "http://localhost:8080"

    FLUSH_INTERVAL = 0.5
    HEARTBEAT_INTERVAL = 2.0
    POLL_INTERVAL = 2.0

    RECONNECT_BASE_DELAY = 1.0
    RECONNECT_MAX_DELAY = 30.0
    MAX_RECONNECT_ATTEMPTS = 10

    # Only the first few reconnect attempts are logged at INFO
    RECONNECT_LOG_ATTEMPTS = 3

    # Protocol level ping on the websocket
    WS_PING_INTERVAL = 20.0

    STALE_THRESHOLD = 60
    ROW_STALE_THRESHOLD = 300

    REQUEST_TIMEOUT = 30.0
    POLL_CHUNK_SIZE = 200
    USE_POLL_FALLBACK = True


LOGGER_NAME = "SquirrelLogger"
