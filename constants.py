import os


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

CHAT_ROOM = os.getenv("CHAT_ROOM", "global")

HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", 30))
SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", 10))
# protocol-level keepalive run by uvicorn; clients answer these pings automatically
WS_PING_INTERVAL_SECONDS = float(os.getenv("WS_PING_INTERVAL_SECONDS", HEARTBEAT_INTERVAL_SECONDS))
WS_PING_TIMEOUT_SECONDS = float(os.getenv("WS_PING_TIMEOUT_SECONDS", HEARTBEAT_INTERVAL_SECONDS))

RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", 300))
RATE_LIMIT_WINDOW_SECONDS = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", 60))

MAX_USER_LENGTH = int(os.getenv("MAX_USER_LENGTH", 120))
MAX_TEXT_LENGTH = int(os.getenv("MAX_TEXT_LENGTH", 2000))
MAX_CID_LENGTH = int(os.getenv("MAX_CID_LENGTH", 64))
MAX_FRAME_BYTES = int(os.getenv("MAX_FRAME_BYTES", 256 * 1024))

HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", 200))
HISTORY_MAX_LIMIT = 500

# Per-kind delivery choices, see relay.engine.RelayPolicy
ECHO_CHAT_TO_SENDER = _env_flag("ECHO_CHAT_TO_SENDER", True)
ANNOUNCE_ALL_DEPARTURES = _env_flag("ANNOUNCE_ALL_DEPARTURES", True)
SEND_PRESENCE_SNAPSHOT = _env_flag("SEND_PRESENCE_SNAPSHOT", True)

DEFAULT_CHAT_USER = "Anon"
DEFAULT_PRESENCE_USER = "—"
