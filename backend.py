import redis
import json
from typing import Optional
from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_DB
from redis_keys import REDIS_HISTORY_KEY
from logging_config import get_logger

logger = get_logger(__name__)


class RedisBackend:
    """Append-only chat history store kept in one Redis list per room."""

    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client

    def ping(self) -> bool:
        return bool(self.redis_client.ping())

    def append_message(self, room: str, user: str, text: str, ts: int, cid: Optional[str] = None):
        key = REDIS_HISTORY_KEY.format(room=room)
        record = {"ts": ts, "user": user, "text": text, "room": room}
        if cid:
            record["cid"] = cid
        length = self.redis_client.rpush(key, json.dumps(record))
        logger.debug(f"Appended message to {key} (length {length})")
        return True

    def recent_messages(self, room: str, limit: int = 200):
        """Return the last ``limit`` messages of a room, oldest first."""
        if limit <= 0:
            return []
        key = REDIS_HISTORY_KEY.format(room=room)
        raw_items = self.redis_client.lrange(key, -limit, -1)
        messages = []
        for raw in raw_items:
            try:
                messages.append(json.loads(raw))
            except (json.JSONDecodeError, TypeError):
                logger.warning(f"Skipping undecodable history entry in {key}")
        logger.debug(f"Fetched {len(messages)} messages from {key}")
        return messages


def create_redis_backend(
    host: str = REDIS_HOST,
    port: int = REDIS_PORT,
    password: Optional[str] = REDIS_PASSWORD,
    db: int = REDIS_DB,
) -> RedisBackend:
    """Connect to Redis and verify the connection, raising if it is unreachable."""
    try:
        redis_client = redis.Redis(host=host, port=port, password=password, db=db, decode_responses=True)
        redis_client.ping()
        logger.info(f"Redis client connected successfully to {host}:{port}")
    except Exception as e:
        logger.error(f"Failed to connect to Redis at {host}:{port}: {e}", exc_info=True)
        raise
    return RedisBackend(redis_client)
