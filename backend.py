import json
import re
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis

from constants import (
    MAILBOX_MAX_MESSAGES,
    MAILBOX_TTL_SECONDS,
    REDIS_HOST,
    REDIS_PASSWORD,
    REDIS_PORT,
    ROOM_TTL_SECONDS,
    STORE_BACKEND,
)
from errors import RoomExists
from logging_config import get_logger
from redis_keys import REDIS_MAILBOX_KEY, REDIS_META_KEY

logger = get_logger(__name__)

RoomMutator = Callable[[Dict[str, Any]], Dict[str, Any]]


def _glob_escape(text: str) -> str:
    return re.sub(r"([*?\[\]\\])", r"\\\1", text)


def _encode_record(record: dict) -> dict:
    # Every field is JSON so numeric-looking room codes survive the round trip
    return {k: json.dumps(v) for k, v in record.items() if v is not None}


def _decode_record(raw: dict) -> dict:
    result = {}
    for k, v in raw.items():
        try:
            result[k] = json.loads(v)
        except (json.JSONDecodeError, TypeError):
            result[k] = v
    return result


class RedisBackend:
    """Mailbox store on Redis: room records as hashes, mailboxes as capped lists."""

    def __init__(self, client: Optional[redis.Redis] = None, max_messages: int = MAILBOX_MAX_MESSAGES):
        self.max_messages = max_messages
        if client is not None:
            self.redis_client = client
            return
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
        try:
            self.redis_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
            self.redis_client.ping()
            logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            raise

    # Room records

    def create_room(self, code: str, record: dict, ttl: int = ROOM_TTL_SECONDS) -> None:
        key = REDIS_META_KEY.format(slug=code)
        logger.info(f"Creating room {code} with TTL {ttl} seconds")
        with self.redis_client.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.exists(key):
                    raise RoomExists(f"Room {code} already exists")
                pipe.multi()
                pipe.hset(key, mapping=_encode_record(record))
                pipe.expire(key, ttl)
                pipe.execute()
            except redis.WatchError:
                # Another peer wrote the same code between our check and our write
                raise RoomExists(f"Room {code} already exists")
        logger.debug(f"Room {code} created successfully with key: {key}")

    def get_room(self, code: str) -> Optional[dict]:
        raw = self.redis_client.hgetall(REDIS_META_KEY.format(slug=code))
        if not raw:
            logger.debug(f"Room {code} not found in Redis")
            return None
        return _decode_record(raw)

    def update_room(self, code: str, mutate: RoomMutator, ttl: int = ROOM_TTL_SECONDS) -> Optional[dict]:
        """Read-modify-write a room record under WATCH; ``None`` if the room is gone.

        ``mutate`` may raise to abort the write; the exception propagates.
        """
        key = REDIS_META_KEY.format(slug=code)
        with self.redis_client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.hgetall(key)
                    if not raw:
                        pipe.unwatch()
                        return None
                    updated = mutate(_decode_record(raw))
                    pipe.multi()
                    pipe.delete(key)
                    pipe.hset(key, mapping=_encode_record(updated))
                    pipe.expire(key, ttl)
                    pipe.execute()
                    return updated
                except redis.WatchError:
                    logger.debug(f"Room {code} changed during update, retrying")
                    continue

    def touch_room(self, code: str, ttl: int = ROOM_TTL_SECONDS) -> bool:
        return bool(self.redis_client.expire(REDIS_META_KEY.format(slug=code), ttl))

    def delete_room(self, code: str) -> bool:
        logger.info(f"Deleting room {code}")
        deleted = self.redis_client.delete(REDIS_META_KEY.format(slug=code))
        return bool(deleted)

    # Mailboxes

    def push_message(self, code: str, seat: int, message: dict, ttl: int = MAILBOX_TTL_SECONDS) -> None:
        key = REDIS_MAILBOX_KEY.format(slug=code, seat=seat)
        with self.redis_client.pipeline() as pipe:
            pipe.rpush(key, json.dumps(message))
            pipe.ltrim(key, -self.max_messages, -1)
            pipe.expire(key, ttl)
            pipe.execute()
        logger.debug(f"Queued {message.get('type', 'unknown')} for room {code} seat {seat}")

    def pop_messages(self, code: str, seat: int) -> List[dict]:
        key = REDIS_MAILBOX_KEY.format(slug=code, seat=seat)
        with self.redis_client.pipeline() as pipe:
            pipe.lrange(key, 0, -1)
            pipe.delete(key)
            raw_messages, _ = pipe.execute()
        messages = []
        for raw in raw_messages:
            try:
                messages.append(json.loads(raw))
            except json.JSONDecodeError:
                logger.warning(f"Dropping unparseable message in {key}")
        return messages

    def purge_mailbox(self, code: str, seat: int) -> None:
        self.redis_client.delete(REDIS_MAILBOX_KEY.format(slug=code, seat=seat))

    # Blobs

    def set_value(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self.redis_client.set(key, value, ex=ttl)

    def get_value(self, key: str) -> Optional[str]:
        return self.redis_client.get(key)

    def list_keys(self, prefix: str) -> List[str]:
        return sorted(self.redis_client.scan_iter(match=f"{_glob_escape(prefix)}*"))


class MemoryBackend:
    """Single-process mailbox store with the same semantics as RedisBackend."""

    def __init__(self, max_messages: int = MAILBOX_MAX_MESSAGES, clock: Callable[[], float] = time.monotonic):
        self.max_messages = max_messages
        self.clock = clock
        # key -> (value, expires_at or None)
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        logger.info("Initializing in-memory backend")

    def _get(self, key: str) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            del self._data[key]
            return None
        return value

    def _set(self, key: str, value: Any, ttl: Optional[int]) -> None:
        self._data[key] = (value, self.clock() + ttl if ttl else None)

    def flush(self) -> None:
        self._data.clear()

    def create_room(self, code: str, record: dict, ttl: int = ROOM_TTL_SECONDS) -> None:
        key = REDIS_META_KEY.format(slug=code)
        if self._get(key) is not None:
            raise RoomExists(f"Room {code} already exists")
        logger.info(f"Creating room {code} with TTL {ttl} seconds")
        self._set(key, json.dumps(record), ttl)

    def get_room(self, code: str) -> Optional[dict]:
        raw = self._get(REDIS_META_KEY.format(slug=code))
        return json.loads(raw) if raw is not None else None

    def update_room(self, code: str, mutate: RoomMutator, ttl: int = ROOM_TTL_SECONDS) -> Optional[dict]:
        record = self.get_room(code)
        if record is None:
            return None
        updated = mutate(record)
        self._set(REDIS_META_KEY.format(slug=code), json.dumps(updated), ttl)
        return updated

    def touch_room(self, code: str, ttl: int = ROOM_TTL_SECONDS) -> bool:
        key = REDIS_META_KEY.format(slug=code)
        value = self._get(key)
        if value is None:
            return False
        self._set(key, value, ttl)
        return True

    def delete_room(self, code: str) -> bool:
        logger.info(f"Deleting room {code}")
        key = REDIS_META_KEY.format(slug=code)
        existed = self._get(key) is not None
        self._data.pop(key, None)
        return existed

    def push_message(self, code: str, seat: int, message: dict, ttl: int = MAILBOX_TTL_SECONDS) -> None:
        key = REDIS_MAILBOX_KEY.format(slug=code, seat=seat)
        queue = self._get(key) or []
        queue.append(json.dumps(message))
        self._set(key, queue[-self.max_messages:], ttl)
        logger.debug(f"Queued {message.get('type', 'unknown')} for room {code} seat {seat}")

    def pop_messages(self, code: str, seat: int) -> List[dict]:
        key = REDIS_MAILBOX_KEY.format(slug=code, seat=seat)
        queue = self._get(key) or []
        self._data.pop(key, None)
        return [json.loads(raw) for raw in queue]

    def purge_mailbox(self, code: str, seat: int) -> None:
        self._data.pop(REDIS_MAILBOX_KEY.format(slug=code, seat=seat), None)

    def set_value(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self._set(key, value, ttl)

    def get_value(self, key: str) -> Optional[str]:
        return self._get(key)

    def list_keys(self, prefix: str) -> List[str]:
        return sorted(k for k in list(self._data) if k.startswith(prefix) and self._get(k) is not None)


def create_store(kind: str = STORE_BACKEND):
    if kind == "memory":
        return MemoryBackend()
    if kind == "redis":
        return RedisBackend()
    raise ValueError(f"Unknown STORE_BACKEND {kind!r}")


store = create_store()
