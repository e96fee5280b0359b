import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import redis

logger = logging.getLogger(__name__)

CHANNEL = "flag_updates"


class RedisConnection:
    """Store contract over a single redis client."""

    def __init__(self, client: redis.Redis):
        self._client = client

    def get(self, key: str) -> Optional[str]:
        return self._client.get(key)

    def set(self, key: str, value: str):
        self._client.set(key, value)

    def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return self._client.mget(list(keys))

    def delete(self, key: str):
        self._client.delete(key)

    def exists(self, key: str) -> bool:
        # redis-py returns the number of matching keys
        return self._client.exists(key) > 0

    def publish(self, channel: str, message: str):
        self._client.publish(channel, message)


class RedisStorage:
    def __init__(self, url: str, **pool_kwargs):
        self.url = url
        self._pool = redis.ConnectionPool.from_url(url, decode_responses=True, **pool_kwargs)

    @contextmanager
    def connection(self) -> Iterator[RedisConnection]:
        client = redis.Redis(connection_pool=self._pool)
        try:
            yield RedisConnection(client)
        finally:
            client.close()

    def close(self):
        self._pool.disconnect()


class MemoryStorage:
    """Process-local store with the same contract, for development and tests."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.published: List[Tuple[str, str]] = []

    @contextmanager
    def connection(self) -> Iterator["MemoryStorage"]:
        yield self

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str):
        with self._lock:
            self._data[key] = str(value)

    def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        with self._lock:
            return [self._data.get(k) for k in keys]

    def delete(self, key: str):
        with self._lock:
            self._data.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def publish(self, channel: str, message: str):
        with self._lock:
            self.published.append((channel, message))

    def close(self):
        pass


def open_storage(url: str):
    if url.startswith("memory://"):
        return MemoryStorage()
    return RedisStorage(url)


class UpdatePublisher:
    """Observer that announces changed feature names on a pub/sub channel."""

    def __init__(self, storage, channel: str = CHANNEL):
        self.storage = storage
        self.channel = channel

    def __call__(self, event: str, before, after):
        self._publish(event, after.name)

    def record_delete(self, name: str):
        self._publish("delete", name)

    def _publish(self, event: str, name: str):
        with self.storage.connection() as conn:
            conn.publish(self.channel, name)
        logger.debug("published %s for %s on %s", event, name, self.channel)
