"""A feature store kept in Redis hashes.

Items of each kind live in one hash, ``{prefix}:{kind}``, with the item key as
the field and the item's JSON as the value. The key ``{prefix}:$inited`` marks
a store holding a complete data set.
"""

import json
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, Optional, Tuple, Union

import redis
from redis.exceptions import RedisError, WatchError

DEFAULT_URL = "redis://localhost:6379"
DEFAULT_PREFIX = "flagkit"
DEFAULT_CACHE_TTL = 15.0
MAX_CONNECTIONS = 16

_INITED_KEY = "$inited"

Item = Dict[str, Any]
AllData = Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]


def host_and_port_url(host: str, port: int) -> str:
    """The Redis URL for a host name and port."""
    return f"redis://{host}:{port}"


def _seconds(value: Union[float, timedelta]) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _text(value: Union[str, bytes]) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _keyed_items(items: Any) -> Iterator[Tuple[str, Item]]:
    if isinstance(items, Mapping):
        yield from items.items()
    else:
        for item in items:
            yield item["key"], item


def _collections(all_data: AllData) -> Iterator[Tuple[str, Any]]:
    pairs = all_data.items() if isinstance(all_data, Mapping) else all_data
    yield from pairs


def _make_client(url: str) -> "redis.Redis":
    pool = redis.BlockingConnectionPool.from_url(url, max_connections=MAX_CONNECTIONS)
    return redis.Redis(connection_pool=pool)


class RedisFeatureStore:
    """The storage operations of a Redis-backed feature store.

    Items are dictionaries with at least ``key`` and ``version``. Deleted items
    are kept as items marked ``deleted`` and are returned like any other.
    When no client is given, one is created for ``url`` with a blocking pool
    of at most 16 connections.
    """

    def __init__(
        self,
        url: str = DEFAULT_URL,
        prefix: str = DEFAULT_PREFIX,
        cache_ttl: Union[float, timedelta] = DEFAULT_CACHE_TTL,
        logger: Optional[logging.Logger] = None,
        client: Optional[Any] = None,
    ) -> None:
        self._url = url or DEFAULT_URL
        self._prefix = prefix or DEFAULT_PREFIX
        self._cache_ttl = _seconds(cache_ttl)
        self._logger = logger or logging.getLogger(__name__)
        if client is None:
            self._logger.info("RedisFeatureStore: Using url: %s", self._url)
            client = _make_client(self._url)
        self._client = client
        self._tx_hook: Optional[Callable[[], None]] = None

    @property
    def url(self) -> str:
        """The Redis URL the store was configured with."""
        return self._url

    @property
    def prefix(self) -> str:
        """The prefix of every key this store uses."""
        return self._prefix

    @property
    def cache_ttl(self) -> float:
        """How long, in seconds, items may be cached in memory; zero disables caching."""
        return self._cache_ttl

    @property
    def client(self) -> Any:
        """The Redis client in use."""
        return self._client

    def _features_key(self, kind: str) -> str:
        return f"{self._prefix}:{kind}"

    def _inited_key(self) -> str:
        return f"{self._prefix}:{_INITED_KEY}"

    def get_internal(self, kind: str, key: str) -> Optional[Item]:
        """The stored item, or None if there is none."""
        raw = self._client.hget(self._features_key(kind), key)
        if raw is None:
            self._logger.debug('RedisFeatureStore: Key: %s not found in "%s"', key, kind)
            return None
        return json.loads(raw)

    def get_all_internal(self, kind: str) -> Dict[str, Item]:
        """Every stored item of ``kind``, by key."""
        values = self._client.hgetall(self._features_key(kind)) or {}
        return {_text(field): json.loads(raw) for field, raw in values.items()}

    def init_internal(self, all_data: AllData) -> None:
        """Replace the data of every given kind and mark the store initialized, atomically."""
        batches = [
            (
                self._features_key(kind),
                [(key, json.dumps(item)) for key, item in _keyed_items(items)],
            )
            for kind, items in _collections(all_data)
        ]
        with self._client.pipeline(transaction=True) as pipe:
            for base_key, entries in batches:
                pipe.delete(base_key)
                for key, data in entries:
                    pipe.hset(base_key, key, data)
            pipe.set(self._inited_key(), "")
            pipe.execute()

    def upsert_internal(self, kind: str, item: Item) -> Item:
        """Store ``item`` unless a version at least as new is stored; return the item kept."""
        base_key = self._features_key(kind)
        key = item["key"]
        data = json.dumps(item)
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(base_key)
                    if self._tx_hook is not None:
                        self._tx_hook()
                    raw = pipe.hget(base_key, key)
                    old_item = json.loads(raw) if raw is not None else None
                    if old_item is not None and old_item.get("version", 0) >= item.get("version", 0):
                        return old_item
                    pipe.multi()
                    pipe.hset(base_key, key, data)
                    pipe.execute()
                    return item
                except WatchError:
                    self._logger.debug(
                        "RedisFeatureStore: Concurrent modification detected, retrying"
                    )

    def initialized_internal(self) -> bool:
        """Whether the store holds a complete data set."""
        try:
            return bool(self._client.exists(self._inited_key()))
        except RedisError:
            return False