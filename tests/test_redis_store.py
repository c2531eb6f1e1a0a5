from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from flagkit.redis_store import (
    DEFAULT_CACHE_TTL,
    DEFAULT_PREFIX,
    DEFAULT_URL,
    RedisFeatureStore,
    host_and_port_url,
)


def _enc(value):
    return value.encode("utf-8") if isinstance(value, str) else value


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.versions = {}

    def _touch(self, name):
        self.versions[name] = self.versions.get(name, 0) + 1

    def hget(self, name, key):
        entry = self.data.get(name)
        if not isinstance(entry, dict):
            return None
        return entry.get(_enc(key))

    def hgetall(self, name):
        entry = self.data.get(name)
        return dict(entry) if isinstance(entry, dict) else {}

    def hset(self, name, key, value):
        self.data.setdefault(name, {})[_enc(key)] = _enc(value)
        self._touch(name)
        return 1

    def set(self, name, value):
        self.data[name] = _enc(value)
        self._touch(name)
        return True

    def delete(self, *names):
        removed = 0
        for name in names:
            if self.data.pop(name, None) is not None:
                removed += 1
            self._touch(name)
        return removed

    def exists(self, *names):
        return sum(1 for name in names if name in self.data)

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, server):
        self._server = server
        self.reset()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.reset()

    def reset(self):
        self._watched = {}
        self._immediate = False
        self._commands = []

    def watch(self, *names):
        self._immediate = True
        for name in names:
            self._watched[name] = self._server.versions.get(name, 0)

    def multi(self):
        self._immediate = False

    def _call(self, method, *args):
        if self._immediate:
            return getattr(self._server, method)(*args)
        self._commands.append((method, args))
        return self

    def hget(self, name, key):
        return self._call("hget", name, key)

    def hset(self, name, key, value):
        return self._call("hset", name, key, value)

    def set(self, name, value):
        return self._call("set", name, value)

    def delete(self, *names):
        return self._call("delete", *names)

    def execute(self):
        try:
            for name, version in self._watched.items():
                if self._server.versions.get(name, 0) != version:
                    raise WatchError("Watched variable changed.")
            return [getattr(self._server, m)(*a) for m, a in self._commands]
        finally:
            self.reset()


class BrokenRedis(FakeRedis):
    def exists(self, *names):
        raise RedisConnectionError("connection refused")


@pytest.fixture
def server():
    return FakeRedis()


@pytest.fixture
def store(server):
    return RedisFeatureStore(client=server, cache_ttl=0)


def _flag(key, version, **extra):
    return {"key": key, "version": version, **extra}


def test_host_and_port_url():
    assert host_and_port_url("my-redis-host", 6379) == "redis://my-redis-host:6379"


def test_default_configuration_without_connecting():
    store = RedisFeatureStore()
    assert store.url == DEFAULT_URL
    assert store.prefix == DEFAULT_PREFIX
    assert store.cache_ttl == DEFAULT_CACHE_TTL
    assert store.client.connection_pool.max_connections == 16


def test_empty_prefix_uses_default(server):
    store = RedisFeatureStore(prefix="", client=server)
    assert store.prefix == DEFAULT_PREFIX


def test_cache_ttl_accepts_timedelta(server):
    store = RedisFeatureStore(client=server, cache_ttl=timedelta(seconds=30))
    assert store.cache_ttl == 30.0


def test_not_initialized_before_init(store):
    assert store.initialized_internal() is False


def test_initialized_after_init(store, server):
    store.init_internal({"features": {}, "segments": {}})
    assert store.initialized_internal() is True
    assert server.data[f"{DEFAULT_PREFIX}:$inited"] == b""


def test_unreachable_server_is_not_initialized():
    store = RedisFeatureStore(client=BrokenRedis())
    assert store.initialized_internal() is False


def test_init_then_get(store):
    flag = _flag("foo", 10)
    store.init_internal({"features": {"foo": flag}, "segments": {}})
    assert store.get_internal("features", "foo") == flag


def test_get_missing_returns_none(store):
    store.init_internal({"features": {}})
    assert store.get_internal("features", "missing") is None


def test_get_all(store):
    flags = {"foo": _flag("foo", 1), "bar": _flag("bar", 2)}
    store.init_internal({"features": flags, "segments": {"seg": _flag("seg", 3)}})
    assert store.get_all_internal("features") == flags
    assert store.get_all_internal("segments") == {"seg": _flag("seg", 3)}


def test_get_all_empty_kind(store):
    assert store.get_all_internal("features") == {}


def test_init_accepts_item_lists(store):
    store.init_internal([("features", [_flag("a", 1), _flag("b", 2)])])
    assert set(store.get_all_internal("features")) == {"a", "b"}


def test_init_replaces_previous_data(store):
    store.init_internal({"features": {"old": _flag("old", 1)}})
    store.init_internal({"features": {"new": _flag("new", 1)}})
    assert store.get_all_internal("features") == {"new": _flag("new", 1)}


def test_upsert_new_item(store):
    store.init_internal({"features": {}})
    result = store.upsert_internal("features", _flag("foo", 1))
    assert result == _flag("foo", 1)
    assert store.get_internal("features", "foo") == _flag("foo", 1)


def test_upsert_newer_version_replaces(store):
    store.init_internal({"features": {"foo": _flag("foo", 10)}})
    result = store.upsert_internal("features", _flag("foo", 11, on=True))
    assert result == _flag("foo", 11, on=True)
    assert store.get_internal("features", "foo")["version"] == 11


def test_upsert_older_version_keeps_existing(store):
    store.init_internal({"features": {"foo": _flag("foo", 10)}})
    result = store.upsert_internal("features", _flag("foo", 9))
    assert result == _flag("foo", 10)
    assert store.get_internal("features", "foo")["version"] == 10


def test_upsert_equal_version_keeps_existing(store):
    store.init_internal({"features": {"foo": _flag("foo", 10, on=True)}})
    result = store.upsert_internal("features", _flag("foo", 10, on=False))
    assert result["on"] is True


def test_deleted_item_is_stored_and_returned(store):
    store.init_internal({"features": {"foo": _flag("foo", 10)}})
    store.upsert_internal("features", _flag("foo", 11, deleted=True))
    assert store.get_internal("features", "foo") == _flag("foo", 11, deleted=True)


def test_prefixes_are_independent(server):
    store_a = RedisFeatureStore(prefix="aaa", client=server, cache_ttl=0)
    store_b = RedisFeatureStore(prefix="bbb", client=server, cache_ttl=0)
    store_a.init_internal({"features": {"flag-a": _flag("flag-a", 1)}})
    assert store_a.initialized_internal() is True
    assert store_b.initialized_internal() is False
    store_b.init_internal({"features": {"flag-b": _flag("flag-b", 2)}})
    assert store_a.get_all_internal("features") == {"flag-a": _flag("flag-a", 1)}
    assert store_b.get_all_internal("features") == {"flag-b": _flag("flag-b", 2)}
    assert store_a.get_internal("features", "flag-b") is None


def _hook_writing(other, kind, item):
    calls = []

    def hook():
        if not calls:
            calls.append(True)
            other.upsert_internal(kind, item)

    return hook, calls


def test_concurrent_modification_with_lower_version_retries(server):
    store1 = RedisFeatureStore(client=server, cache_ttl=0)
    store2 = RedisFeatureStore(client=server, cache_ttl=0)
    store1.init_internal({"features": {"foo": _flag("foo", 1)}})
    hook, calls = _hook_writing(store2, "features", _flag("foo", 2))
    store1._tx_hook = hook
    result = store1.upsert_internal("features", _flag("foo", 3))
    assert calls == [True]
    assert result == _flag("foo", 3)
    assert store2.get_internal("features", "foo")["version"] == 3


def test_concurrent_modification_with_higher_version_wins(server):
    store1 = RedisFeatureStore(client=server, cache_ttl=0)
    store2 = RedisFeatureStore(client=server, cache_ttl=0)
    store1.init_internal({"features": {"foo": _flag("foo", 1)}})
    hook, _ = _hook_writing(store2, "features", _flag("foo", 4))
    store1._tx_hook = hook
    result = store1.upsert_internal("features", _flag("foo", 3))
    assert result == _flag("foo", 4)
    assert store1.get_internal("features", "foo")["version"] == 4