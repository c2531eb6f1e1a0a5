import base64
import json
import re
from datetime import timedelta
from urllib.parse import parse_qs, unquote, urlsplit

import pytest
import responses

from flagkit.consul_store import (
    DEFAULT_CACHE_TTL,
    DEFAULT_PREFIX,
    ConsulError,
    ConsulFeatureStore,
    ConsulKV,
    KVTxnOp,
    batch_operations,
)

ADDRESS = "http://consul.test"


class FakeConsul:
    """An in-memory stand-in for the Consul key/value HTTP interface."""

    def __init__(self):
        self.data = {}
        self.index = 0
        self.txn_calls = 0
        self.fail_txn = False

    def register(self, rsps):
        rsps.add_callback(responses.GET, re.compile(r"http://consul\.test/v1/kv/.*"), callback=self._get)
        rsps.add_callback(responses.PUT, re.compile(r"http://consul\.test/v1/kv/.*"), callback=self._put)
        rsps.add_callback(responses.PUT, "http://consul.test/v1/txn", callback=self._txn)

    def _set(self, key, value):
        self.index += 1
        self.data[key] = (value, self.index)

    @staticmethod
    def _parse(request):
        parts = urlsplit(request.url)
        key = unquote(parts.path[len("/v1/kv/"):])
        return key, parse_qs(parts.query, keep_blank_values=True)

    def _get(self, request):
        key, query = self._parse(request)
        if "recurse" in query:
            keys = sorted(k for k in self.data if k.startswith(key))
        else:
            keys = [key] if key in self.data else []
        if not keys:
            return 404, {}, ""
        body = [
            {
                "Key": k,
                "Value": base64.b64encode(self.data[k][0]).decode() if self.data[k][0] else None,
                "ModifyIndex": self.data[k][1],
            }
            for k in keys
        ]
        return 200, {}, json.dumps(body)

    def _put(self, request):
        key, query = self._parse(request)
        body = request.body or b""
        if isinstance(body, str):
            body = body.encode()
        cas = int(query["cas"][0])
        current = self.data.get(key)
        if cas == 0 and current is not None:
            return 200, {}, "false"
        if cas != 0 and (current is None or current[1] != cas):
            return 200, {}, "false"
        self._set(key, body)
        return 200, {}, "true"

    def _txn(self, request):
        self.txn_calls += 1
        if self.fail_txn:
            return 409, {}, json.dumps({"Errors": [{"OpIndex": 0, "What": "boom"}]})
        for op in json.loads(request.body):
            kv = op["KV"]
            if kv["Verb"] == "set":
                self._set(kv["Key"], base64.b64decode(kv.get("Value") or ""))
            elif kv["Verb"] == "delete":
                self.data.pop(kv["Key"], None)
        return 200, {}, json.dumps({"Results": []})


@pytest.fixture
def consul():
    fake = FakeConsul()
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        fake.register(rsps)
        yield fake


def make_store(prefix="", ttl=0):
    return ConsulFeatureStore(ConsulKV(ADDRESS), prefix=prefix, cache_ttl=ttl)


def flag(key, version, **extra):
    return {"key": key, "version": version, **extra}


def test_not_initialized_before_init(consul):
    assert make_store().initialized_internal() is False


def test_init_then_get(consul):
    store = make_store()
    f = flag("f", 1, on=True)
    s = flag("s", 2, included=["u"])
    store.init_collections_internal({"features": {"f": f}, "segments": {"s": s}})
    assert store.get_internal("features", "f") == f
    assert store.get_internal("segments", "s") == s
    assert store.initialized_internal() is True


def test_init_accepts_collection_pairs(consul):
    store = make_store()
    store.init_collections_internal([("features", [flag("a", 1), flag("b", 1)])])
    assert set(store.get_all_internal("features")) == {"a", "b"}


def test_get_missing_returns_none(consul):
    store = make_store()
    store.init_collections_internal({"features": {}})
    assert store.get_internal("features", "nope") is None


def test_get_all(consul):
    store = make_store()
    store.init_collections_internal({"features": {"a": flag("a", 1), "b": flag("b", 2)}})
    assert store.get_all_internal("features") == {"a": flag("a", 1), "b": flag("b", 2)}
    assert store.get_all_internal("segments") == {}


def test_init_removes_stale_items(consul):
    store = make_store()
    store.init_collections_internal({"features": {"f1": flag("f1", 1), "f2": flag("f2", 1)}})
    store.init_collections_internal({"features": {"f2": flag("f2", 2)}})
    assert store.get_internal("features", "f1") is None
    assert store.get_all_internal("features") == {"f2": flag("f2", 2)}
    assert store.initialized_internal() is True


def test_default_prefix_keys(consul):
    store = make_store()
    store.init_collections_internal({"features": {"f": flag("f", 1)}})
    assert set(consul.data) == {f"{DEFAULT_PREFIX}/features/f", f"{DEFAULT_PREFIX}/$inited"}
    assert store.prefix == DEFAULT_PREFIX


def test_upsert_newer_version_replaces(consul):
    store = make_store()
    store.init_collections_internal({"features": {"f": flag("f", 1)}})
    result = store.upsert_internal("features", flag("f", 2, on=True))
    assert result == flag("f", 2, on=True)
    assert store.get_internal("features", "f") == flag("f", 2, on=True)


def test_upsert_older_version_keeps_existing(consul):
    store = make_store()
    store.init_collections_internal({"features": {"f": flag("f", 5)}})
    result = store.upsert_internal("features", flag("f", 3))
    assert result == flag("f", 5)
    assert store.get_internal("features", "f") == flag("f", 5)


def test_upsert_new_item(consul):
    store = make_store()
    store.init_collections_internal({"features": {}})
    store.upsert_internal("features", flag("g", 1))
    assert store.get_internal("features", "g") == flag("g", 1)


def test_deleted_item_is_returned(consul):
    store = make_store()
    store.init_collections_internal({"features": {"f": flag("f", 1)}})
    store.upsert_internal("features", flag("f", 2, deleted=True))
    assert store.get_internal("features", "f") == flag("f", 2, deleted=True)


def test_prefixes_are_independent(consul):
    store1 = make_store(prefix="p1")
    store2 = make_store(prefix="p2")
    store1.init_collections_internal({"features": {"a": flag("a", 1)}})
    assert store2.initialized_internal() is False
    store2.init_collections_internal({"features": {"b": flag("b", 1)}})
    assert set(store1.get_all_internal("features")) == {"a"}
    assert set(store2.get_all_internal("features")) == {"b"}
    assert store1.get_internal("features", "b") is None


def test_concurrent_modification_with_newer_update_wins(consul):
    store1 = make_store()
    store2 = make_store()
    store1.init_collections_internal({"features": {"f": flag("f", 1)}})
    pending = [flag("f", 2)]

    def hook():
        if pending:
            store2.upsert_internal("features", pending.pop())

    store1._tx_hook = hook
    assert store1.upsert_internal("features", flag("f", 3)) == flag("f", 3)
    assert store2.get_internal("features", "f") == flag("f", 3)


def test_concurrent_modification_with_older_update_loses(consul):
    store1 = make_store()
    store2 = make_store()
    store1.init_collections_internal({"features": {"f": flag("f", 1)}})
    pending = [flag("f", 3)]

    def hook():
        if pending:
            store2.upsert_internal("features", pending.pop())

    store1._tx_hook = hook
    assert store1.upsert_internal("features", flag("f", 2)) == flag("f", 3)
    assert store2.get_internal("features", "f") == flag("f", 3)


def test_init_uses_batches_of_64(consul):
    store = make_store()
    items = {f"f{i}": flag(f"f{i}", 1) for i in range(100)}
    store.init_collections_internal({"features": items})
    assert consul.txn_calls == 2
    assert len(store.get_all_internal("features")) == 100


def test_failed_transaction_raises(consul):
    consul.fail_txn = True
    store = make_store()
    with pytest.raises(ConsulError, match="Consul transaction failed: boom"):
        store.init_collections_internal({"features": {"f": flag("f", 1)}})


def test_address_without_scheme(consul):
    kv = ConsulKV("consul.test")
    assert kv.address == ADDRESS
    assert kv.get("missing") is None


def test_cache_ttl():
    kv = ConsulKV(ADDRESS)
    assert ConsulFeatureStore(kv).cache_ttl == DEFAULT_CACHE_TTL
    assert ConsulFeatureStore(kv, cache_ttl=timedelta(seconds=30)).cache_ttl == 30.0
    assert ConsulFeatureStore(kv, prefix="").prefix == DEFAULT_PREFIX


def test_server_error_raises_and_uninitialized():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        rsps.add(responses.GET, re.compile(r"http://consul\.test/v1/kv/.*"), status=500, body="down")
        store = make_store()
        with pytest.raises(ConsulError):
            store.get_internal("features", "f")
        assert store.initialized_internal() is False


class RecordingKV:
    def __init__(self, ok=True, errors=()):
        self.batches = []
        self._ok = ok
        self._errors = list(errors)

    def txn(self, ops):
        self.batches.append(list(ops))
        return self._ok, self._errors


def test_batch_operations_splits_into_64():
    kv = RecordingKV()
    ops = [KVTxnOp("set", f"k{i}", b"v") for i in range(130)]
    batch_operations(kv, ops)
    assert [len(b) for b in kv.batches] == [64, 64, 2]
    assert [op for b in kv.batches for op in b] == ops


def test_batch_operations_reports_errors():
    kv = RecordingKV(ok=False, errors=["first", "second"])
    with pytest.raises(ConsulError, match="Consul transaction failed: first, second"):
        batch_operations(kv, [KVTxnOp("delete", "k")])
    assert len(kv.batches) == 1


def test_batch_operations_with_no_ops():
    kv = RecordingKV()
    batch_operations(kv, [])
    assert kv.batches == []