"""A feature store kept in the key/value store of a Consul server.

Every item is stored under ``{prefix}/{kind}/{key}``; the key ``{prefix}/$inited``
marks a store holding a complete data set. Replacing all data is not atomic:
new items are written first and stale ones deleted afterwards.
"""

import base64
import json
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import quote

import requests

DEFAULT_CACHE_TTL = 15.0
DEFAULT_PREFIX = "flagkit"
DEFAULT_ADDRESS = "127.0.0.1:8500"
MAX_TXN_OPS = 64
REQUEST_TIMEOUT = 10.0

_INITED_KEY = "$inited"

Item = Dict[str, Any]
AllData = Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]


class ConsulError(Exception):
    """A request to the Consul server failed."""


@dataclass
class KVPair:
    """One entry of the key/value store."""

    key: str
    value: bytes
    modify_index: int


@dataclass
class KVTxnOp:
    """One operation of a transaction: ``set`` or ``delete``."""

    verb: str
    key: str
    value: bytes = b""

    def to_json(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"Verb": self.verb, "Key": self.key}
        if self.verb == "set":
            body["Value"] = base64.b64encode(self.value).decode("ascii")
        return {"KV": body}


class ConsulKV:
    """A small client for the key/value HTTP interface of a Consul server."""

    def __init__(self, address: Optional[str] = None) -> None:
        address = address or os.environ.get("CONSUL_HTTP_ADDR") or DEFAULT_ADDRESS
        if "://" not in address:
            address = "http://" + address
        self.address = address.rstrip("/")
        self._session = requests.Session()

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        try:
            return self._session.request(
                method, self.address + path, timeout=REQUEST_TIMEOUT, **kwargs
            )
        except requests.RequestException as err:
            raise ConsulError(str(err)) from err

    @staticmethod
    def _check(response: requests.Response) -> None:
        if not response.ok:
            raise ConsulError(
                f"Consul request failed with status {response.status_code}: {response.text}"
            )

    @staticmethod
    def _pairs(response: requests.Response) -> List[KVPair]:
        return [
            KVPair(
                key=entry["Key"],
                value=base64.b64decode(entry["Value"]) if entry.get("Value") else b"",
                modify_index=int(entry.get("ModifyIndex", 0)),
            )
            for entry in response.json() or []
        ]

    def list(self, prefix: str) -> List[KVPair]:
        """Every entry whose key starts with ``prefix``."""
        response = self._request("GET", f"/v1/kv/{quote(prefix, safe='/')}", params={"recurse": ""})
        if response.status_code == 404:
            return []
        self._check(response)
        return self._pairs(response)

    def get(self, key: str) -> Optional[KVPair]:
        """The entry for ``key``, or None if there is none."""
        response = self._request("GET", f"/v1/kv/{quote(key, safe='/')}")
        if response.status_code == 404:
            return None
        self._check(response)
        pairs = self._pairs(response)
        return pairs[0] if pairs else None

    def cas(self, key: str, value: bytes, modify_index: int) -> bool:
        """Write ``value`` only if the entry's modify index is still ``modify_index``.

        An index of zero means the key must not exist yet. Returns whether it was written.
        """
        response = self._request(
            "PUT",
            f"/v1/kv/{quote(key, safe='/')}",
            params={"cas": str(modify_index)},
            data=value,
        )
        self._check(response)
        return response.text.strip() == "true"

    def txn(self, ops: Iterable[KVTxnOp]) -> Tuple[bool, List[str]]:
        """Run a transaction; returns whether it succeeded and the reported errors."""
        response = self._request("PUT", "/v1/txn", json=[op.to_json() for op in ops])
        if response.status_code == 409:
            body = response.json() or {}
            return False, [err.get("What", "") for err in body.get("Errors") or []]
        self._check(response)
        return True, []


def batch_operations(kv: ConsulKV, ops: List[KVTxnOp]) -> None:
    """Submit operations in transactions of at most 64 each."""
    for start in range(0, len(ops), MAX_TXN_OPS):
        ok, errors = kv.txn(ops[start:start + MAX_TXN_OPS])
        if not ok:
            raise ConsulError(f"Consul transaction failed: {', '.join(errors)}")


def _seconds(value: Union[float, timedelta]) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _collections(all_data: AllData) -> Iterable[Tuple[str, Iterable[Item]]]:
    pairs = all_data.items() if isinstance(all_data, Mapping) else all_data
    for kind, items in pairs:
        yield kind, (items.values() if isinstance(items, Mapping) else items)


class ConsulFeatureStore:
    """The storage operations of a Consul-backed feature store.

    Items are dictionaries with at least ``key`` and ``version``. Deleted items
    are kept as items marked ``deleted`` and are returned like any other.
    """

    def __init__(
        self,
        kv: Optional[ConsulKV] = None,
        prefix: str = DEFAULT_PREFIX,
        cache_ttl: Union[float, timedelta] = DEFAULT_CACHE_TTL,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._kv = kv if kv is not None else ConsulKV()
        self._prefix = prefix or DEFAULT_PREFIX
        self._cache_ttl = _seconds(cache_ttl)
        self._logger = logger or logging.getLogger(__name__)
        self._tx_hook: Optional[Any] = None
        self._logger.info("ConsulFeatureStore: Using address: %s", self._kv.address)

    @property
    def prefix(self) -> str:
        """The prefix of every key this store uses."""
        return self._prefix

    @property
    def cache_ttl(self) -> float:
        """How long, in seconds, items may be cached in memory; zero disables caching."""
        return self._cache_ttl

    def _kind_key(self, kind: str) -> str:
        return f"{self._prefix}/{kind}"

    def _item_key(self, kind: str, key: str) -> str:
        return f"{self._prefix}/{kind}/{key}"

    def _inited_key(self) -> str:
        return f"{self._prefix}/{_INITED_KEY}"

    def _get_even_if_deleted(self, kind: str, key: str) -> Tuple[Optional[Item], int]:
        pair = self._kv.get(self._item_key(kind, key))
        if pair is None:
            return None, 0
        return json.loads(pair.value), pair.modify_index

    def get_internal(self, kind: str, key: str) -> Optional[Item]:
        """The stored item, or None if there is none."""
        item, _ = self._get_even_if_deleted(kind, key)
        return item

    def get_all_internal(self, kind: str) -> Dict[str, Item]:
        """Every stored item of ``kind``, by key."""
        results: Dict[str, Item] = {}
        for pair in self._kv.list(self._kind_key(kind)):
            item = json.loads(pair.value)
            results[item["key"]] = item
        return results

    def init_collections_internal(self, all_data: AllData) -> None:
        """Replace all data: write every given item, then delete every other one."""
        old_keys = {pair.key: True for pair in self._kv.list(self._prefix)}
        ops: List[KVTxnOp] = []
        for kind, items in _collections(all_data):
            for item in items:
                key = self._item_key(kind, item["key"])
                ops.append(KVTxnOp("set", key, json.dumps(item).encode("utf-8")))
                old_keys[key] = False

        inited_key = self._inited_key()
        ops.extend(
            KVTxnOp("delete", key)
            for key, stale in old_keys.items()
            if stale and key != inited_key
        )
        ops.append(KVTxnOp("set", inited_key, b""))
        batch_operations(self._kv, ops)

    def upsert_internal(self, kind: str, item: Item) -> Item:
        """Store ``item`` unless a version at least as new is stored; return the item kept."""
        data = json.dumps(item).encode("utf-8")
        key = item["key"]
        while True:
            old_item, modify_index = self._get_even_if_deleted(kind, key)
            if old_item is not None and old_item.get("version", 0) >= item.get("version", 0):
                return old_item
            if self._tx_hook is not None:
                self._tx_hook()
            if self._kv.cas(self._item_key(kind, key), data, modify_index):
                return item
            self._logger.debug("ConsulFeatureStore: Concurrent modification detected, retrying")

    def initialized_internal(self) -> bool:
        """Whether the store holds a complete data set."""
        try:
            return self._kv.get(self._inited_key()) is not None
        except ConsulError:
            return False