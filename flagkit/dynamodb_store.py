"""A feature store kept in a DynamoDB table.

The table must have a string partition key ``namespace`` and a string sort key
``key``. Every item is stored whole as JSON in the ``item`` attribute, with its
version repeated in ``version`` so that conditional writes can compare versions.
Replacing all data is not atomic: new items are written first and stale ones
deleted afterwards.

The store works with any client offering the low-level DynamoDB operations
``get_item``, ``put_item``, ``query`` and ``batch_write_item`` with their usual
keyword arguments, such as a boto3 DynamoDB client.
"""

import json
import logging
from datetime import timedelta
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    Union,
)

DEFAULT_CACHE_TTL = 15.0
MAX_BATCH_WRITE = 25

TABLE_PARTITION_KEY = "namespace"
TABLE_SORT_KEY = "key"
VERSION_ATTRIBUTE = "version"
ITEM_JSON_ATTRIBUTE = "item"

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"

_INITED_KEY = "$inited"

Item = Dict[str, Any]
AttributeMap = Dict[str, Dict[str, str]]
AllData = Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]


class DynamoDBClient(Protocol):
    """The low-level DynamoDB operations the store relies on."""

    def get_item(self, **kwargs: Any) -> Dict[str, Any]:
        ...

    def put_item(self, **kwargs: Any) -> Dict[str, Any]:
        ...

    def query(self, **kwargs: Any) -> Dict[str, Any]:
        ...

    def batch_write_item(self, **kwargs: Any) -> Dict[str, Any]:
        ...


def _error_code(err: BaseException) -> Optional[str]:
    response = getattr(err, "response", None)
    if isinstance(response, Mapping):
        error = response.get("Error")
        if isinstance(error, Mapping):
            code = error.get("Code")
            return str(code) if code is not None else None
    return None


def _seconds(value: Union[float, timedelta]) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _collections(all_data: AllData) -> Iterator[Tuple[str, Iterable[Item]]]:
    pairs = all_data.items() if isinstance(all_data, Mapping) else all_data
    for kind, items in pairs:
        yield kind, (items.values() if isinstance(items, Mapping) else items)


def batch_write_requests(
    client: DynamoDBClient, table: str, requests: List[Dict[str, Any]]
) -> None:
    """Submit put and delete requests in batches of at most 25 each."""
    for start in range(0, len(requests), MAX_BATCH_WRITE):
        batch = requests[start:start + MAX_BATCH_WRITE]
        client.batch_write_item(RequestItems={table: batch})


def unmarshal_item(item: Mapping[str, Any]) -> Item:
    """Decode the stored JSON of a table item.

    Raises ValueError if the item has no JSON string attribute.
    """
    attr = item.get(ITEM_JSON_ATTRIBUTE)
    if not isinstance(attr, Mapping) or attr.get("S") is None:
        raise ValueError("DynamoDB map did not contain expected item string")
    return json.loads(attr["S"])


class DynamoDBFeatureStore:
    """The storage operations of a DynamoDB-backed feature store.

    Items are dictionaries with at least ``key`` and ``version``. Deleted items
    are kept as items marked ``deleted`` and are returned like any other.
    """

    def __init__(
        self,
        table: str,
        client: DynamoDBClient,
        prefix: str = "",
        cache_ttl: Union[float, timedelta] = DEFAULT_CACHE_TTL,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if client is None:
            raise ValueError("a DynamoDB client is required")
        self._table = table
        self._client = client
        self._prefix = prefix or ""
        self._cache_ttl = _seconds(cache_ttl)
        self._logger = logger or logging.getLogger(__name__)
        self._update_hook: Optional[Callable[[], None]] = None

    @property
    def table(self) -> str:
        """The name of the table."""
        return self._table

    @property
    def prefix(self) -> str:
        """The prefix of every partition key; empty for none."""
        return self._prefix

    @property
    def cache_ttl(self) -> float:
        """How long, in seconds, items may be cached in memory; zero disables caching."""
        return self._cache_ttl

    def _prefixed_namespace(self, base: str) -> str:
        if not self._prefix:
            return base
        return f"{self._prefix}:{base}"

    def namespace_for_kind(self, kind: str) -> str:
        """The partition key under which items of ``kind`` are stored."""
        return self._prefixed_namespace(kind)

    def _inited_key(self) -> str:
        return self._prefixed_namespace(_INITED_KEY)

    def _key_attrs(self, namespace: str, key: str) -> AttributeMap:
        return {TABLE_PARTITION_KEY: {"S": namespace}, TABLE_SORT_KEY: {"S": key}}

    def _marshal_item(self, kind: str, item: Item) -> AttributeMap:
        attrs = self._key_attrs(self.namespace_for_kind(kind), item["key"])
        attrs[VERSION_ATTRIBUTE] = {"N": str(int(item.get("version", 0)))}
        attrs[ITEM_JSON_ATTRIBUTE] = {"S": json.dumps(item)}
        return attrs

    def _query_kind(self, kind: str, keys_only: bool = False) -> Iterator[Mapping[str, Any]]:
        params: Dict[str, Any] = {
            "TableName": self._table,
            "ConsistentRead": True,
            "KeyConditions": {
                TABLE_PARTITION_KEY: {
                    "ComparisonOperator": "EQ",
                    "AttributeValueList": [{"S": self.namespace_for_kind(kind)}],
                }
            },
        }
        if keys_only:
            params["ProjectionExpression"] = "#namespace, #key"
            params["ExpressionAttributeNames"] = {
                "#namespace": TABLE_PARTITION_KEY,
                "#key": TABLE_SORT_KEY,
            }
        while True:
            page = self._client.query(**params)
            yield from page.get("Items") or []
            last_key = page.get("LastEvaluatedKey")
            if not last_key:
                return
            params["ExclusiveStartKey"] = last_key

    def _read_existing_keys(self, kinds: Iterable[str]) -> Dict[Tuple[str, str], bool]:
        keys: Dict[Tuple[str, str], bool] = {}
        for kind in kinds:
            for entry in self._query_kind(kind, keys_only=True):
                namespace = entry[TABLE_PARTITION_KEY]["S"]
                keys[(namespace, entry[TABLE_SORT_KEY]["S"])] = True
        return keys

    def init_collections_internal(self, all_data: AllData) -> None:
        """Replace all data: write every given item, then delete every other one."""
        collections = [(kind, list(items)) for kind, items in _collections(all_data)]
        try:
            unused_old_keys = self._read_existing_keys(kind for kind, _ in collections)
        except Exception as err:
            self._logger.error("Failed to get existing items prior to init: %s", err)
            raise

        requests: List[Dict[str, Any]] = []
        num_items = 0
        for kind, items in collections:
            for item in items:
                requests.append({"PutRequest": {"Item": self._marshal_item(kind, item)}})
                unused_old_keys[(self.namespace_for_kind(kind), item["key"])] = False
                num_items += 1

        inited_key = self._inited_key()
        requests.extend(
            {"DeleteRequest": {"Key": self._key_attrs(namespace, key)}}
            for (namespace, key), unused in unused_old_keys.items()
            if unused and namespace != inited_key
        )
        requests.append({"PutRequest": {"Item": self._key_attrs(inited_key, inited_key)}})

        try:
            batch_write_requests(self._client, self._table, requests)
        except Exception as err:
            self._logger.error("Failed to write %d item(s) in batches: %s", len(requests), err)
            raise
        self._logger.info("Initialized table %r with %d item(s)", self._table, num_items)

    def initialized_internal(self) -> bool:
        """Whether the table holds a complete data set for this prefix."""
        inited_key = self._inited_key()
        try:
            result = self._client.get_item(
                TableName=self._table,
                ConsistentRead=True,
                Key=self._key_attrs(inited_key, inited_key),
            )
        except Exception:  # an unreachable table counts as not initialized
            return False
        return bool(result.get("Item"))

    def get_all_internal(self, kind: str) -> Dict[str, Item]:
        """Every stored item of ``kind``, by key."""
        try:
            entries = list(self._query_kind(kind))
        except Exception as err:
            self._logger.error("Failed to get all %r items: %s", kind, err)
            raise
        results: Dict[str, Item] = {}
        for entry in entries:
            item = unmarshal_item(entry)
            results[item["key"]] = item
        return results

    def get_internal(self, kind: str, key: str) -> Optional[Item]:
        """The stored item, or None if there is none."""
        try:
            result = self._client.get_item(
                TableName=self._table,
                ConsistentRead=True,
                Key=self._key_attrs(self.namespace_for_kind(kind), key),
            )
        except Exception as err:
            self._logger.error("Failed to get item (key=%s): %s", key, err)
            raise
        entry = result.get("Item")
        if not entry:
            self._logger.debug("Item not found (key=%s)", key)
            return None
        return unmarshal_item(entry)

    def upsert_internal(self, kind: str, item: Item) -> Optional[Item]:
        """Store ``item`` unless a version at least as new is stored; return the item kept."""
        attrs = self._marshal_item(kind, item)
        if self._update_hook is not None:
            self._update_hook()
        try:
            self._client.put_item(
                TableName=self._table,
                Item=attrs,
                ConditionExpression=(
                    "attribute_not_exists(#namespace) or "
                    "attribute_not_exists(#key) or "
                    ":version > #version"
                ),
                ExpressionAttributeNames={
                    "#namespace": TABLE_PARTITION_KEY,
                    "#key": TABLE_SORT_KEY,
                    "#version": VERSION_ATTRIBUTE,
                },
                ExpressionAttributeValues={":version": attrs[VERSION_ATTRIBUTE]},
            )
        except Exception as err:
            if _error_code(err) == CONDITIONAL_CHECK_FAILED:
                self._logger.debug(
                    "Not updating item due to condition (namespace=%s key=%s version=%s)",
                    kind, item["key"], item.get("version", 0),
                )
                return self.get_internal(kind, item["key"])
            self._logger.error(
                "Failed to put item (namespace=%s key=%s): %s", kind, item["key"], err
            )
            raise
        return item