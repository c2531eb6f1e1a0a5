# flagkit

Building blocks for a server-side feature flag client: clause operators,
legacy feature evaluation, a polling processor, a file data source with
automatic reloading, and the storage operations of Consul, DynamoDB and
Redis feature stores.

## What is inside

| Module | Purpose |
| --- | --- |
| `flagkit.lru_cache` | `LruCache`, a fixed-capacity set that remembers recently seen values. |
| `flagkit.operators` | `Operator`, `operator_fn` and `parse_semver`: the clause operators used by targeting rules. |
| `flagkit.legacy_feature` | `Feature`, `Variation` and `TargetRule` for evaluating old-style features with percentage rollouts. |
| `flagkit.polling` | `PollingProcessor`, `HttpStatusError` and `is_http_error_recoverable`. |
| `flagkit.file_data` | `FileDataSource`, `make_factory`, `read_file`, `merge_file_data`, `FileData` and `DataConflictError`. |
| `flagkit.filewatch` | `watch_files` and `FileWatcher`, which reload data files when they change on disk. |
| `flagkit.consul_store` | `ConsulFeatureStore`, `ConsulKV`, `batch_operations` and `ConsulError`. |
| `flagkit.dynamodb_store` | `DynamoDBFeatureStore`, `batch_write_requests` and `unmarshal_item`. |
| `flagkit.redis_store` | `RedisFeatureStore` and `host_and_port_url`. |

## Operators

`operator_fn` takes an operator name (or an `Operator` member) and returns a
predicate of the user's value and the clause's value. Unknown names, and
`segmentMatch`, give a predicate that never matches; values of the wrong type
never match either.

```python
from flagkit.operators import operator_fn

operator_fn("startsWith")("xyz", "x")             # True
operator_fn("lessThan")(1, 1.99999)               # True
operator_fn("semVerEqual")("2.0", "2.0.0")        # True
operator_fn("matches")("hello world", "l+")       # True
operator_fn("before")("2017-12-06T00:00:00.000-07:00",
                      "2017-12-06T00:01:01.000-07:00")  # True
```

`before` and `after` accept RFC 3339 timestamps or numbers of milliseconds
since the epoch. `parse_semver` pads version strings with missing minor or
patch numbers, such as `"2"` or `"2.0-rc1"`, with zeroes; it returns `None`
for anything it cannot parse.

## LRU cache

```python
from flagkit.lru_cache import LruCache

cache = LruCache(2)
cache.add("a")   # False: newly added
cache.add("a")   # True: already present, now most recently used
```

When the cache is full the least recently used value is dropped. A cache of
capacity zero treats every value as new.

## Legacy features

`Feature(key, salt, on, variations)` evaluates a user: any object with a
`key` attribute and optionally `secondary`, `ip`, `country`, `email`,
`first_name`, `last_name`, `avatar`, `name`, `anonymous` and a `custom`
dictionary. `evaluate(user)` returns the value and whether all rules passed
without a match; `evaluate_explain(user)` also returns the `TargetRule` that
chose the value. User-key targets are checked first, then other targets,
then the percentage rollout given by the variations' weights.

## Polling

`PollingProcessor(store, requestor, poll_interval, logger)` calls
`requestor.request_all()` at once and then every `poll_interval` (seconds or
a `timedelta`). The requestor returns the data (`{"flags": ..., "segments":
...}`) and whether it was served from cache; unless cached, the data is passed
to `store.init` as `{"features": ..., "segments": ...}`. `start(ready)` takes a
`threading.Event` that is set after the first successful poll, or when polling
stops. An `HttpStatusError` whose status is not recoverable (any 4xx other
than 400, 408 and 429) stops polling; other failures are logged and retried.
`close()` stops polling.

## Loading flags from files

A file data source reads one or more files holding an object with up to three
properties: `flags` (full flag definitions), `flagValues` (flag keys mapped
straight to a value) and `segments`. A file whose first non-blank character is
`{` is read as JSON; anything else is read as YAML.

```yaml
flagValues:
  my-string-flag-key: "value-1"
  my-boolean-flag-key: true
  my-integer-flag-key: 3
```

Each entry under `flagValues` becomes a flag that is on, has that value as its
only variation and falls through to it.

```python
import threading
from flagkit.file_data import FileDataSource
from flagkit.filewatch import watch_files

source = FileDataSource(store, ["flags.yml"], reloader=watch_files)
ready = threading.Event()
source.start(ready)
ready.wait()
source.initialized()
source.close()
```

The store only needs an `init(all_data)` method. `make_factory(paths, logger,
reloader)` returns a callable taking an SDK key and a store that builds such a
source. Using the same flag or segment key twice, in one file or across files,
is an error, as is a missing or malformed file; in that case nothing is loaded
and the store keeps its previous contents.

With `watch_files` as the reloader the files are reread whenever one of them
changes. The files, and even the directory that holds them, need not exist yet
when the source starts; without a reloader `ready` is set after the first load
whether or not it succeeded.

## Persistent stores

`ConsulFeatureStore`, `DynamoDBFeatureStore` and `RedisFeatureStore` store
items (dictionaries with at least `key` and `version`) by kind under a prefix,
mark a complete data set with a `$inited` key, and in `upsert_internal` only
replace an item when the incoming version is newer than the stored one,
returning the item that is kept.

- Consul: keys `{prefix}/{kind}/{key}`, default prefix `flagkit`. `ConsulKV`
  talks to the server over HTTP at the given address, `CONSUL_HTTP_ADDR`, or
  `127.0.0.1:8500`. `init_collections_internal` writes every item, then
  deletes stale ones, in transactions of at most 64 operations.
- DynamoDB: the table needs a string partition key `namespace` and a string
  sort key `key`. You supply the client, for example a boto3 DynamoDB client;
  this package does not depend on an AWS library. Writes go in batches of 25.
- Redis: one hash per kind, `{prefix}:{kind}`, default prefix `flagkit`, at
  `redis://localhost:6379` unless another URL or client is given.
  `init_internal` replaces all data in one transaction.

## What is not included

There is no flag-evaluation client, no in-memory feature store, no HTTP
requestor for the polling processor and no streaming connection. The
persistent stores provide storage operations only: `cache_ttl` is recorded
and exposed, but the stores do no in-memory caching themselves.

## Running the tests

Install the package with its `test` extra and run `pytest` from the project
directory.