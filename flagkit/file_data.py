"""A data source that loads feature flag data from JSON or YAML files."""

import json
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

import yaml

FEATURES = "features"
SEGMENTS = "segments"

Reloader = Callable[[List[str], logging.Logger, Callable[[], None], threading.Event], None]

_SECTIONS = {"flags": "flags", "flagvalues": "flag_values", "segments": "segments"}


class DataConflictError(ValueError):
    """The same flag or segment key was given more than once."""


class FeatureStore(Protocol):
    """The part of a feature store the file data source writes to."""

    def init(self, all_data: Mapping[str, Mapping[str, Any]]) -> None:
        ...


@dataclass
class FileData:
    """The contents of one data file."""

    flags: Optional[Dict[str, Dict[str, Any]]] = None
    flag_values: Optional[Dict[str, Any]] = None
    segments: Optional[Dict[str, Dict[str, Any]]] = None


def _detect_json(text: str) -> bool:
    # A JSON file for our purposes must be an object.
    return text.lstrip().startswith("{")


def _section(name: str, value: Any, objects: bool) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValueError(f"error parsing file: '{name}' must be an object")
    result: Dict[str, Any] = {}
    for key, item in value.items():
        if objects:
            if item is None:
                item = {}
            elif not isinstance(item, dict):
                raise ValueError(f"error parsing file: '{name}.{key}' must be an object")
        result[str(key)] = item
    return result


def _to_file_data(raw: Any) -> FileData:
    if raw is None:
        return FileData()
    if not isinstance(raw, dict):
        raise ValueError("error parsing file: top-level value must be an object")
    fields: Dict[str, Any] = {}
    for name, value in raw.items():
        attr = _SECTIONS.get(str(name).lower())
        if attr is not None:
            fields[attr] = _section(str(name), value, attr != "flag_values")
    return FileData(**fields)


def read_file(path: str) -> FileData:
    """Read and parse one data file.

    Raises OSError if the file cannot be read and ValueError if it cannot be parsed.
    """
    try:
        with open(path, encoding="utf-8") as handle:
            text = handle.read()
    except OSError as err:
        raise OSError(f"unable to read file: {err}") from err
    try:
        raw = json.loads(text) if _detect_json(text) else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as err:
        raise ValueError(f"error parsing file: {err}") from err
    return _to_file_data(raw)


def _insert(all_data: Dict[str, Dict[str, Any]], kind: str, key: str, item: Any) -> None:
    if key in all_data[kind]:
        raise DataConflictError(f"{kind} '{key}' is specified by multiple files")
    all_data[kind][key] = item


def merge_file_data(*args: FileData) -> Dict[str, Dict[str, Any]]:
    """Combine file contents into store data; a key given twice raises DataConflictError."""
    all_data: Dict[str, Dict[str, Any]] = {FEATURES: {}, SEGMENTS: {}}
    for data in args:
        for key, flag in (data.flags or {}).items():
            _insert(all_data, FEATURES, key, dict(flag))
        for key, value in (data.flag_values or {}).items():
            flag = {
                "key": key,
                "variations": [value],
                "on": True,
                "fallthrough": {"variation": 0},
            }
            _insert(all_data, FEATURES, key, flag)
        for key, segment in (data.segments or {}).items():
            _insert(all_data, SEGMENTS, key, dict(segment))
    return all_data


class FileDataSource:
    """Loads flag data from files into a feature store, optionally reloading on change.

    If any file is missing, malformed or repeats a key, no data is loaded from any file.
    """

    def __init__(
        self,
        store: Optional[FeatureStore],
        paths: Iterable[str],
        logger: Optional[logging.Logger] = None,
        reloader: Optional[Reloader] = None,
    ) -> None:
        if store is None:
            raise ValueError("feature store must not be None")
        self._store = store
        self._paths = [os.path.abspath(p) for p in paths]
        self._logger = logger or logging.getLogger(__name__)
        self._reloader = reloader
        self._initialized = False
        self._ready: Optional[threading.Event] = None
        self._signalled = False
        self._lock = threading.Lock()
        self._close_event: Optional[threading.Event] = None

    @property
    def paths(self) -> List[str]:
        """The absolute paths of the data files."""
        return list(self._paths)

    def start(self, ready: threading.Event) -> None:
        """Load the files; ``ready`` is set once loading finishes (or, with a reloader, succeeds)."""
        self._ready = ready
        self.reload()
        if self._reloader is None:
            self._signal_start_complete(self._initialized)
            return
        self._close_event = threading.Event()
        try:
            self._reloader(self.paths, self._logger, self.reload, self._close_event)
        except Exception as err:  # a broken reloader leaves the loaded data in place
            self._logger.error("Unable to start reloader: %s", err)

    def reload(self) -> None:
        """Reread every file and replace the store's data; on any error nothing changes."""
        files = []
        for path in self._paths:
            try:
                files.append(read_file(path))
            except (OSError, ValueError) as err:
                self._logger.error("Unable to load flags: %s [%s]", err, path)
                return
        try:
            data = merge_file_data(*files)
        except DataConflictError as err:
            self._logger.error("%s", err)
            return
        try:
            self._store.init(data)
        except Exception as err:  # store failures are reported, not raised
            self._logger.error("%s", err)
        finally:
            self._signal_start_complete(True)

    def _signal_start_complete(self, succeeded: bool) -> None:
        with self._lock:
            if self._signalled:
                return
            self._signalled = True
            self._initialized = succeeded
        if self._ready is not None:
            self._ready.set()

    def close(self) -> None:
        """Stop the reloader, if any."""
        with self._lock:
            event, self._close_event = self._close_event, None
        if event is not None:
            event.set()

    def initialized(self) -> bool:
        """Whether data was loaded successfully."""
        with self._lock:
            return self._initialized


def make_factory(
    paths: Iterable[str],
    logger: Optional[logging.Logger] = None,
    reloader: Optional[Reloader] = None,
) -> Callable[[str, FeatureStore], FileDataSource]:
    """Return a callable that builds a FileDataSource from an SDK key and a feature store."""
    path_list = list(paths)

    def factory(sdk_key: str, store: FeatureStore) -> FileDataSource:
        return FileDataSource(store, path_list, logger, reloader)

    return factory