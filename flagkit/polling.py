"""Periodic polling of the flag service for a complete data set."""

import logging
import threading
from datetime import timedelta
from typing import Any, Mapping, Optional, Protocol, Tuple, Union


class HttpStatusError(Exception):
    """The flag service answered with an unsuccessful HTTP status."""

    def __init__(self, code: int, message: Optional[str] = None) -> None:
        self.code = code
        super().__init__(message or f"unexpected HTTP status {code}")


def is_http_error_recoverable(status: int) -> bool:
    """Whether a request that failed with this status is worth retrying."""
    if 400 <= status < 500:
        return status in (400, 408, 429)
    return True


def _http_error_message(status: int, context: str, recoverable_message: str) -> str:
    detail = " (invalid SDK key)" if status in (401, 403) else ""
    outcome = recoverable_message if is_http_error_recoverable(status) else "giving up permanently"
    return f"Received HTTP error {status}{detail} for {context} - {outcome}"


class Requestor(Protocol):
    """Fetches all flag data; returns the data and whether it was served from cache."""

    def request_all(self) -> Tuple[Mapping[str, Any], bool]:
        ...


class FeatureStore(Protocol):
    """The part of a feature store the polling processor writes to."""

    def init(self, all_data: Mapping[str, Mapping[str, Any]]) -> None:
        ...


class PollingProcessor:
    """Polls the flag service at a fixed interval and keeps a feature store up to date."""

    def __init__(
        self,
        store: FeatureStore,
        requestor: Requestor,
        poll_interval: Union[float, timedelta],
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if isinstance(poll_interval, timedelta):
            poll_interval = poll_interval.total_seconds()
        self._store = store
        self._requestor = requestor
        self._poll_interval = float(poll_interval)
        self._logger = logger or logging.getLogger(__name__)
        self._initialized = False
        self._lock = threading.Lock()
        self._quit = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self, ready: threading.Event) -> None:
        """Begin polling in the background; ``ready`` is set once data arrives or polling stops."""
        self._logger.info(
            "Starting polling processor with interval: %ss", self._poll_interval
        )
        self._thread = threading.Thread(
            target=self._run, args=(ready,), name="flag-polling", daemon=True
        )
        self._thread.start()

    def _run(self, ready: threading.Event) -> None:
        try:
            while not self._quit.is_set():
                try:
                    self._poll()
                except HttpStatusError as err:
                    self._logger.error("Error when requesting feature updates: %s", err)
                    self._logger.error(
                        "%s", _http_error_message(err.code, "polling request", "will retry")
                    )
                    if not is_http_error_recoverable(err.code):
                        return
                except Exception as err:  # any failure of one poll is logged and retried
                    self._logger.error("Error when requesting feature updates: %s", err)
                else:
                    with self._lock:
                        if not self._initialized:
                            self._initialized = True
                            ready.set()
                if self._quit.wait(self._poll_interval):
                    break
            self._logger.info("Polling processor closed.")
        finally:
            ready.set()

    def _poll(self) -> None:
        all_data, cached = self._requestor.request_all()
        # The store is only replaced when the response was not served from cache.
        if not cached:
            self._store.init(
                {
                    "features": dict(all_data.get("flags") or {}),
                    "segments": dict(all_data.get("segments") or {}),
                }
            )

    def close(self) -> None:
        """Stop polling. Calling this more than once has no further effect."""
        with self._lock:
            if self._quit.is_set():
                return
            self._logger.info("Closing polling processor")
            self._quit.set()

    def initialized(self) -> bool:
        """Whether a poll has succeeded at least once."""
        with self._lock:
            return self._initialized