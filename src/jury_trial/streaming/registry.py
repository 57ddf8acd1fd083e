"""Lifecycle and cancellation tracking for in-flight generation streams.

All public methods take the single registry lock, so the status, owner and
handle maps are always read and written together.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class StreamStatus(str, Enum):
    STARTING = "STARTING"
    STREAMING = "STREAMING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamStatus.COMPLETED, StreamStatus.CANCELLED, StreamStatus.ERROR)


class CancellationToken:
    """Explicit cooperative cancellation flag, polled by long-running calls."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class StreamRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._statuses: dict[str, StreamStatus] = {}
        self._owners: dict[str, str] = {}
        self._handles: dict[str, Callable[[], object]] = {}

    def register(
        self,
        stream_id: str,
        status: StreamStatus = StreamStatus.STARTING,
        owner: str | None = None,
    ) -> None:
        with self._lock:
            self._statuses[stream_id] = status
            if owner is not None:
                self._owners[stream_id] = owner

    def update_status(self, stream_id: str, status: StreamStatus) -> bool:
        with self._lock:
            current = self._statuses.get(stream_id)
            if current is None or current.is_terminal:
                return False
            self._statuses[stream_id] = status
            return True

    def get_status(self, stream_id: str) -> StreamStatus | None:
        with self._lock:
            return self._statuses.get(stream_id)

    def is_cancelled(self, stream_id: str) -> bool:
        with self._lock:
            return self._statuses.get(stream_id) == StreamStatus.CANCELLED

    def register_cancel_handle(self, stream_id: str, handle: Callable[[], object]) -> None:
        with self._lock:
            self._handles[stream_id] = handle

    def cancel(self, stream_id: str) -> bool:
        with self._lock:
            current = self._statuses.get(stream_id)
            if current is None or current.is_terminal:
                return False
            handle = self._handles.get(stream_id)
            if handle is not None:
                try:
                    handle()
                except Exception:
                    logger.warning("Cancel handle for stream %s raised", stream_id, exc_info=True)
            self._statuses[stream_id] = StreamStatus.CANCELLED
            return True

    def cleanup(self, stream_id: str) -> None:
        with self._lock:
            self._statuses.pop(stream_id, None)
            self._owners.pop(stream_id, None)
            self._handles.pop(stream_id, None)

    def list_active(self) -> dict[str, StreamStatus]:
        with self._lock:
            return dict(self._statuses)

    def streams_for(self, owner: str) -> list[str]:
        with self._lock:
            return [stream_id for stream_id, who in self._owners.items() if who == owner]

    def active_count(self) -> int:
        with self._lock:
            return len(self._statuses)
