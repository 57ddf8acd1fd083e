"""Error classification and backoff policy for model-generation calls.

Fatal errors (auth, invalid input) are checked first and are never retried.
Recoverable errors (timeouts, connection and other I/O trouble) are retried
with exponential backoff. Anything else is surfaced without retry.
"""

from __future__ import annotations

import asyncio

from jury_trial._defaults import BASE_RETRY_DELAY_MS, MAX_RETRY_DELAY_MS

FATAL_MARKERS = ("unauthorized", "forbidden", "invalid", "authentication", "permission denied")
RECOVERABLE_MARKERS = ("timeout", "timed out", "connection", "network")

_FATAL_STATUS_CODES = {400, 401, 403}
_RECOVERABLE_STATUS_CODES = {408}


class StreamCancelledError(Exception):
    """Raised inside a stream when its cancellation token fires."""

    def __init__(self, stream_id: str) -> None:
        self.stream_id = stream_id
        super().__init__(f"Stream {stream_id} was cancelled")


def _status_code(error: BaseException) -> int | None:
    code = getattr(error, "status_code", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def should_cancel_stream(error: BaseException) -> bool:
    """True for auth/invalid-input class errors that must never be retried."""
    if isinstance(error, StreamCancelledError):
        return False
    if isinstance(error, (PermissionError, ValueError)):
        return True
    if _status_code(error) in _FATAL_STATUS_CODES:
        return True
    message = str(error).lower()
    return any(marker in message for marker in FATAL_MARKERS)


def is_recoverable_error(error: BaseException) -> bool:
    if isinstance(error, StreamCancelledError) or should_cancel_stream(error):
        return False
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError, OSError)):
        return True
    if _status_code(error) in _RECOVERABLE_STATUS_CODES:
        return True
    message = str(error).lower()
    return any(marker in message for marker in RECOVERABLE_MARKERS)


def calculate_retry_delay(attempt: int) -> int:
    """Backoff in milliseconds for the given 1-based attempt number."""
    if attempt < 1:
        attempt = 1
    # 1 << 16 is already far above the cap.
    delay = BASE_RETRY_DELAY_MS * (1 << min(attempt - 1, 16))
    return min(delay, MAX_RETRY_DELAY_MS)


def user_friendly_message(error: BaseException) -> str:
    message = str(error)
    lower = message.lower()
    if isinstance(error, StreamCancelledError):
        return "Stream was cancelled"
    if isinstance(error, TimeoutError) or "timed out" in lower or "timeout" in lower:
        return "Connection timed out. Please check your internet connection and try again."
    if isinstance(error, ConnectionError) or "connection" in lower:
        return "Unable to connect to the service. Please check your internet connection."
    if "unauthorized" in lower or "authentication" in lower or _status_code(error) == 401:
        return "Authentication failed. Please check your API key."
    if "rate limit" in lower or _status_code(error) == 429:
        return "Too many requests. Please wait a moment and try again."
    if isinstance(error, OSError):
        return "Network error occurred. Please try again."
    return f"An unexpected error occurred: {message or type(error).__name__}"
