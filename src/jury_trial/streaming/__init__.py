from .errors import (
    StreamCancelledError,
    calculate_retry_delay,
    is_recoverable_error,
    should_cancel_stream,
    user_friendly_message,
)
from .registry import CancellationToken, StreamRegistry, StreamStatus
from .streamer import ResponseStreamer, StreamChunk, chunk_text

__all__ = [
    "CancellationToken",
    "ResponseStreamer",
    "StreamCancelledError",
    "StreamChunk",
    "StreamRegistry",
    "StreamStatus",
    "calculate_retry_delay",
    "chunk_text",
    "is_recoverable_error",
    "should_cancel_stream",
    "user_friendly_message",
]
