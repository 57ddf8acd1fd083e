from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from jury_trial._defaults import MAX_RETRY_ATTEMPTS, STREAM_CHUNK_DELAY_S
from jury_trial.llm.client import LiteLLMClient, LLMClient, StreamingLLMClient
from jury_trial.personas.base import Persona
from jury_trial.utils import new_id, now_ms

from .errors import (
    StreamCancelledError,
    calculate_retry_delay,
    is_recoverable_error,
    should_cancel_stream,
    user_friendly_message,
)
from .registry import CancellationToken, StreamRegistry, StreamStatus

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Stream was cancelled"


@dataclass(frozen=True, slots=True)
class StreamChunk:
    stream_id: str
    content: str
    is_complete: bool
    error: str | None = None
    timestamp: int = field(default_factory=now_ms)


def chunk_text(text: str, rng: random.Random | None = None) -> list[str]:
    """Split ``text`` into deltas of 2-4 words whose concatenation is ``text``."""
    if not text:
        return []
    rng = rng or random
    words = text.split(" ")
    chunks: list[str] = []
    idx = 0
    while idx < len(words):
        size = rng.randint(2, 4)
        piece = " ".join(words[idx : idx + size])
        chunks.append(piece if idx == 0 else " " + piece)
        idx += size
    return chunks


def _backoff_wait(retry_state: RetryCallState) -> float:
    return calculate_retry_delay(retry_state.attempt_number) / 1000.0


async def _close_iterator(iterator: AsyncIterator[str]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.debug("Closing an abandoned model stream failed", exc_info=True)


class ResponseStreamer:
    """Produces a live sequence of :class:`StreamChunk` for one persona answer.

    Each call to :meth:`stream` gets a fresh stream id registered in the
    :class:`StreamRegistry`; the id is cleaned up on every exit path. Model
    calls are retried with exponential backoff when the error is recoverable.
    Cancellation is cooperative: the token is polled at the top of every attempt
    and before every emitted chunk.
    """

    def __init__(
        self,
        llm_client: LLMClient | None = None,
        registry: StreamRegistry | None = None,
        chunk_delay: float = STREAM_CHUNK_DELAY_S,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        native_streaming: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.llm_client = llm_client or LiteLLMClient()
        self.registry = registry or StreamRegistry()
        self.chunk_delay = max(0.0, chunk_delay)
        self.max_attempts = max(1, max_attempts)
        self.native_streaming = native_streaming
        self._sleep = sleep
        self._rng = rng

    async def stream(self, prompt: str, persona: Persona) -> AsyncIterator[StreamChunk]:
        stream_id = new_id()
        token = CancellationToken()
        self.registry.register(stream_id, StreamStatus.STARTING, owner=persona.id)
        self.registry.register_cancel_handle(stream_id, token.cancel)
        logger.debug("Stream %s registered for persona %s", stream_id, persona.name)
        try:
            self.registry.update_status(stream_id, StreamStatus.STREAMING)
            try:
                async for delta in self._deltas(stream_id, token, prompt, persona):
                    self._check_cancelled(stream_id, token)
                    yield StreamChunk(stream_id=stream_id, content=delta, is_complete=False)
                    if self.chunk_delay:
                        await self._sleep(self.chunk_delay)
                self._check_cancelled(stream_id, token)
            except StreamCancelledError:
                self.registry.update_status(stream_id, StreamStatus.CANCELLED)
                logger.debug("Stream %s cancelled", stream_id)
                yield StreamChunk(stream_id=stream_id, content="", is_complete=True, error=CANCELLED_MESSAGE)
                return
            except Exception as exc:
                if should_cancel_stream(exc):
                    self.registry.cancel(stream_id)
                else:
                    self.registry.update_status(stream_id, StreamStatus.ERROR)
                logger.warning("Stream %s for persona %s failed: %s", stream_id, persona.name, exc)
                yield StreamChunk(
                    stream_id=stream_id,
                    content="",
                    is_complete=True,
                    error=user_friendly_message(exc),
                )
                return

            self.registry.update_status(stream_id, StreamStatus.COMPLETED)
            yield StreamChunk(stream_id=stream_id, content="", is_complete=True)
        finally:
            self.registry.cleanup(stream_id)

    def cancel(self, stream_id: str) -> bool:
        return self.registry.cancel(stream_id)

    def active_streams(self) -> dict[str, StreamStatus]:
        return self.registry.list_active()

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def _deltas(
        self,
        stream_id: str,
        token: CancellationToken,
        prompt: str,
        persona: Persona,
    ) -> AsyncIterator[str]:
        if self.native_streaming and isinstance(self.llm_client, StreamingLLMClient):
            async for delta in self._native_deltas(stream_id, token, prompt, persona):
                yield delta
            return

        text = await self._complete(stream_id, token, prompt, persona)
        for delta in chunk_text(text, self._rng):
            yield delta

    async def _complete(
        self,
        stream_id: str,
        token: CancellationToken,
        prompt: str,
        persona: Persona,
    ) -> str:
        payload: dict = {}
        async for attempt in self._retrying(stream_id):
            with attempt:
                self._check_cancelled(stream_id, token)
                payload = await self.llm_client.complete(
                    model=persona.model,
                    system_prompt=persona.system_instruction,
                    prompt=prompt,
                    temperature=persona.temperature,
                )
        return str(payload.get("content") or "")

    async def _native_deltas(
        self,
        stream_id: str,
        token: CancellationToken,
        prompt: str,
        persona: Persona,
    ) -> AsyncIterator[str]:
        # Only opening the stream and reading its first delta is retried;
        # a failure after text has been emitted is surfaced as-is.
        iterator: AsyncIterator[str] | None = None
        first: str | None = None
        async for attempt in self._retrying(stream_id):
            with attempt:
                self._check_cancelled(stream_id, token)
                iterator = self.llm_client.stream(
                    model=persona.model,
                    system_prompt=persona.system_instruction,
                    prompt=prompt,
                    temperature=persona.temperature,
                ).__aiter__()
                try:
                    first = await iterator.__anext__()
                except StopAsyncIteration:
                    first = None
                except BaseException:
                    await _close_iterator(iterator)
                    iterator = None
                    raise

        if iterator is None or first is None:
            return
        try:
            yield first
            async for delta in iterator:
                yield delta
        finally:
            await _close_iterator(iterator)

    def _retrying(self, stream_id: str) -> AsyncRetrying:
        def _log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Stream %s attempt %d failed (%s); retrying in %dms",
                stream_id,
                retry_state.attempt_number,
                exc,
                calculate_retry_delay(retry_state.attempt_number),
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=_backoff_wait,
            retry=retry_if_exception(is_recoverable_error),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    def _check_cancelled(self, stream_id: str, token: CancellationToken) -> None:
        if token.cancelled or self.registry.is_cancelled(stream_id):
            raise StreamCancelledError(stream_id)
