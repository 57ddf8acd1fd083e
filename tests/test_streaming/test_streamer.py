from __future__ import annotations

import random
import unittest

from tests.helpers import FakeLLMClient, FakeLLMReply, FakeStreamingLLMClient, make_persona, no_sleep
from jury_trial.streaming.registry import StreamRegistry, StreamStatus
from jury_trial.streaming.streamer import CANCELLED_MESSAGE, ResponseStreamer, chunk_text

LONG_ANSWER = "We should launch in the spring once the billing system is stable and tested end to end."


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class _RateLimitError(Exception):
    status_code = 429


class _TrackedStream:
    """Async iterator that can be told to fail on its first read."""

    def __init__(self, deltas: list[str], error: Exception | None = None) -> None:
        self._deltas = list(deltas)
        self._error = error
        self.closed = False

    def __aiter__(self) -> _TrackedStream:
        return self

    async def __anext__(self) -> str:
        if self._error is not None:
            raise self._error
        if not self._deltas:
            raise StopAsyncIteration
        return self._deltas.pop(0)

    async def aclose(self) -> None:
        self.closed = True


class _TrackedStreamingClient:
    def __init__(self, streams: list[_TrackedStream]) -> None:
        self.streams = streams
        self.opened: list[_TrackedStream] = []

    async def complete(self, model, system_prompt, prompt, temperature=0.0) -> dict:
        raise AssertionError("complete() should not be used when streaming natively")

    def stream(self, model, system_prompt, prompt, temperature=0.0) -> _TrackedStream:
        stream = self.streams[len(self.opened)]
        self.opened.append(stream)
        return stream


class ChunkTextTests(unittest.TestCase):
    def test_chunks_rejoin_to_original(self) -> None:
        chunks = chunk_text(LONG_ANSWER, random.Random(3))
        self.assertEqual("".join(chunks), LONG_ANSWER)
        for chunk in chunks:
            self.assertTrue(2 <= len(chunk.split()) <= 4 or chunk is chunks[-1])

    def test_empty_text_has_no_chunks(self) -> None:
        self.assertEqual(chunk_text(""), [])


class ResponseStreamerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.persona = make_persona("The Engineer", key="engineer")
        self.registry = StreamRegistry()

    def _streamer(self, client, **kwargs) -> ResponseStreamer:
        kwargs.setdefault("chunk_delay", 0.0)
        kwargs.setdefault("sleep", no_sleep)
        return ResponseStreamer(
            llm_client=client,
            registry=self.registry,
            rng=random.Random(11),
            **kwargs,
        )

    async def test_successful_stream_rejoins_text_and_cleans_up(self) -> None:
        client = FakeLLMClient({"persona:engineer": FakeLLMReply(content=LONG_ANSWER)})
        streamer = self._streamer(client)

        chunks = [chunk async for chunk in streamer.stream("Should we launch?", self.persona)]

        self.assertGreater(len(chunks), 2)
        self.assertTrue(chunks[-1].is_complete)
        self.assertIsNone(chunks[-1].error)
        self.assertEqual("".join(c.content for c in chunks), LONG_ANSWER)
        self.assertEqual(len({c.stream_id for c in chunks}), 1)
        self.assertEqual(self.registry.active_count(), 0)

        call = client.calls[0]
        self.assertEqual(call["system_prompt"], self.persona.system_instruction)
        self.assertEqual(call["prompt"], "Should we launch?")
        self.assertEqual(call["model"], "gpt-fake")

    async def test_stream_is_registered_while_running(self) -> None:
        client = FakeLLMClient({"persona:engineer": FakeLLMReply(content=LONG_ANSWER)})
        streamer = self._streamer(client)

        stream = streamer.stream("Q", self.persona)
        first = await stream.__anext__()
        self.assertEqual(self.registry.get_status(first.stream_id), StreamStatus.STREAMING)
        self.assertEqual(self.registry.streams_for(self.persona.id), [first.stream_id])
        await stream.aclose()

        self.assertEqual(self.registry.active_count(), 0)

    async def test_chunk_delay_is_applied_between_chunks(self) -> None:
        client = FakeLLMClient({"persona:engineer": FakeLLMReply(content=LONG_ANSWER)})
        sleeper = _SleepRecorder()
        streamer = self._streamer(client, chunk_delay=0.2, sleep=sleeper)

        chunks = [chunk async for chunk in streamer.stream("Q", self.persona)]

        deltas = [c for c in chunks if not c.is_complete]
        self.assertEqual(sleeper.delays, [0.2] * len(deltas))

    async def test_recoverable_errors_are_retried_with_backoff(self) -> None:
        client = FakeLLMClient(
            {
                "persona:engineer": [
                    FakeLLMReply(error=TimeoutError("timed out")),
                    FakeLLMReply(error=ConnectionError("connection reset")),
                    FakeLLMReply(content="Ship it."),
                ]
            }
        )
        sleeper = _SleepRecorder()
        streamer = self._streamer(client, sleep=sleeper)

        chunks = [chunk async for chunk in streamer.stream("Q", self.persona)]

        self.assertEqual(len(client.calls), 3)
        self.assertEqual(sleeper.delays, [1.0, 2.0])
        self.assertIsNone(chunks[-1].error)
        self.assertEqual("".join(c.content for c in chunks), "Ship it.")

    async def test_exhausted_retries_surface_friendly_error(self) -> None:
        client = FakeLLMClient({"persona:engineer": FakeLLMReply(error=TimeoutError("timed out"))})
        streamer = self._streamer(client)

        chunks = [chunk async for chunk in streamer.stream("Q", self.persona)]

        self.assertEqual(len(client.calls), 3)
        self.assertEqual(len(chunks), 1)
        self.assertTrue(chunks[0].is_complete)
        self.assertIn("timed out", chunks[0].error)
        self.assertEqual(self.registry.active_count(), 0)

    async def test_fatal_error_is_not_retried(self) -> None:
        client = FakeLLMClient({"persona:engineer": FakeLLMReply(error=RuntimeError("401 Unauthorized"))})
        streamer = self._streamer(client)

        chunks = [chunk async for chunk in streamer.stream("Q", self.persona)]

        self.assertEqual(len(client.calls), 1)
        self.assertEqual(chunks[-1].error, "Authentication failed. Please check your API key.")

    async def test_unclassified_error_is_not_retried(self) -> None:
        client = FakeLLMClient({"persona:engineer": FakeLLMReply(error=RuntimeError("model refused"))})
        streamer = self._streamer(client)

        chunks = [chunk async for chunk in streamer.stream("Q", self.persona)]

        self.assertEqual(len(client.calls), 1)
        self.assertEqual(chunks[-1].error, "An unexpected error occurred: model refused")

    async def test_rate_limit_is_surfaced_without_retry(self) -> None:
        client = FakeLLMClient({"persona:engineer": FakeLLMReply(error=_RateLimitError("Rate limit exceeded"))})
        sleeper = _SleepRecorder()
        streamer = self._streamer(client, sleep=sleeper)

        chunks = [chunk async for chunk in streamer.stream("Q", self.persona)]

        self.assertEqual(len(client.calls), 1)
        self.assertEqual(sleeper.delays, [])
        self.assertEqual(chunks[-1].error, "Too many requests. Please wait a moment and try again.")

    async def test_cancel_mid_stream_emits_cancelled_terminal_chunk(self) -> None:
        client = FakeLLMClient({"persona:engineer": FakeLLMReply(content=LONG_ANSWER)})
        streamer = self._streamer(client)

        received = []
        async for chunk in streamer.stream("Q", self.persona):
            received.append(chunk)
            if len(received) == 1:
                self.assertTrue(streamer.cancel(chunk.stream_id))

        self.assertEqual(len(received), 2)
        self.assertTrue(received[-1].is_complete)
        self.assertEqual(received[-1].error, CANCELLED_MESSAGE)
        self.assertEqual(self.registry.active_count(), 0)

    async def test_native_streaming_passes_deltas_through(self) -> None:
        client = FakeStreamingLLMClient({"persona:engineer": FakeLLMReply(content="one two three")})
        streamer = self._streamer(client, native_streaming=True)

        chunks = [chunk async for chunk in streamer.stream("Q", self.persona)]

        self.assertEqual([c.content for c in chunks[:-1]], ["one", " two", " three"])
        self.assertTrue(chunks[-1].is_complete)

    async def test_native_streaming_retries_opening_the_stream(self) -> None:
        client = FakeStreamingLLMClient(
            {
                "persona:engineer": [
                    FakeLLMReply(error=TimeoutError("timed out")),
                    FakeLLMReply(content="fine now"),
                ]
            }
        )
        streamer = self._streamer(client, native_streaming=True)

        chunks = [chunk async for chunk in streamer.stream("Q", self.persona)]

        self.assertEqual(len(client.calls), 2)
        self.assertEqual("".join(c.content for c in chunks), "fine now")

    async def test_failed_stream_is_closed_before_retrying(self) -> None:
        broken = _TrackedStream([], error=ConnectionError("connection reset"))
        healthy = _TrackedStream(["fine", " now"])
        client = _TrackedStreamingClient([broken, healthy])
        streamer = self._streamer(client, native_streaming=True)

        chunks = [chunk async for chunk in streamer.stream("Q", self.persona)]

        self.assertEqual(client.opened, [broken, healthy])
        self.assertTrue(broken.closed)
        self.assertTrue(healthy.closed)
        self.assertEqual("".join(c.content for c in chunks), "fine now")
        self.assertIsNone(chunks[-1].error)


if __name__ == "__main__":
    unittest.main()
