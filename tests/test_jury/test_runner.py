from __future__ import annotations

import asyncio
import random
import unittest
from collections.abc import AsyncIterator

from tests.helpers import FakeLLMClient, FakeLLMReply, make_persona, no_sleep
from jury_trial.jury.runner import PersonaRunner
from jury_trial.streaming.registry import StreamRegistry
from jury_trial.streaming.streamer import CANCELLED_MESSAGE, ResponseStreamer

LONG_ANSWER = "It depends on the runway, the hiring plan, and how sticky the first customers turn out to be."


class BrokenMidStreamClient:
    """Native streaming client that emits some text and then fails."""

    async def complete(self, model, system_prompt, prompt, temperature=0.0):
        raise AssertionError("native streaming expected")

    def stream(self, model, system_prompt, prompt, temperature=0.0) -> AsyncIterator[str]:
        return self._stream()

    async def _stream(self) -> AsyncIterator[str]:
        yield "Half an"
        yield " answer"
        raise RuntimeError("model refused")


class PersonaRunnerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.vc = make_persona("The VC", key="vc")
        self.engineer = make_persona("The Engineer", key="engineer")
        self.mom = make_persona("The Mom", key="mom")
        self.personas = [self.vc, self.engineer, self.mom]
        self.registry = StreamRegistry()

    def _runner(self, client, chunk_delay: float = 0.0, sleep=no_sleep, **kwargs) -> PersonaRunner:
        streamer = ResponseStreamer(
            llm_client=client,
            registry=self.registry,
            chunk_delay=chunk_delay,
            sleep=sleep,
            rng=random.Random(5),
            **kwargs,
        )
        return PersonaRunner(streamer=streamer)

    async def test_run_many_two_succeed_one_errors(self) -> None:
        client = FakeLLMClient(
            {
                "persona:vc": FakeLLMReply(content="Only if the TAM is huge."),
                "persona:engineer": FakeLLMReply(content="Not until the tests pass."),
                "persona:mom": FakeLLMReply(error=RuntimeError("Unauthorized")),
            }
        )
        runner = self._runner(client)

        snapshots = [snapshot async for snapshot in runner.run_many("Should we launch?", self.personas)]

        first = snapshots[0]
        self.assertEqual(len(first), 3)
        self.assertTrue(all(r.is_loading and r.response == "" for r in first))

        final = {r.persona_id: r for r in snapshots[-1]}
        self.assertEqual(len(final), 3)
        self.assertTrue(all(not r.is_loading for r in final.values()))
        self.assertEqual(final[self.vc.id].response, "Only if the TAM is huge.")
        self.assertEqual(final[self.engineer.id].response, "Not until the tests pass.")
        self.assertIsNone(final[self.vc.id].error)
        self.assertIsNotNone(final[self.mom.id].error)
        self.assertEqual(sum(1 for r in final.values() if r.succeeded), 2)
        self.assertEqual(self.registry.active_count(), 0)

    async def test_snapshots_are_complete_and_ordered_by_persona(self) -> None:
        client = FakeLLMClient(default=FakeLLMReply(content=LONG_ANSWER))
        runner = self._runner(client)

        async for snapshot in runner.run_many("Q", self.personas):
            self.assertEqual([r.persona_id for r in snapshot], [p.id for p in self.personas])

    async def test_loading_entries_accumulate_text(self) -> None:
        client = FakeLLMClient({"persona:vc": FakeLLMReply(content=LONG_ANSWER)})
        runner = self._runner(client)

        seen: list[str] = []
        async for snapshot in runner.run_many("Q", [self.vc]):
            seen.append(snapshot[0].response)

        self.assertEqual(seen[0], "")
        for earlier, later in zip(seen, seen[1:]):
            self.assertTrue(later.startswith(earlier))
        self.assertEqual(seen[-1], LONG_ANSWER)

    async def test_empty_persona_list_yields_nothing(self) -> None:
        runner = self._runner(FakeLLMClient())
        snapshots = [snapshot async for snapshot in runner.run_many("Q", [])]
        self.assertEqual(snapshots, [])

    async def test_run_one_reports_loading_then_final(self) -> None:
        client = FakeLLMClient({"persona:engineer": FakeLLMReply(content="Use a queue.")})
        runner = self._runner(client)

        results = [r async for r in runner.run_one("How?", self.engineer)]

        self.assertTrue(results[0].is_loading)
        self.assertEqual(results[0].response, "")
        self.assertFalse(results[-1].is_loading)
        self.assertEqual(results[-1].response, "Use a queue.")
        self.assertTrue(results[-1].succeeded)

    async def test_partial_text_is_kept_on_error(self) -> None:
        runner = self._runner(BrokenMidStreamClient(), native_streaming=True)

        results = [r async for r in runner.run_one("How?", self.engineer)]

        final = results[-1]
        self.assertFalse(final.is_loading)
        self.assertEqual(final.response, "Half an answer")
        self.assertEqual(final.error, "An unexpected error occurred: model refused")
        self.assertFalse(final.succeeded)

    async def test_cancel_all_stops_every_persona_stream(self) -> None:
        client = FakeLLMClient(default=FakeLLMReply(content=LONG_ANSWER))
        runner = self._runner(client, chunk_delay=0.01, sleep=asyncio.sleep)

        cancelled = None
        final = None
        async for snapshot in runner.run_many("Q", self.personas):
            if cancelled is None and all(r.response for r in snapshot):
                cancelled = runner.cancel_all(self.personas)
            final = snapshot

        self.assertEqual(cancelled, 3)
        for result in final:
            self.assertFalse(result.is_loading)
            self.assertEqual(result.error, CANCELLED_MESSAGE)
            self.assertTrue(result.response)
        self.assertEqual(self.registry.active_count(), 0)

    async def test_cancel_all_with_nothing_running_returns_zero(self) -> None:
        runner = self._runner(FakeLLMClient())
        self.assertEqual(runner.cancel_all(self.personas), 0)

    async def test_closing_early_cancels_persona_tasks(self) -> None:
        client = FakeLLMClient(default=FakeLLMReply(content="slow", delay=10))
        runner = self._runner(client)

        snapshots = runner.run_many("Q", self.personas)
        first = await snapshots.__anext__()
        self.assertTrue(all(r.is_loading for r in first))
        await asyncio.sleep(0)
        self.assertEqual(self.registry.active_count(), 3)

        await snapshots.aclose()
        self.assertEqual(self.registry.active_count(), 0)

    async def test_concurrency_cap_limits_parallel_streams(self) -> None:
        peak = 0

        class CountingClient(FakeLLMClient):
            async def complete(inner_self, *args, **kwargs):
                nonlocal peak
                peak = max(peak, self.registry.active_count())
                await asyncio.sleep(0.001)
                return await super().complete(*args, **kwargs)

        streamer = ResponseStreamer(
            llm_client=CountingClient(default=FakeLLMReply(content="ok then")),
            registry=self.registry,
            chunk_delay=0.0,
            sleep=no_sleep,
        )
        runner = PersonaRunner(streamer=streamer, concurrency=1)

        async for _snapshot in runner.run_many("Q", self.personas):
            pass

        self.assertEqual(peak, 1)


if __name__ == "__main__":
    unittest.main()
