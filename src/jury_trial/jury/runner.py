from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence

from jury_trial.personas.base import AgentResult, Persona
from jury_trial.streaming.streamer import ResponseStreamer

logger = logging.getLogger(__name__)

_TASK_DONE = object()


class PersonaRunner:
    """Fans a prompt out to personas and merges their streams into snapshots."""

    def __init__(
        self,
        streamer: ResponseStreamer | None = None,
        concurrency: int | None = None,
    ) -> None:
        self.streamer = streamer or ResponseStreamer()
        self.concurrency = concurrency

    async def run_many(
        self,
        prompt: str,
        personas: Sequence[Persona],
    ) -> AsyncIterator[list[AgentResult]]:
        """Yield a full, consistent snapshot of every persona's result on each change.

        The first snapshot marks every persona as loading. Closing the iterator
        early cancels all in-flight persona tasks.
        """
        if not personas:
            return

        results: dict[str, AgentResult] = {
            persona.id: AgentResult(persona_id=persona.id, is_loading=True) for persona in personas
        }
        lock = asyncio.Lock()
        queue: asyncio.Queue = asyncio.Queue()
        sem = asyncio.Semaphore(max(1, self.concurrency or len(personas)))

        async def _publish(result: AgentResult) -> None:
            async with lock:
                results[result.persona_id] = result
                queue.put_nowait(list(results.values()))

        async def _run(persona: Persona) -> None:
            async with sem:
                async for result in self._follow(prompt, persona):
                    await _publish(result)

        tasks = [asyncio.create_task(_run(persona)) for persona in personas]
        for task in tasks:
            task.add_done_callback(lambda _t: queue.put_nowait(_TASK_DONE))

        try:
            yield list(results.values())
            remaining = len(tasks)
            while remaining:
                item = await queue.get()
                if item is _TASK_DONE:
                    remaining -= 1
                    continue
                yield item
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def run_one(self, prompt: str, persona: Persona) -> AsyncIterator[AgentResult]:
        yield AgentResult(persona_id=persona.id, is_loading=True)
        async for result in self._follow(prompt, persona):
            yield result

    def cancel_all(self, personas: Sequence[Persona]) -> int:
        """Best-effort cancellation of every active stream owned by ``personas``."""
        cancelled = 0
        for persona in personas:
            try:
                stream_ids = self.streamer.registry.streams_for(persona.id)
            except Exception:
                logger.warning("Could not list streams for persona %s", persona.id, exc_info=True)
                continue
            for stream_id in stream_ids:
                try:
                    if self.streamer.cancel(stream_id):
                        cancelled += 1
                except Exception:
                    logger.warning("Error cancelling stream %s", stream_id, exc_info=True)
        return cancelled

    async def _follow(self, prompt: str, persona: Persona) -> AsyncIterator[AgentResult]:
        accumulated = ""
        final: AgentResult | None = None
        try:
            # The stream is drained to its end so its registry entry is cleaned up
            # before the terminal result is published.
            async for chunk in self.streamer.stream(prompt, persona):
                if chunk.error is not None:
                    # Partial text is kept alongside the error.
                    final = AgentResult(persona.id, accumulated, False, chunk.error)
                elif chunk.is_complete:
                    final = AgentResult(persona.id, accumulated, False)
                elif final is None:
                    accumulated += chunk.content
                    yield AgentResult(persona.id, accumulated, True)
        except Exception as exc:
            logger.warning("Persona %s failed while streaming: %s", persona.name, exc)
            final = AgentResult(persona.id, accumulated, False, str(exc) or "Unknown error")
        yield final or AgentResult(persona.id, accumulated, False)
