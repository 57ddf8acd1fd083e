from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from jury_trial.personas.base import Persona

# Phrases unique to each moderator system prompt.
MODERATOR_CONTINUE = "deliberation should continue"
MODERATOR_FOLLOW_UPS = "generate targeted follow-up questions"
MODERATOR_VERDICT = "synthesizing a final verdict"


@dataclass
class FakeLLMReply:
    content: str = ""
    error: Exception | None = None
    delay: float = 0.0
    tokens: int = 10
    cost_usd: float = 0.001


def make_persona(name: str, key: str | None = None, model: str = "gpt-fake") -> Persona:
    """Persona whose system instruction carries ``persona:<key>`` for reply routing."""
    key = key or name.lower().replace(" ", "-")
    return Persona(
        name=name,
        description=f"{name} test persona",
        system_instruction=f"You are {name}. persona:{key}",
        id=f"id-{key}",
        model=model,
    )


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


class FakeLLMClient:
    """Scripted client: replies are routed by a key found in the system prompt.

    A key may map to a single reply or a list consumed in order (the last
    entry repeats). Keys are checked in insertion order, then the model name.
    """

    def __init__(
        self,
        responses: dict[str, FakeLLMReply | list[FakeLLMReply]] | None = None,
        default: FakeLLMReply | None = None,
    ):
        self.responses = {
            key: list(value) if isinstance(value, list) else [value]
            for key, value in (responses or {}).items()
        }
        self.default = default or FakeLLMReply(content="No opinion.")
        self.calls: list[dict[str, Any]] = []

    def calls_for(self, key: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if key in call["system_prompt"] or key == call["model"]]

    async def complete(
        self,
        model: str,
        system_prompt: str,
        prompt: str,
        temperature: float | None = 0.0,
    ) -> dict[str, Any]:
        self.calls.append(
            {
                "model": model,
                "system_prompt": system_prompt,
                "prompt": prompt,
                "temperature": temperature,
            }
        )
        reply = self._route(model, system_prompt)
        if reply.delay:
            await asyncio.sleep(reply.delay)
        if reply.error is not None:
            raise reply.error
        return {
            "content": reply.content,
            "tokens": reply.tokens,
            "cost_usd": reply.cost_usd,
        }

    def _route(self, model: str, system_prompt: str) -> FakeLLMReply:
        for key, queue in self.responses.items():
            if key in system_prompt:
                return queue.pop(0) if len(queue) > 1 else queue[0]
        if model in self.responses:
            queue = self.responses[model]
            return queue.pop(0) if len(queue) > 1 else queue[0]
        return self.default


class FakeStreamingLLMClient(FakeLLMClient):
    """Adds native streaming: the routed reply is emitted word by word."""

    def stream(
        self,
        model: str,
        system_prompt: str,
        prompt: str,
        temperature: float | None = 0.0,
    ) -> AsyncIterator[str]:
        return self._stream(model, system_prompt, prompt, temperature)

    async def _stream(
        self,
        model: str,
        system_prompt: str,
        prompt: str,
        temperature: float | None,
    ) -> AsyncIterator[str]:
        payload = await self.complete(model, system_prompt, prompt, temperature)
        words = payload["content"].split(" ")
        for idx, word in enumerate(words):
            yield word if idx == 0 else " " + word
