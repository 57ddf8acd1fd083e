from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# Models whose API does not accept a ``temperature`` parameter.
_NO_TEMPERATURE_PREFIXES = ("o1", "o3", "gpt-5")


class LLMClient(Protocol):
    async def complete(
        self,
        model: str,
        system_prompt: str,
        prompt: str,
        temperature: float | None = 0.0,
    ) -> dict[str, Any]: ...


@runtime_checkable
class StreamingLLMClient(Protocol):
    def stream(
        self,
        model: str,
        system_prompt: str,
        prompt: str,
        temperature: float | None = 0.0,
    ) -> AsyncIterator[str]: ...


class LiteLLMClient:
    """Production LLM client backed by litellm.

    Retries are not applied here; :class:`~jury_trial.streaming.streamer.ResponseStreamer`
    owns the retry policy so each call is retried exactly once per policy.
    """

    async def complete(
        self,
        model: str,
        system_prompt: str,
        prompt: str,
        temperature: float | None = 0.0,
    ) -> dict[str, Any]:
        try:
            from litellm import acompletion, completion_cost  # pragma: no cover
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "litellm is not installed. Install jury-trial with litellm or inject llm_client."
            ) from exc

        response = await acompletion(**_build_request(model, system_prompt, prompt, temperature))
        content = response.choices[0].message.content
        usage = getattr(response, "usage", None)
        total_tokens = int(getattr(usage, "total_tokens", 0) or 0)

        cost_usd: float | None = None
        try:
            cost_usd = float(completion_cost(completion_response=response))
        except Exception:
            logger.debug("No cost information for model %s", model)

        return {
            "content": content or "",
            "tokens": total_tokens,
            "cost_usd": cost_usd,
        }

    async def stream(
        self,
        model: str,
        system_prompt: str,
        prompt: str,
        temperature: float | None = 0.0,
    ) -> AsyncIterator[str]:
        try:
            from litellm import acompletion  # pragma: no cover
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "litellm is not installed. Install jury-trial with litellm or inject llm_client."
            ) from exc

        request = _build_request(model, system_prompt, prompt, temperature)
        request["stream"] = True
        response = await acompletion(**request)
        async for chunk in response:
            delta = chunk.choices[0].delta
            content = getattr(delta, "content", None)
            if content:
                yield content


class NoopLLMClient:
    async def complete(
        self,
        model: str,
        system_prompt: str,
        prompt: str,
        temperature: float | None = 0.0,
    ) -> dict[str, Any]:
        raise RuntimeError("No llm_client configured.")


def _build_request(
    model: str,
    system_prompt: str,
    prompt: str,
    temperature: float | None,
) -> dict[str, Any]:
    request: dict[str, Any] = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ],
    }
    if _should_send_temperature(model, temperature):
        request["temperature"] = temperature
    return request


def _should_send_temperature(model: str, temperature: float | None) -> bool:
    if temperature is None:
        return False
    lower = model.lower()
    if any(lower.startswith(prefix) for prefix in _NO_TEMPERATURE_PREFIXES):
        if temperature != 0.0:
            logger.debug(
                "Model %s does not support temperature; ignoring temperature=%.2f",
                model,
                temperature,
            )
        return False
    return True
