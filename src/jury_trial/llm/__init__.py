from .client import LiteLLMClient, LLMClient, NoopLLMClient, StreamingLLMClient

__all__ = ["LLMClient", "LiteLLMClient", "NoopLLMClient", "StreamingLLMClient"]
