from __future__ import annotations

from prev_core.providers.base import RetryPolicy
from prev_core.providers.openai import OpenAIProvider


class OpenAICompatProvider(OpenAIProvider):
    """Any server speaking the OpenAI chat completions API (vLLM, Ollama, LM Studio...)."""

    NAME = "openai-compat"
    MODEL = ""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = "",
        retry: RetryPolicy | None = None,
        timeout: float = 0,
    ):
        if not base_url:
            raise ValueError("An OpenAI-compatible provider requires a base URL (OPENAI_COMPAT_BASE_URL).")
        if not model:
            raise ValueError("An OpenAI-compatible provider requires a model name.")
        # Local servers usually accept any key, but the SDK insists on one.
        super().__init__(api_key=api_key or "not-needed", model=model, base_url=base_url, retry=retry, timeout=timeout)
