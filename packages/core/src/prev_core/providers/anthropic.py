from __future__ import annotations

from typing import Iterator

from prev_core.providers.base import BaseProvider, ErrorCode, RetryPolicy, _classify_status


class AnthropicProvider(BaseProvider):
    NAME = "anthropic"
    MODEL = "claude-sonnet-4-20250514"
    # Slightly higher than OpenAI for more natural phrasing in review comments.
    TEMPERATURE = 0.3

    def __init__(
        self,
        api_key: str,
        model: str = "",
        base_url: str = "",
        retry: RetryPolicy | None = None,
        timeout: float = 0,
    ):
        super().__init__(model=model, retry=retry, timeout=timeout)
        try:
            import anthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for this provider. Install it with: pip install anthropic"
            )
        self._sdk = anthropic
        kwargs: dict = {"api_key": api_key, "max_retries": 0}
        if base_url:
            kwargs["base_url"] = base_url
        if timeout:
            kwargs["timeout"] = timeout
        self.client = anthropic.Anthropic(**kwargs)

    def _request(self, messages: list[dict]) -> dict:
        # Anthropic takes the system prompt separately from the conversation.
        system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
        conversation = [m for m in messages if m.get("role") != "system"]
        request = dict(
            model=self.model,
            messages=conversation,
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
        )
        if system:
            request["system"] = system
        return request

    def _call_api(self, messages: list[dict]) -> str:
        from anthropic.types import TextBlock

        response = self.client.messages.create(**self._request(messages))
        text_blocks = [block.text for block in response.content if isinstance(block, TextBlock)]
        return "".join(text_blocks).strip()

    def _stream_api(self, messages: list[dict]) -> Iterator[str]:
        with self.client.messages.stream(**self._request(messages)) as stream:
            yield from stream.text_stream

    def _classify(self, exc: Exception) -> ErrorCode:
        sdk = self._sdk
        if isinstance(exc, sdk.APITimeoutError):
            return ErrorCode.TIMEOUT
        if isinstance(exc, sdk.APIConnectionError):
            return ErrorCode.UNAVAILABLE
        if isinstance(exc, (sdk.AuthenticationError, sdk.PermissionDeniedError)):
            return ErrorCode.AUTH
        if isinstance(exc, sdk.RateLimitError):
            return ErrorCode.RATE_LIMIT
        if isinstance(exc, sdk.BadRequestError):
            if "prompt is too long" in str(exc) or "context window" in str(exc).lower():
                return ErrorCode.CONTEXT_LENGTH
            return ErrorCode.INVALID_REQUEST
        return _classify_status(getattr(exc, "status_code", None), str(exc))
