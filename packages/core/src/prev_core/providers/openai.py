from __future__ import annotations

from typing import Iterator

try:
    import openai as _openai
except ImportError:
    _openai = None  # type: ignore[assignment]

from prev_core.providers.base import BaseProvider, ErrorCode, RetryPolicy, _classify_status

_INSTALL_HINT = "The 'openai' package is required for this provider. Install it with: pip install openai"


def _require_sdk():
    if _openai is None:
        raise ImportError(_INSTALL_HINT)
    return _openai


class OpenAIProvider(BaseProvider):
    NAME = "openai"
    MODEL = "gpt-4o"
    # Low temperature keeps the structured review format stable.
    TEMPERATURE = 0.2

    def __init__(
        self,
        api_key: str,
        model: str = "",
        base_url: str = "",
        retry: RetryPolicy | None = None,
        timeout: float = 0,
    ):
        super().__init__(model=model, retry=retry, timeout=timeout)
        sdk = _require_sdk()
        kwargs: dict = {"api_key": api_key, "max_retries": 0}
        if base_url:
            kwargs["base_url"] = base_url
        if timeout:
            kwargs["timeout"] = timeout
        self.client = sdk.OpenAI(**kwargs)

    def _request(self, messages: list[dict], **extra) -> dict:
        return dict(
            model=self.model,
            messages=messages,
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
            **extra,
        )

    def _call_api(self, messages: list[dict]) -> str:
        response = self.client.chat.completions.create(**self._request(messages))
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    def _stream_api(self, messages: list[dict]) -> Iterator[str]:
        stream = self.client.chat.completions.create(**self._request(messages, stream=True))
        for chunk in stream:
            if not chunk.choices:
                continue
            text = chunk.choices[0].delta.content
            if text:
                yield text

    def _classify(self, exc: Exception) -> ErrorCode:
        return classify_openai_error(exc)


def classify_openai_error(exc: Exception) -> ErrorCode:
    """Shared by every provider built on the OpenAI SDK."""
    sdk = _openai
    if sdk is not None:
        # APITimeoutError subclasses APIConnectionError, so it goes first.
        if isinstance(exc, sdk.APITimeoutError):
            return ErrorCode.TIMEOUT
        if isinstance(exc, sdk.APIConnectionError):
            return ErrorCode.UNAVAILABLE
        if isinstance(exc, (sdk.AuthenticationError, sdk.PermissionDeniedError)):
            return ErrorCode.AUTH
        if isinstance(exc, sdk.RateLimitError):
            return ErrorCode.RATE_LIMIT
        if isinstance(exc, sdk.BadRequestError):
            if "context_length" in str(exc) or "maximum context" in str(exc).lower():
                return ErrorCode.CONTEXT_LENGTH
            return ErrorCode.INVALID_REQUEST
    return _classify_status(getattr(exc, "status_code", None), str(exc))
