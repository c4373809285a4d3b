"""Base AI provider implementing the Template Method pattern.

Every provider shares the same calling algorithm:
    complete()        → _call_with_retry() → _call_api()      ← differs per provider
    complete_stream() → _stream_api()                         ← differs per provider

Subclasses implement three things only:
  - __init__: validate and store the SDK client
  - _call_api: make one raw completion call and return the text response
  - _classify: map an SDK exception onto an ErrorCode

Retry policy, backoff, cancellation and logging live here so they are defined
once and behave identically for every provider.
"""

from __future__ import annotations

import enum
import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterator

logger = logging.getLogger(__name__)

# Shared defaults; subclasses may override them as class attributes.
_MAX_TOKENS = 4096


class ErrorCode(str, enum.Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    INVALID_REQUEST = "invalid_request"
    CONTEXT_LENGTH = "context_length"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


RETRYABLE_CODES = frozenset({ErrorCode.RATE_LIMIT, ErrorCode.TIMEOUT, ErrorCode.UNAVAILABLE})


class ProviderError(Exception):
    def __init__(self, code: ErrorCode, message: str, provider: str = ""):
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider = provider

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def __str__(self) -> str:
        prefix = f"{self.provider}: " if self.provider else ""
        return f"{prefix}[{self.code.value}] {self.message}"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with full jitter.

    ``max_retries`` counts retries, so a call is attempted ``max_retries + 1``
    times at most. Intervals are in seconds.
    """

    max_retries: int = 3
    initial_interval: float = 1.0
    max_interval: float = 30.0
    multiplier: float = 2.0

    def delays(self) -> Iterator[float]:
        """Sleep before each retry: uniform in [interval/2, interval*1.5)."""
        interval = self.initial_interval if self.initial_interval > 0 else 1.0
        for _ in range(max(self.max_retries, 0)):
            yield interval / 2 + random.uniform(0, interval)
            interval = interval * self.multiplier
            if self.max_interval > 0:
                interval = min(interval, self.max_interval)


def is_retryable(exc: BaseException, code: ErrorCode) -> bool:
    """Typed provider errors decide for themselves; unclassified failures are treated as transient."""
    if isinstance(exc, ProviderError):
        return exc.retryable
    return code in RETRYABLE_CODES or code == ErrorCode.UNKNOWN


def user_message(content: str) -> dict:
    return {"role": "user", "content": content}


def system_message(content: str) -> dict:
    return {"role": "system", "content": content}


class BaseProvider(ABC):
    NAME: str = "base"
    MODEL: str = ""
    MAX_TOKENS: int = _MAX_TOKENS
    TEMPERATURE: float = 0.2

    def __init__(self, model: str = "", retry: RetryPolicy | None = None, timeout: float = 0):
        self.model = model or self.MODEL
        self.retry = retry or RetryPolicy()
        self.timeout = timeout

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    def complete(self, messages: list[dict]) -> str:
        """Run one chat completion and return its text.

        Raises ProviderError once retries are exhausted or the failure is not
        retryable.
        """
        return self._call_with_retry(messages)

    def complete_stream(self, messages: list[dict], cancel: threading.Event | None = None) -> Iterator[str]:
        """Yield response chunks in order.

        ``cancel`` is checked between chunks; once set the stream stops with a
        TIMEOUT error and any partial text must be discarded by the caller.
        """
        try:
            for chunk in self._stream_api(messages):
                if cancel is not None and cancel.is_set():
                    raise ProviderError(ErrorCode.TIMEOUT, "stream cancelled", self.NAME)
                if chunk:
                    yield chunk
        except ProviderError:
            raise
        except Exception as e:
            raise self._to_provider_error(e) from e

    def collect_stream(self, messages: list[dict], cancel: threading.Event | None = None) -> str:
        return "".join(self.complete_stream(messages, cancel))

    # ------------------------------------------------------------------ #
    # Abstract: implement in each provider                                #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _call_api(self, messages: list[dict]) -> str:
        """Make a single API call and return the raw text response.

        It should raise on failure; _call_with_retry handles retries and logging.
        """

    def _stream_api(self, messages: list[dict]) -> Iterator[str]:
        """Stream chunks from the API. Providers without streaming yield one chunk."""
        yield self._call_api(messages)

    def _classify(self, exc: Exception) -> ErrorCode:
        """Map an SDK exception to an ErrorCode. Providers override this."""
        return _classify_status(getattr(exc, "status_code", None), str(exc))

    # ------------------------------------------------------------------ #
    # Shared implementations                                               #
    # ------------------------------------------------------------------ #

    def _to_provider_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, ProviderError):
            return exc
        return ProviderError(self._classify(exc), str(exc) or exc.__class__.__name__, self.NAME)

    def _call_with_retry(self, messages: list[dict]) -> str:
        """Retry _call_api according to the retry policy.

        Only rate limits, timeouts and unavailability are retried. Auth,
        invalid-request and context-length errors propagate immediately.
        """
        delays = self.retry.delays()
        attempts = max(self.retry.max_retries, 0) + 1
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._call_api(messages)
            except Exception as e:
                err = self._to_provider_error(e)
                if not is_retryable(e, err.code):
                    _reraise(err, e)
                delay = next(delays, None)
                if delay is None:
                    logger.error("%s API failed after %d attempts: %s", self.__class__.__name__, attempts, err)
                    _reraise(err, e)
                logger.warning(
                    "%s API error (attempt %d/%d): %s. Retrying in %.1fs...",
                    self.__class__.__name__,
                    attempt,
                    attempts,
                    err,
                    delay,
                )
                time.sleep(delay)


def _reraise(err: ProviderError, cause: Exception) -> None:
    if err is cause:
        raise err
    raise err from cause


def _classify_status(status: int | None, text: str) -> ErrorCode:
    """Classify by HTTP status, falling back to the error text."""
    lowered = text.lower()
    if "context length" in lowered or "context_length" in lowered or "maximum context" in lowered:
        return ErrorCode.CONTEXT_LENGTH
    if status in (401, 403):
        return ErrorCode.AUTH
    if status == 429:
        return ErrorCode.RATE_LIMIT
    if status in (408, 504):
        return ErrorCode.TIMEOUT
    if status is not None and status >= 500:
        return ErrorCode.UNAVAILABLE
    if status in (400, 404, 413, 422):
        return ErrorCode.INVALID_REQUEST
    if "timed out" in lowered or "timeout" in lowered:
        return ErrorCode.TIMEOUT
    return ErrorCode.UNKNOWN
