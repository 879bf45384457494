"""Exponential-backoff retry around a Provider.

Only failures that happen before a stream starts are retried; once chunks
flow, errors travel inside the stream.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

from helmsman.api.errors import ProviderError
from helmsman.api.models import Message, StreamChunk
from helmsman.api.provider import Provider
from helmsman.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_MARKERS = (
    "429",
    "500",
    "502",
    "503",
    "529",
    "connection refused",
    "timeout",
    "timed out",
    "deadline exceeded",
    "eof",
    "closed unexpectedly",
    "reset by peer",
)


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, ProviderError):
        if error.transient:
            return True
        status = error.status_code
        # 4xx other than 429 is fatal whatever the message says
        if status is not None and 400 <= status < 500 and status != 429:
            return False
    text = str(error).lower()
    return any(marker in text for marker in RETRYABLE_MARKERS)


class RetryProvider:
    """Wraps a Provider, retrying transient failures with backoff.

    The delay for attempt n (0-based) is ``base_delay * 2**n`` capped at
    ``max_delay``. Cancellation during a backoff sleep propagates.
    """

    def __init__(
        self,
        inner: Provider,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
    ) -> None:
        self._inner = inner
        self.max_retries = max_retries if max_retries > 0 else 3
        self.base_delay = base_delay
        self.max_delay = max_delay

    @classmethod
    def from_settings(cls, inner: Provider, settings: Settings) -> RetryProvider:
        return cls(
            inner,
            max_retries=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    @property
    def name(self) -> str:
        return self._inner.name

    @property
    def model(self) -> str:
        return self._inner.model

    @property
    def inner(self) -> Provider:
        return self._inner

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2**attempt), self.max_delay)

    async def _with_retry(self, op: str, call: Callable[[], Awaitable[T]]) -> T:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return await call()
            except Exception as e:
                if not is_retryable(e):
                    raise
                last_error = e
                if attempt == self.max_retries:
                    break
                delay = self.backoff(attempt)
                logger.warning(
                    "%s %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    self._inner.name,
                    op,
                    attempt + 1,
                    self.max_retries + 1,
                    delay,
                    e,
                )
                await asyncio.sleep(delay)

        status = last_error.status_code if isinstance(last_error, ProviderError) else None
        raise ProviderError(
            f"after {self.max_retries} retries: {last_error}",
            status_code=status,
        ) from last_error

    async def chat(
        self, messages: list[Message], tool_defs: list[dict[str, Any]]
    ) -> AsyncIterator[StreamChunk]:
        return await self._with_retry("chat", lambda: self._inner.chat(messages, tool_defs))

    async def models(self) -> list[str]:
        return await self._with_retry("models", self._inner.models)
