"""Shared retry policy for outbound inference calls."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx
import openai

_logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


def is_retryable(exc: BaseException) -> bool:
    """True for timeouts, connection failures and transient server errors."""
    if isinstance(exc, TimeoutError | httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS
    if isinstance(
        exc,
        openai.APIConnectionError | openai.RateLimitError | openai.InternalServerError,
    ):
        return True
    return False


def status_code_from_exception(exc: BaseException) -> str:
    """Extract an HTTP status code from an exception, if available."""
    response = getattr(exc, "response", None)
    status_code = getattr(response, "status_code", None)
    if isinstance(status_code, int):
        return str(status_code)
    return "n/a"


@dataclass
class RetryPolicy:
    """Per-attempt timeout plus bounded exponential backoff."""

    max_attempts: int = 2
    timeout_seconds: float = 9.0
    base_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 5.0
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given 1-based attempt."""
        delay = self.base_delay_seconds * self.backoff_multiplier ** (attempt - 1)
        return min(delay, self.max_delay_seconds)

    async def run(
        self,
        func: Callable[[], Awaitable[dict[str, object]]],
        *,
        action: str,
    ) -> dict[str, object]:
        """Call ``func`` until it succeeds or the attempt budget is spent.

        Non-retryable errors propagate immediately; the last retryable error
        propagates once attempts run out.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(func(), timeout=self.timeout_seconds)
            except Exception as exc:
                if not is_retryable(exc):
                    raise
                _logger.warning(
                    "Inference %s failed (attempt %s/%s, status=%s): %r",
                    action,
                    attempt,
                    self.max_attempts,
                    status_code_from_exception(exc),
                    exc,
                )
                if attempt >= self.max_attempts:
                    raise
                await self.sleep(self.delay_for(attempt))
