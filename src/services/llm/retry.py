"""Shared retry policy for completion and embedding calls."""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar
import asyncio
import structlog

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.config import llm_settings
from src.errors.exceptions import CapabilityError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    httpx.TransportError,
    httpx.HTTPStatusError,
    asyncio.TimeoutError,
    CapabilityError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first call
        base_ms: First backoff delay
        max_ms: Backoff ceiling
    """
    max_attempts: int = 3
    base_ms: int = 500
    max_ms: int = 8_000

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=llm_settings.retry_max_attempts,
            base_ms=llm_settings.retry_base_ms,
            max_ms=llm_settings.retry_max_ms,
        )

    async def run(
        self,
        operation: Callable[..., Awaitable[T]],
        *args: Any,
        call_kind: str = "capability",
        **kwargs: Any,
    ) -> T:
        """Run ``operation`` with retries; re-raises the last error when exhausted."""

        def _log_retry(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            logger.warning(
                "capability_call_retry",
                call_kind=call_kind,
                attempt=state.attempt_number,
                max_attempts=self.max_attempts,
                error=str(error) if error else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.base_ms / 1000.0,
                min=self.base_ms / 1000.0,
                max=self.max_ms / 1000.0,
            ),
            retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await operation(*args, **kwargs)
        raise CapabilityError(f"{call_kind} exhausted retries")  # pragma: no cover
