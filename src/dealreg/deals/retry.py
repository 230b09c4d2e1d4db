"""Bounded retry with exponential backoff for transient store failures.

Only RepositoryUnavailable is retried. ValidationError and IntegrityViolation
propagate on the first attempt.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.dealreg.config import Settings
from src.dealreg.deals.errors import RepositoryUnavailable

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "repository_retry",
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
    )


class RetryPolicy(BaseModel):
    """How many times and how patiently to retry RepositoryUnavailable."""

    attempts: int = Field(default=3, ge=1)
    wait_seconds: float = Field(default=0.2, ge=0)
    max_wait_seconds: float = Field(default=2.0, ge=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            attempts=settings.DB_RETRY_ATTEMPTS,
            wait_seconds=settings.DB_RETRY_WAIT_SECONDS,
        )

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.wait_seconds, max=self.max_wait_seconds),
            retry=retry_if_exception_type(RepositoryUnavailable),
            before_sleep=_log_retry,
            reraise=True,
        )


async def call_with_retry(
    policy: RetryPolicy,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)``, retrying RepositoryUnavailable per policy."""
    return await policy.retrying()(fn, *args, **kwargs)
