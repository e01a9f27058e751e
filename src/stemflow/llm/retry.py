from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from stemflow.llm.errors import is_transient_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    delay_seconds: float = 0.0,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    label: str = "model call",
) -> T:
    """
    Await ``fn()`` up to ``max_attempts`` times.

    Only failures accepted by ``is_retryable`` are retried. The first non-retryable
    failure, or the last retryable one, propagates unchanged.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= max_attempts:
                raise
            logger.warning(
                "Retrying %s. attempt=%s/%s delay_seconds=%s error=%s",
                label,
                attempt,
                max_attempts,
                delay_seconds,
                exc,
            )
            if delay_seconds > 0:
                await asyncio.sleep(delay_seconds)
            attempt += 1
