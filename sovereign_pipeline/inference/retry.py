"""
Bounded retry with per-attempt timeout and linear backoff.

One generic composition shared by every inference caller (decision prompt,
JSON repair pass, dataset generation):

    attempt i (0-indexed) waits backoff * i, then races the call against
    a timeout. A timeout counts as a failure. The first success wins.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetriesExhausted(Exception):
    """Raised when every attempt failed or timed out."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        super().__init__(f"all {attempts} attempts failed: {last_error!r}")
        self.attempts = attempts
        self.last_error = last_error


async def retry_with_timeout(
    call: Callable[[], Awaitable[T]],
    attempts: int = 3,
    timeout: float = 18.0,
    backoff: float = 0.45,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `call` up to `attempts` times.

    Args:
        call: Zero-argument coroutine factory; invoked afresh per attempt.
        attempts: Attempt budget (at least one attempt is always made).
        timeout: Seconds each attempt may take before it is abandoned.
        backoff: Base delay; attempt i sleeps backoff * i before calling.
        sleep: Injectable sleep, for tests.

    Returns:
        The first successful result.

    Raises:
        RetriesExhausted: If no attempt succeeded.
    """
    last_error: BaseException | None = None

    for attempt in range(max(1, attempts)):
        delay = backoff * attempt
        if delay > 0:
            await sleep(delay)
        try:
            return await asyncio.wait_for(call(), timeout)
        except asyncio.TimeoutError as e:
            last_error = e
            logger.warning("Attempt %d/%d timed out after %.1fs", attempt + 1, attempts, timeout)
        except Exception as e:
            last_error = e
            logger.warning("Attempt %d/%d failed: %s", attempt + 1, attempts, e)

    raise RetriesExhausted(max(1, attempts), last_error)
