"""
Bounded retry with exponential backoff for remote provider calls.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from ..errors import ProviderError


logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retries(
    factory: Callable[[], Awaitable[T]],
    *,
    what: str,
    timeout: float,
    attempts: int,
    base_delay: float,
    error_cls: type[ProviderError] = ProviderError,
) -> T:
    """Await ``factory()`` with a per-attempt timeout, retrying on failure.

    The delay before attempt ``n + 1`` is ``base_delay * 2 ** (n - 1)``.
    Cancellation is never retried. After the last failed attempt the most
    recent exception is chained onto ``error_cls``.
    """
    attempts = max(1, attempts)
    last_exc: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(factory(), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as exc:
            last_exc = exc
            logger.warning(
                "%s timed out after %.1fs (attempt %d/%d)",
                what,
                timeout,
                attempt,
                attempts,
            )
        except error_cls:
            raise
        except Exception as exc:
            last_exc = exc
            logger.warning(
                "%s failed (attempt %d/%d): %s", what, attempt, attempts, exc
            )
        if attempt < attempts:
            await asyncio.sleep(base_delay * 2 ** (attempt - 1))

    raise error_cls(f"{what} failed after {attempts} attempts: {last_exc}") from last_exc
