"""
Backoff/retry wrapper for quota-limited platform APIs.

State is kept per (user, endpoint) so a backoff only blocks the flow that
hit the limit; other endpoints and other users keep going.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import httpx

from app.features.contact_sync.domain import RateLimitExhausted
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

TOO_MANY_REQUESTS = 429


@dataclass(slots=True)
class _BackoffState:
    next_allowed: float = 0.0
    retry_count: int = 0


class RateLimitedClient:
    """
    Call ``request_factory`` until it returns something other than 429.

    Each 429 waits Retry-After * 2**retry_count before the next attempt.
    After ``max_retries`` retries the call raises RateLimitExhausted. Any
    non-429 response clears the stored state for that key.
    """

    def __init__(
        self,
        max_retries: int = 3,
        default_retry_after: float = 60.0,
        *,
        platform: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_retries = max_retries
        self.default_retry_after = default_retry_after
        self.platform = platform
        self._sleep = sleep
        self._clock = clock
        self._states: dict[tuple[str, str], _BackoffState] = {}

    def retry_count(self, user_id: str, endpoint: str) -> int:
        state = self._states.get((user_id, endpoint))
        return state.retry_count if state else 0

    async def call(
        self,
        user_id: str,
        endpoint: str,
        request_factory: Callable[[], Awaitable[httpx.Response]],
    ) -> httpx.Response:
        key = (user_id, endpoint)

        while True:
            state = self._states.get(key)
            if state is not None:
                wait = state.next_allowed - self._clock()
                if wait > 0:
                    await self._sleep(wait)

            response = await request_factory()
            if response.status_code != TOO_MANY_REQUESTS:
                self._states.pop(key, None)
                return response

            state = self._states.setdefault(key, _BackoffState())
            if state.retry_count >= self.max_retries:
                self._states.pop(key, None)
                logger.error(
                    "Rate limit retries exhausted",
                    user_id=user_id,
                    endpoint=endpoint,
                    retries=self.max_retries,
                )
                raise RateLimitExhausted(
                    f"{endpoint} still rate limited after {self.max_retries} retries",
                    endpoint=endpoint,
                    retries=self.max_retries,
                    platform=self.platform,
                )

            wait = self._retry_after(response) * (2**state.retry_count)
            state.retry_count += 1
            state.next_allowed = self._clock() + wait
            logger.warning(
                "Rate limited, backing off",
                user_id=user_id,
                endpoint=endpoint,
                retry_count=state.retry_count,
                wait_seconds=wait,
            )

    def _retry_after(self, response: httpx.Response) -> float:
        raw = response.headers.get("Retry-After")
        if not raw:
            return self.default_retry_after
        try:
            return max(0.0, float(raw))
        except ValueError:
            pass
        try:
            retry_at = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            return self.default_retry_after
        return max(0.0, (retry_at - datetime.now(UTC)).total_seconds())
