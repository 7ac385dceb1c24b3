"""
Fetch Executor

Resolves a single resource over the network:
- At most one in-flight fetch per key; later callers attach to the same outcome
- Bounded attempts with jittered exponential backoff between them
- Per-attempt timeout from the budget
- Success hook runs once per network fetch, not once per caller
"""

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Dict, Optional, Union

import httpx

from .config import CacheBudget
from .errors import FetchTerminalError, FetchTransientError
from .models import FetchPriority, FetchResult

logger = logging.getLogger(__name__)

# Statuses worth retrying quickly; other error statuses still use up attempts
TRANSIENT_STATUSES = {408, 425, 429, 500, 502, 503, 504}

SuccessHook = Callable[[FetchResult], Union[None, Awaitable[None]]]


def _short(key: str) -> str:
    return key if len(key) <= 60 else f"{key[:57]}..."


class FetchExecutor:
    """
    Network fetcher with per-key de-duplication.

    Usage:
        executor = FetchExecutor(budget)
        result = await executor.fetch(url, FetchPriority.HIGH)
        if result.success:
            ...
    """

    def __init__(
        self,
        budget: Optional[CacheBudget] = None,
        client: Optional[httpx.AsyncClient] = None,
        url_for: Callable[[str], str] = lambda key: key,
        on_success: Optional[SuccessHook] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.budget = budget or CacheBudget()
        self.url_for = url_for
        self.on_success = on_success
        self._sleep = sleep

        self._owns_client = client is None
        self.http_client = client or httpx.AsyncClient(
            timeout=self.budget.fetch_timeout,
            follow_redirects=True,
            headers={
                "User-Agent": "Mozilla/5.0 (compatible; image-cache/1.0)",
                "Accept": "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8",
            },
        )

        # key -> shared task for the fetch currently in flight
        self._in_flight: Dict[str, asyncio.Task] = {}
        self.network_calls = 0

    async def close(self) -> None:
        """Cancel in-flight fetches; close the HTTP client if this executor created it."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_client:
            await self.http_client.aclose()

    def apply_budget(self, budget: CacheBudget) -> None:
        """Takes effect on the next fetch."""
        self.budget = budget

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def fetch(self, key: str, priority: FetchPriority = FetchPriority.HIGH) -> FetchResult:
        """
        Fetch ``key``, attaching to an in-flight fetch if there is one.

        Never raises for network failures; a terminal failure comes back as
        ``FetchResult.error``.
        """
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._run(key, priority))
            self._in_flight[key] = task
            task.add_done_callback(lambda _t, k=key: self._release(k, _t))
        else:
            logger.debug(f"[FetchExecutor] Attaching to in-flight fetch: {_short(key)}")
        # Shield so one cancelled waiter does not cancel the shared fetch
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _run(self, key: str, priority: FetchPriority) -> FetchResult:
        budget = self.budget
        attempts = budget.retry_attempts
        started = time.perf_counter()
        last_error: Optional[str] = None

        log = logger.info if priority == FetchPriority.HIGH else logger.debug
        log(f"[FetchExecutor] Fetching ({priority.value}): {_short(key)}")

        for attempt in range(1, attempts + 1):
            try:
                payload, content_type = await self._attempt(key, budget)
            except FetchTransientError as e:
                last_error = e.reason
                logger.warning(
                    f"[FetchExecutor] Attempt {attempt}/{attempts} failed for {_short(key)}: {e.reason}"
                )
                if attempt < attempts:
                    await self._sleep(self._backoff(attempt, budget))
                continue

            result = FetchResult(
                key=key,
                payload=payload,
                attempts=attempt,
                latency_ms=(time.perf_counter() - started) * 1000,
                content_type=content_type,
            )
            await self._notify_success(result)
            return result

        logger.error(f"[FetchExecutor] Giving up on {_short(key)} after {attempts} attempts")
        return FetchResult(
            key=key,
            error=FetchTerminalError(key, attempts, last_error),
            attempts=attempts,
            latency_ms=(time.perf_counter() - started) * 1000,
        )

    async def _attempt(self, key: str, budget: CacheBudget) -> tuple:
        """One network round trip. Any failure is raised as FetchTransientError."""
        url = self.url_for(key)
        self.network_calls += 1
        try:
            response = await self.http_client.get(url, timeout=budget.fetch_timeout)
            response.raise_for_status()
        except httpx.TimeoutException:
            raise FetchTransientError(key, "timeout")
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            kind = "retryable" if status in TRANSIENT_STATUSES else "error"
            raise FetchTransientError(key, f"HTTP {status} ({kind})")
        except httpx.HTTPError as e:
            raise FetchTransientError(key, f"{type(e).__name__}: {e}")

        payload = response.content
        if not payload:
            raise FetchTransientError(key, "empty response")
        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        return payload, content_type or None

    @staticmethod
    def _backoff(attempt: int, budget: CacheBudget) -> float:
        """Exponential delay plus up to one base delay of jitter."""
        base = budget.retry_delay
        if base <= 0:
            return 0.0
        delay = min(base * (2 ** (attempt - 1)), budget.max_retry_delay)
        return delay + random.uniform(0, base)

    async def _notify_success(self, result: FetchResult) -> None:
        if self.on_success is None:
            return
        try:
            outcome = self.on_success(result)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception as e:
            # A failing side effect never fails a successful fetch
            logger.error(f"[FetchExecutor] Success hook failed for {_short(result.key)}: {e}")
