"""
RateLimiter - Serializes outbound upstream calls.

States per request:
- QUEUED: Waiting in the FIFO queue
- RUNNING: Executing (at most one per limiter instance)
- RETRYING: Backing off after a throttling or transient failure
- SUCCEEDED / FAILED: Terminal

Transitions:
- QUEUED → RUNNING: When the worker dequeues it and min_interval has elapsed
- RUNNING → SUCCEEDED: On success
- RUNNING → RETRYING: On a retryable error while retries remain
- RETRYING → RUNNING: After the backoff delay
- RUNNING → FAILED: On a non-retryable error, or when retries are exhausted
"""

import asyncio
import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from server.services.errors import (
    RateLimitError,
    RequestTimeoutError,
    ServiceError,
    UpstreamError,
)
from server.services.metrics import EventType, MetricsCollector
from server.settings import Settings, global_settings

T = TypeVar("T")


class RequestState(str, Enum):
    """Queued request states."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    RETRYING = "RETRYING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass
class RateLimiterConfig:
    """Configuration for one limiter instance."""

    name: str = "bgg"
    min_interval: float = 0.5  # Seconds between end of one call and start of next
    base_delay: float = 0.5  # First retry backoff, doubled per retry
    max_delay: float = 8.0  # Backoff cap
    max_retries: int = 3  # Retries after the first attempt

    @classmethod
    def interactive(cls, settings: Settings = global_settings) -> "RateLimiterConfig":
        """Profile for the per-request dispatch path."""
        return cls(
            name="bgg-interactive",
            min_interval=settings.api_min_interval,
            base_delay=settings.api_retry_base_delay,
            max_delay=settings.api_retry_max_delay,
            max_retries=settings.api_max_retries,
        )

    @classmethod
    def bulk(cls, settings: Settings = global_settings) -> "RateLimiterConfig":
        """Profile for the bulk refresh job."""
        return cls(
            name="bgg-bulk",
            min_interval=settings.refresh_min_interval,
            base_delay=settings.refresh_retry_base_delay,
            max_delay=settings.refresh_retry_max_delay,
            max_retries=settings.refresh_max_retries,
        )


@dataclass
class QueuedRequest:
    """A pending unit of work and the future its caller awaits."""

    id: int
    execute: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    state: RequestState = RequestState.QUEUED
    attempts: int = 0
    enqueued_at: float = field(default_factory=time.monotonic)


def is_retryable(error: Exception) -> bool:
    """Throttling, timeouts, 5xx and network failures are retried; 4xx are not."""
    if isinstance(error, (RateLimitError, RequestTimeoutError)):
        return True
    if isinstance(error, UpstreamError):
        return not error.is_client_error
    return False


class RateLimiter:
    """
    FIFO request queue drained by a single worker task.

    Usage:
        limiter = RateLimiter(RateLimiterConfig.interactive())
        xml = await limiter.enqueue(lambda: client.fetch_xml("search", params))

    Once enqueued a request runs to completion or exhausts its retries;
    a caller that stops waiting does not remove it from the queue.
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        metrics: MetricsCollector | None = None,
        debug: bool = False,
    ):
        self.config = config or RateLimiterConfig()
        self._metrics = metrics
        self._debug = debug

        self._queue: deque[QueuedRequest] = deque()
        self._ids = itertools.count(1)
        self._worker: asyncio.Task | None = None

        # Guards the running slot and the last-finished timestamp
        self._lock = asyncio.Lock()
        self._running: QueuedRequest | None = None
        self._last_request_time: float | None = None

    async def enqueue(self, request_fn: Callable[[], Awaitable[T]]) -> T:
        """
        Queue a request and wait for its final result.

        Raises:
            The last error from request_fn once it is non-retryable or
            retries are exhausted (a 429 stays a RateLimitError).
        """
        loop = asyncio.get_running_loop()
        item = QueuedRequest(
            id=next(self._ids),
            execute=request_fn,
            future=loop.create_future(),
        )
        self._queue.append(item)
        self._log(f"QUEUED: #{item.id} (pending: {len(self._queue)})")

        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process_queue())

        return await item.future

    async def _process_queue(self) -> None:
        while self._queue:
            item = self._queue.popleft()
            async with self._lock:
                await self._wait_for_slot()
                self._running = item
                try:
                    await self._run(item)
                finally:
                    self._running = None

    async def _wait_for_slot(self) -> None:
        if self._last_request_time is None:
            return
        wait = self._last_request_time + self.config.min_interval - time.monotonic()
        if wait > 0:
            await asyncio.sleep(wait)

    async def _run(self, item: QueuedRequest) -> None:
        retries = 0

        while True:
            item.state = RequestState.RUNNING
            item.attempts += 1
            self._log(f"RUNNING: #{item.id} (attempt {item.attempts})")

            try:
                result = await item.execute()
            except Exception as e:
                self._last_request_time = time.monotonic()

                if retries < self.config.max_retries and is_retryable(e):
                    delay = self._backoff(retries, e)
                    retries += 1
                    item.state = RequestState.RETRYING
                    if self._metrics:
                        await self._metrics.log_event(
                            EventType.API_RETRY,
                            limiter=self.config.name,
                            attempt=item.attempts,
                            delay=delay,
                            error=str(e),
                        )
                    await asyncio.sleep(delay)
                    continue

                item.state = RequestState.FAILED
                logger.warning(
                    f"[{self.config.name}] Request #{item.id} failed after "
                    f"{item.attempts} attempt(s): {e}"
                )
                if not item.future.done():
                    item.future.set_exception(e)
                return

            self._last_request_time = time.monotonic()
            item.state = RequestState.SUCCEEDED
            self._log(f"SUCCEEDED: #{item.id}")
            if not item.future.done():
                item.future.set_result(result)
            return

    def _backoff(self, retry: int, error: Exception) -> float:
        delay = self.config.base_delay * (2**retry)
        if isinstance(error, RateLimitError) and error.retry_after:
            delay = max(delay, error.retry_after)
        return min(delay, self.config.max_delay)

    @property
    def pending(self) -> int:
        """Number of requests still QUEUED."""
        return len(self._queue)

    @property
    def running(self) -> QueuedRequest | None:
        return self._running

    async def close(self) -> None:
        """Stop the worker and fail anything still queued or running."""
        stranded = [self._running] if self._running else []
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

        stranded.extend(self._queue)
        self._queue.clear()
        for item in stranded:
            item.state = RequestState.FAILED
            if not item.future.done():
                item.future.set_exception(
                    ServiceError("Rate limiter closed", service_id=self.config.name)
                )

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self.config.name,
            "pending": self.pending,
            "running": self._running.id if self._running else None,
            "min_interval": self.config.min_interval,
            "max_retries": self.config.max_retries,
        }

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[RateLimiter:{self.config.name}] {message}")
