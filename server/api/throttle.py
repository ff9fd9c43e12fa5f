"""Inbound per-client throttle for the public catalog endpoints."""

from collections import defaultdict
from time import monotonic
from typing import Callable


class InboundThrottle:
    """
    Sliding window limiter keyed by client (IP address).

    Defaults to 30 requests per minute. Runs on the event loop only, so no
    locking is needed.
    """

    MAX_TRACKED_CLIENTS = 10_000

    def __init__(
        self,
        max_requests: int = 30,
        window_seconds: int = 60,
        clock: Callable[[], float] = monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: dict[str, list[float]] = defaultdict(list)

    def check(self, client_id: str) -> tuple[bool, int | None]:
        """
        Record a request if allowed.

        Returns:
            (allowed, retry_after_seconds); retry_after is None when allowed
        """
        now = self._clock()
        if len(self._requests) > self.MAX_TRACKED_CLIENTS:
            self.cleanup()
        window_start = now - self.window_seconds

        recent = [ts for ts in self._requests[client_id] if ts > window_start]
        if len(recent) >= self.max_requests:
            self._requests[client_id] = recent
            retry_after = int(min(recent) + self.window_seconds - now) + 1
            return False, max(1, retry_after)

        recent.append(now)
        self._requests[client_id] = recent
        return True, None

    def remaining(self, client_id: str) -> int:
        window_start = self._clock() - self.window_seconds
        current = [ts for ts in self._requests.get(client_id, []) if ts > window_start]
        return max(0, self.max_requests - len(current))

    def cleanup(self) -> int:
        """Drop clients with no requests in the window; returns how many."""
        window_start = self._clock() - self.window_seconds
        stale = [
            client_id
            for client_id, timestamps in self._requests.items()
            if not any(ts > window_start for ts in timestamps)
        ]
        for client_id in stale:
            del self._requests[client_id]
        return len(stale)
