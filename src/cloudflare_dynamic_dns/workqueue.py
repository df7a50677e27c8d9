"""Rate-limited, deduplicating work queue for reconcile keys.

A key is never handed to two workers at once: ``add`` on a key that is being
processed only marks it dirty, and ``done`` puts it back on the queue so the
newer event is reconciled after the current pass finishes.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Deque, Dict, Hashable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


# =============================================================================
# Rate Limiters
# =============================================================================


class RateLimiter(ABC):
    """Decides how long an item waits before it is re-added."""

    @abstractmethod
    def when(self, item: Hashable) -> float:
        """Return the delay in seconds for ``item`` and record the attempt."""
        pass

    @abstractmethod
    def forget(self, item: Hashable) -> None:
        """Clear the retry history of ``item``."""
        pass

    @abstractmethod
    def num_requeues(self, item: Hashable) -> int:
        """Return how many times ``item`` has been rate limited since it was last forgotten."""
        pass


class ItemExponentialFailureRateLimiter(RateLimiter):
    """Per-item exponential backoff: ``base_delay * 2 ** failures``, capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._lock = threading.Lock()
        self._failures: Dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1

        # 2**63 * base_delay is already far beyond any sane max_delay.
        if exp > 62:
            return self.max_delay
        return min(self.base_delay * (2**exp), self.max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter(RateLimiter):
    """Overall token bucket shared by every item (``qps`` refill, ``burst`` capacity)."""

    def __init__(self, qps: float = 10.0, burst: int = 100, clock: Clock = time.monotonic):
        if qps <= 0:
            raise ValueError("qps must be positive")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last = clock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            # Reserve a token even when the bucket is empty; the delay pays it back.
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        pass

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter(RateLimiter):
    """Combines limiters by taking the longest delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter):
        if not limiters:
            raise ValueError("MaxOfRateLimiter needs at least one limiter")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter() -> RateLimiter:
    """5ms..1000s per-item exponential backoff combined with a 10 qps / 100 burst bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000.0),
        BucketRateLimiter(qps=10.0, burst=100),
    )


# =============================================================================
# Queue
# =============================================================================


class RateLimitingQueue:
    def __init__(self, rate_limiter: Optional[RateLimiter] = None, clock: Clock = time.monotonic):
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock

        self._cond = threading.Condition()
        self._queue: Deque[Any] = deque()
        self._dirty: Set[Any] = set()
        self._processing: Set[Any] = set()
        self._shutting_down = False

        # Delayed adds: heap of (ready_at, seq, item); _ready_at keeps the earliest per item.
        self._delay_cond = threading.Condition()
        self._waiting: List[Tuple[float, int, Any]] = []
        self._ready_at: Dict[Any, float] = {}
        self._seq = itertools.count()
        self._delay_thread: Optional[threading.Thread] = None

    # -------------------------------------------------------------------------
    # Basic queue
    # -------------------------------------------------------------------------

    def add(self, item: Any) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                # Re-queued by done() once the current pass finishes.
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self) -> Tuple[Any, bool]:
        """Block until an item is available. Returns ``(item, shutdown)``.

        After shutdown the remaining queued items are still handed out; only an
        empty, shut down queue returns ``(None, True)``.
        """
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Any) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._delay_cond:
            self._waiting.clear()
            self._ready_at.clear()
            self._delay_cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def is_processing(self, item: Any) -> bool:
        with self._cond:
            return item in self._processing

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    # -------------------------------------------------------------------------
    # Delayed and rate limited adds
    # -------------------------------------------------------------------------

    def add_after(self, item: Any, delay: float) -> None:
        if self.shutting_down():
            return
        if delay <= 0:
            self.add(item)
            return

        ready_at = self._clock() + delay
        with self._delay_cond:
            current = self._ready_at.get(item)
            if current is not None and current <= ready_at:
                return
            self._ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            self._ensure_delay_thread()
            self._delay_cond.notify()

    def add_rate_limited(self, item: Any) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Any) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Any) -> int:
        return self.rate_limiter.num_requeues(item)

    def _ensure_delay_thread(self) -> None:
        if self._delay_thread is None or not self._delay_thread.is_alive():
            self._delay_thread = threading.Thread(
                target=self._waiting_loop, name="workqueue-delay", daemon=True
            )
            self._delay_thread.start()

    def _waiting_loop(self) -> None:
        while True:
            ready: List[Any] = []
            with self._delay_cond:
                while True:
                    if self.shutting_down():
                        return
                    now = self._clock()
                    while self._waiting and self._waiting[0][0] <= now:
                        ready_at, _, item = heapq.heappop(self._waiting)
                        # Skip stale entries superseded by an earlier ready time.
                        if self._ready_at.get(item) == ready_at:
                            del self._ready_at[item]
                            ready.append(item)
                    if ready:
                        break
                    timeout = self._waiting[0][0] - now if self._waiting else None
                    self._delay_cond.wait(timeout)

            for item in ready:
                logger.debug(f"Delay elapsed, re-queueing {item}")
                self.add(item)
