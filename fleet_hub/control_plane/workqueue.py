"""
fleet_hub/control_plane/workqueue.py
─────────────────────────────────────
Rate-limited work queue and the worker pool that drains it.

Both the scheduler and the update-run controller are driven the same way:
something enqueues an object key, a bounded set of worker threads pulls
keys off the queue and reconciles them.

Queue guarantees
─────────────────
  • Dedup: adding a key that is already waiting is a no-op.
  • One in-flight reconcile per key: a key re-added while a worker holds it
    is parked ("dirty") and only handed out again after done().
  • Delayed adds: add_after() parks the key until its time comes; an earlier
    deadline for the same key wins.

Rate limiting
──────────────
add_rate_limited() asks the limiter how long to wait:

  ItemExponentialFailureRateLimiter  base × 2^failures, capped at max
  BucketRateLimiter                  token bucket (qps refill, burst size)
  MaxOfRateLimiter                   the larger of its children

forget() resets an item's failure count; the Controller calls it after
every successful reconcile, so a recovered key is processed without delay.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Hashable, List, Optional, Protocol, Set, Tuple

from fleet_hub.control_plane.config import RateLimitOptions

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_S: float = 0.005
DEFAULT_MAX_DELAY_S: float = 60.0
DEFAULT_QPS: int = 10
DEFAULT_BUCKET_SIZE: int = 100


# ── Rate limiters ─────────────────────────────────────────────────────────────

class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float:
        ...

    def forget(self, item: Hashable) -> None:
        ...

    def num_requeues(self, item: Hashable) -> int:
        ...


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: base_delay × 2^(failures so far), capped at max_delay."""

    def __init__(self, base_delay_s: float, max_delay_s: float) -> None:
        self._base = base_delay_s
        self._max = max_delay_s
        self._failures: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1
        if exp >= 62:
            return self._max
        return min(self._base * (2 ** exp), self._max)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """
    Overall throughput cap shared by all items.

    Each when() reserves one token. Tokens refill at qps up to burst; when
    the bucket is empty the caller is told how long until its token exists.
    """

    def __init__(self, qps: float, burst: int, clock: Callable[[], float] = time.monotonic) -> None:
        self._qps = float(qps)
        self._burst = float(burst)
        self._tokens = float(burst)
        self._clock = clock
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(self._burst, self._tokens + (now - self._last) * self._qps)
            self._last = now
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self._qps

    def forget(self, item: Hashable) -> None:
        pass

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    def __init__(self, *limiters: RateLimiter) -> None:
        self._limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self._limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self._limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self._limiters)


def default_controller_rate_limiter(opts: RateLimitOptions) -> MaxOfRateLimiter:
    """Build the max-of(exponential, bucket) limiter, substituting defaults for non-positive values."""
    base = opts.rate_limiter_base_delay_s if opts.rate_limiter_base_delay_s > 0 else DEFAULT_BASE_DELAY_S
    max_delay = opts.rate_limiter_max_delay_s if opts.rate_limiter_max_delay_s > 0 else DEFAULT_MAX_DELAY_S
    qps = opts.rate_limiter_qps if opts.rate_limiter_qps > 0 else DEFAULT_QPS
    bucket = opts.rate_limiter_bucket_size if opts.rate_limiter_bucket_size > 0 else DEFAULT_BUCKET_SIZE
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base, max_delay),
        BucketRateLimiter(qps, bucket),
    )


# ── Queue ─────────────────────────────────────────────────────────────────────

class RateLimitingQueue:
    """
    Thread-safe work queue of hashable keys. See the module docstring for
    the dedup and single-flight guarantees.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._rate_limiter = rate_limiter
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._waiting: List[Tuple[float, int, Hashable]] = []
        self._waiting_ready_at: Dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._shutting_down = False
        self._waker = threading.Thread(
            target=self._wait_loop, name=f"workqueue-{name}-waker", daemon=True,
        )
        self._waker.start()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, item: Hashable) -> None:
        with self._cond:
            self._add_locked(item)

    def _add_locked(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Tuple[Optional[Hashable], bool]:
        """
        Block until a key is available. Returns (key, shutdown).

        shutdown is True once the queue is shut down and drained. When
        timeout elapses with nothing to hand out the result is (None, False).
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - self._clock()
                if remaining is not None and remaining <= 0:
                    return None, False
                self._cond.wait(remaining)
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify_all()

    def add_after(self, item: Hashable, delay_s: float) -> None:
        if delay_s <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay_s
            current = self._waiting_ready_at.get(item)
            if current is not None and current <= ready_at:
                return
            self._waiting_ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            self._cond.notify_all()

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self._rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self._rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self._rate_limiter.num_requeues(item)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def _wait_loop(self) -> None:
        with self._cond:
            while not self._shutting_down:
                now = self._clock()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._waiting)
                    if self._waiting_ready_at.get(item) != ready_at:
                        continue  # superseded by an earlier deadline
                    del self._waiting_ready_at[item]
                    self._add_locked(item)
                timeout = self._waiting[0][0] - now if self._waiting else None
                self._cond.wait(timeout)


# ── Controller (worker pool) ──────────────────────────────────────────────────

@dataclass
class Result:
    """
    What a reconcile asks the queue to do next.

    requeue_after > 0 → come back after that many seconds (no backoff growth).
    requeue           → come back, rate limited.
    neither           → done; failure history is forgotten.
    """
    requeue: bool = False
    requeue_after: float = 0.0


Reconciler = Callable[[str], Optional[Result]]


class Controller:
    """
    Bounded worker pool draining a RateLimitingQueue.

    A reconcile that raises is logged and requeued with rate limiting; the
    exception never escapes the worker thread.
    """

    def __init__(self, name: str, reconcile: Reconciler, queue: RateLimitingQueue, workers: int) -> None:
        self.name = name
        self.queue = queue
        self._reconcile = reconcile
        self._workers = max(1, workers)
        self._threads: List[threading.Thread] = []

    def enqueue(self, key: str) -> None:
        self.queue.add(key)

    def start(self) -> None:
        for i in range(self._workers):
            thread = threading.Thread(
                target=self._run_worker, name=f"{self.name}-worker-{i}", daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("controller %s started with %d workers", self.name, self._workers)

    def stop(self, timeout: Optional[float] = None) -> None:
        self.queue.shut_down()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()
        logger.info("controller %s stopped", self.name)

    def _run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def process_next_work_item(self, timeout: Optional[float] = None) -> bool:
        """Handle one key. Returns False once the queue has shut down."""
        key, shutdown = self.queue.get(timeout)
        if shutdown:
            return False
        if key is None:
            return True
        try:
            self._handle(key)
        finally:
            self.queue.done(key)
        return True

    def _handle(self, key: str) -> None:
        try:
            result = self._reconcile(key) or Result()
        except Exception:
            logger.exception(
                "controller %s: reconcile of %s failed (requeue #%d)",
                self.name, key, self.queue.num_requeues(key) + 1,
            )
            self.queue.add_rate_limited(key)
            return

        if result.requeue_after > 0:
            self.queue.forget(key)
            self.queue.add_after(key, result.requeue_after)
        elif result.requeue:
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)
