#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Rate limited work queues between the ingestion and the graph layer

Enqueuing never blocks. Published items are paced by a token bucket shared by
all items of a queue. The ready time of an item is never earlier than the one
of the item queued before it, so items leave a queue in the order they entered
it. Items the consumer failed to process are requeued with an exponential
per-item backoff. They wait aside until their backoff expired and are then
appended, so a failing item never holds up the items behind it.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable, Iterator
from typing import Final, Generic, NamedTuple, TypeVar

from .keys import bucket

T = TypeVar("T", bound=Hashable)


class QueueSettings(NamedTuple):
    base_delay: float = 0.005
    max_delay: float = 1000.0
    qps: float = 10.0
    burst: int = 100


class RateLimitingQueue(Generic[T]):
    def __init__(
        self,
        settings: QueueSettings = QueueSettings(),
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name: Final = name
        self._settings = settings
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[tuple[float, T]] = deque()
        # requeued items waiting for their backoff: (ready, sequence, item)
        self._waiting: list[tuple[float, int, T]] = []
        self._sequence = itertools.count()
        self._pending: set[T] = set()
        self._processing: set[T] = set()
        self._failures: dict[T, int] = {}
        self._last_ready = 0.0
        self._tokens = float(settings.burst)
        self._last_refill = clock()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue) + len(self._waiting)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _item_delay(self, item: T) -> float:
        failures = self._failures.get(item, 0)
        self._failures[item] = failures + 1
        return min(self._settings.base_delay * 2**failures, self._settings.max_delay)

    def _bucket_delay(self, now: float) -> float:
        if self._settings.qps <= 0:
            return 0.0
        self._tokens = min(
            float(self._settings.burst),
            self._tokens + (now - self._last_refill) * self._settings.qps,
        )
        self._last_refill = now
        # Reserve a token even if the bucket is empty, the item then waits
        # until the token would have been refilled.
        self._tokens -= 1
        return 0.0 if self._tokens >= 0 else -self._tokens / self._settings.qps

    def _enqueue(self, item: T, ready: float) -> None:
        if item in self._pending:
            return
        ready = max(ready, self._last_ready)
        self._last_ready = ready
        self._queue.append((ready, item))
        self._pending.add(item)
        self._cond.notify_all()

    def _promote_waiting(self, now: float) -> None:
        while self._waiting and self._waiting[0][0] <= now:
            ready, _sequence, item = heapq.heappop(self._waiting)
            self._enqueue(item, ready)

    def _head_ready(self, now: float) -> bool:
        ready, item = self._queue[0]
        return ready <= now and item not in self._processing

    def add(self, item: T) -> None:
        with self._cond:
            if not self._shutting_down:
                self._enqueue(item, self._clock())

    def add_rate_limited(self, item: T) -> None:
        """Queues a new item, paced only by the token bucket"""
        with self._cond:
            if not self._shutting_down:
                now = self._clock()
                self._enqueue(item, now + self._bucket_delay(now))

    def requeue(self, item: T) -> None:
        """Queues a failed item again after its per-item backoff"""
        with self._cond:
            if self._shutting_down:
                return
            now = self._clock()
            delay = max(self._item_delay(item), self._bucket_delay(now))
            heapq.heappush(self._waiting, (now + delay, next(self._sequence), item))
            self._cond.notify_all()

    def forget(self, item: T) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item: T) -> int:
        with self._cond:
            return self._failures.get(item, 0)

    def get(self, timeout: float | None = None) -> T | None:
        """Blocks until the oldest item is ready

        An item is not handed out again before done() was called for it.
        Returns None on timeout or once the queue is shut down.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while not self._shutting_down:
                now = self._clock()
                self._promote_waiting(now)
                if self._queue and self._head_ready(now):
                    _ready, item = self._queue.popleft()
                    self._pending.discard(item)
                    self._processing.add(item)
                    return item
                if deadline is not None and now >= deadline:
                    return None
                waits = [] if deadline is None else [deadline - now]
                # An item still being processed is waited for, done() notifies.
                if self._queue and self._queue[0][1] not in self._processing:
                    waits.append(self._queue[0][0] - now)
                if self._waiting:
                    waits.append(self._waiting[0][0] - now)
                self._cond.wait(min(waits) if waits else None)
            return None

    def done(self, item: T) -> None:
        with self._cond:
            self._processing.discard(item)
            self._cond.notify_all()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()


class ShardedQueues(Generic[T]):
    """N queues, an item always goes to the queue of its hostname"""

    def __init__(self, num_workers: int, settings: QueueSettings = QueueSettings()) -> None:
        if num_workers <= 0:
            raise ValueError(f"invalid number of workers: {num_workers}")
        self._queues: list[RateLimitingQueue[T]] = [
            RateLimitingQueue(settings, name=f"workqueue-{i}") for i in range(num_workers)
        ]

    def __len__(self) -> int:
        return len(self._queues)

    def __getitem__(self, idx: int) -> RateLimitingQueue[T]:
        return self._queues[idx]

    def __iter__(self) -> Iterator[RateLimitingQueue[T]]:
        return iter(self._queues)

    def bucket(self, hostname: str) -> int:
        return bucket(hostname, len(self._queues))

    def shut_down(self) -> None:
        for queue in self._queues:
            queue.shut_down()
