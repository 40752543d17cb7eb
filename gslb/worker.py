#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

from __future__ import annotations

import threading
from collections.abc import Callable
from logging import Logger

from .keys import ChangeKey, parse_multi_cluster_key
from .log import VERBOSE
from .workqueue import RateLimitingQueue

SyncFunction = Callable[[ChangeKey], None]

MAX_RETRIES = 5


class QueueWorker(threading.Thread):
    """Feeds the keys of one shard to the graph layer, one at a time"""

    def __init__(
        self,
        name: str,
        logger: Logger,
        queue: RateLimitingQueue[str],
        sync: SyncFunction,
        *,
        max_retries: int = MAX_RETRIES,
        poll_interval: float = 1.0,
    ) -> None:
        super().__init__(name=name, daemon=True)
        self._logger = logger
        self._queue = queue
        self._sync = sync
        self._max_retries = max_retries
        self._poll_interval = poll_interval
        self._terminate_event = threading.Event()

    def run(self) -> None:
        self._logger.info("Starting up")
        while not self._terminate_event.is_set() and not self._queue.shutting_down:
            item = self._queue.get(timeout=self._poll_interval)
            if item is None:
                continue
            try:
                self.process(item)
            finally:
                self._queue.done(item)
        self._logger.info("Terminated")

    def process(self, item: str) -> None:
        try:
            self._sync(parse_multi_cluster_key(item))
        except Exception:
            if self._queue.num_requeues(item) < self._max_retries:
                self._logger.exception("Error syncing key %s, retrying", item)
                self._queue.requeue(item)
                return
            self._logger.exception("Error syncing key %s, dropping it", item)
        self._queue.forget(item)

    def terminate(self) -> None:
        self._terminate_event.set()


def log_sync(logger: Logger) -> SyncFunction:
    """Stand-in for the graph layer, only logs the keys"""

    def sync(key: ChangeKey) -> None:
        logger.log(VERBOSE, "graph layer got key %s", key)

    return sync
