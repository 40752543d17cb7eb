#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

from logging import Logger

from .keys import ChangeKey
from .log import VERBOSE
from .workqueue import ShardedQueues


class KeyPublisher:
    """Hands change keys to the graph layer

    All keys of a hostname end up in the same queue and are therefore seen in
    the order they were published, whatever cluster they came from.
    """

    def __init__(self, queues: ShardedQueues[str], logger: Logger) -> None:
        self._queues = queues
        self._logger = logger

    def publish(self, key: ChangeKey) -> None:
        shard = self._queues.bucket(key.hostname)
        self._queues[shard].add_rate_limited(str(key))
        self._logger.log(
            VERBOSE,
            "cluster: %s, ns: %s, objType: %s, op: %s, objName: %s, msg: added %s key to queue %d",
            key.cluster,
            key.namespace,
            key.object_type.value,
            key.operation.value,
            key.name,
            key,
            shard,
        )
