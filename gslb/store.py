#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""In-memory membership index of the classified objects"""

from __future__ import annotations

import enum
import threading
from collections.abc import Iterator
from logging import Logger
from types import TracebackType
from typing import Generic, Literal, TypeVar

from .exceptions import StoreInconsistency
from .keys import ObjectType
from .metadata import ObjectMetadata

M = TypeVar("M", bound=ObjectMetadata)


class ECLock:
    def __init__(self, logger: Logger) -> None:
        self._logger = logger
        self._lock = threading.Lock()

    def __enter__(self) -> None:
        self._logger.debug("[%s] Trying to acquire lock", threading.current_thread().name)
        self._lock.acquire()
        self._logger.debug("[%s] Acquired lock", threading.current_thread().name)

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        self._logger.debug("[%s] Releasing lock", threading.current_thread().name)
        self._lock.release()
        return False  # Do not swallow exceptions


class Membership(enum.Enum):
    UNSEEN = "unseen"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ClusterStore(Generic[M]):
    """cluster -> namespace -> name -> metadata

    Not thread safe, see MembershipStore.
    """

    def __init__(self) -> None:
        self._clusters: dict[str, dict[str, dict[str, M]]] = {}

    def __len__(self) -> int:
        return sum(len(objs) for nss in self._clusters.values() for objs in nss.values())

    def __contains__(self, key: tuple[str, str, str]) -> bool:
        return self.get(*key) is not None

    def get(self, cluster: str, namespace: str, name: str) -> M | None:
        return self._clusters.get(cluster, {}).get(namespace, {}).get(name)

    def add_or_update(self, meta: M) -> None:
        self._clusters.setdefault(meta.cluster, {}).setdefault(meta.namespace, {})[meta.key] = meta

    def delete(self, cluster: str, namespace: str, name: str) -> M | None:
        """Returns the removed entry, if there was one"""
        namespaces = self._clusters.get(cluster)
        if namespaces is None or (objs := namespaces.get(namespace)) is None:
            return None
        meta = objs.pop(name, None)
        if not objs:
            del namespaces[namespace]
        if not namespaces:
            del self._clusters[cluster]
        return meta

    def clusters(self) -> list[str]:
        return list(self._clusters)

    def objects(self, cluster: str) -> list[M]:
        return [meta for objs in self._clusters.get(cluster, {}).values() for meta in objs.values()]

    def keys(self) -> Iterator[tuple[str, str, str]]:
        for cluster, namespaces in self._clusters.items():
            for namespace, objs in namespaces.items():
                for name in objs:
                    yield cluster, namespace, name


class MembershipStore(Generic[M]):
    """The accepted and the rejected table of one object kind

    A key is in at most one of the two tables. The transitions accept, reject
    and forget as well as verify_key and the underscore methods expect the
    caller to hold the lock, the other methods acquire it.
    """

    def __init__(self, object_type: ObjectType, logger: Logger) -> None:
        self.object_type = object_type
        self.lock = ECLock(logger)
        self.accepted: ClusterStore[M] = ClusterStore()
        self.rejected: ClusterStore[M] = ClusterStore()

    def _membership(self, cluster: str, namespace: str, name: str) -> Membership:
        if self.accepted.get(cluster, namespace, name) is not None:
            return Membership.ACCEPTED
        if self.rejected.get(cluster, namespace, name) is not None:
            return Membership.REJECTED
        return Membership.UNSEEN

    def accept(self, meta: M) -> M | None:
        """Returns the previously accepted entry

        Caller must hold the lock.
        """
        self.rejected.delete(meta.cluster, meta.namespace, meta.key)
        previous = self.accepted.get(meta.cluster, meta.namespace, meta.key)
        self.accepted.add_or_update(meta)
        return previous

    def reject(self, meta: M) -> M | None:
        """Returns the previously accepted entry

        Caller must hold the lock.
        """
        previous = self.accepted.delete(meta.cluster, meta.namespace, meta.key)
        self.rejected.add_or_update(meta)
        return previous

    def forget(self, cluster: str, namespace: str, name: str) -> M | None:
        """Returns the previously accepted entry

        Caller must hold the lock.
        """
        self.rejected.delete(cluster, namespace, name)
        return self.accepted.delete(cluster, namespace, name)

    def verify_key(self, cluster: str, namespace: str, name: str) -> None:
        """Caller must hold the lock"""
        if (cluster, namespace, name) in self.accepted and (
            cluster,
            namespace,
            name,
        ) in self.rejected:
            raise StoreInconsistency(self.object_type.value, cluster, namespace, name)

    def _verify(self) -> None:
        for key in self.accepted.keys():
            self.verify_key(*key)

    def verify(self) -> None:
        with self.lock:
            self._verify()

    def status(self, cluster: str, namespace: str, name: str) -> Membership:
        with self.lock:
            return self._membership(cluster, namespace, name)

    def get_accepted(self, cluster: str, namespace: str, name: str) -> M | None:
        with self.lock:
            return self.accepted.get(cluster, namespace, name)

    def get_rejected(self, cluster: str, namespace: str, name: str) -> M | None:
        with self.lock:
            return self.rejected.get(cluster, namespace, name)

    def accepted_objects(self, cluster: str) -> list[M]:
        with self.lock:
            return self.accepted.objects(cluster)

    def rejected_objects(self, cluster: str) -> list[M]:
        with self.lock:
            return self.rejected.objects(cluster)
