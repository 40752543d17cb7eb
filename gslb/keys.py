#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Change keys handed to the graph layer and their shard assignment"""

from __future__ import annotations

import enum
from typing import NamedTuple

_FNV32_OFFSET_BASIS = 0x811C9DC5
_FNV32_PRIME = 0x01000193


class Operation(enum.Enum):
    ADD = "ADD"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ObjectType(enum.Enum):
    SERVICE = "Service"
    INGRESS = "Ingress"
    ROUTE = "Route"
    NAMESPACE = "Namespace"


class ChangeKey(NamedTuple):
    operation: Operation
    object_type: ObjectType
    cluster: str
    namespace: str
    name: str
    # Only used for the shard assignment, not part of the key itself.
    hostname: str = ""

    def __str__(self) -> str:
        return multi_cluster_key(
            self.operation, self.object_type, self.cluster, self.namespace, self.name
        )


def multi_cluster_key(
    operation: Operation, object_type: ObjectType, cluster: str, namespace: str, name: str
) -> str:
    return f"{operation.value}/{object_type.value}/{cluster}/{namespace}/{name}"


def parse_multi_cluster_key(key: str) -> ChangeKey:
    """Inverse of multi_cluster_key

    Ingress host names contain a slash ("<ingress>/<host>"), so everything
    after the namespace is the object name.

    >>> parse_multi_cluster_key("ADD/Ingress/c1/ns1/ing1/a.example.com")
    ChangeKey(operation=<Operation.ADD: 'ADD'>, object_type=<ObjectType.INGRESS: 'Ingress'>, \
cluster='c1', namespace='ns1', name='ing1/a.example.com', hostname='')
    """
    operation, object_type, cluster, namespace, name = key.split("/", 4)
    return ChangeKey(Operation(operation), ObjectType(object_type), cluster, namespace, name)


def fnv1a_32(data: str) -> int:
    value = _FNV32_OFFSET_BASIS
    for byte in data.encode("utf-8"):
        value ^= byte
        value = (value * _FNV32_PRIME) & 0xFFFFFFFF
    return value


def bucket(hostname: str, num_workers: int) -> int:
    """Shard of a hostname, stable across processes (unlike hash())"""
    if num_workers <= 0:
        raise ValueError(f"invalid number of workers: {num_workers}")
    return fnv1a_32(hostname) % num_workers
