#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""User-defined exceptions of the ingestion layer."""

__all__ = [
    "MKGSLBException",
    "MalformedEvent",
    "StoreInconsistency",
    "MKTerminate",
]


# never used directly in the code. Just some wrapper to make all of our
# exceptions handleable with one call
class MKGSLBException(Exception):
    pass


class MalformedEvent(MKGSLBException):
    """The watch source delivered an object that is not of the expected kind."""

    def __init__(self, expected: str, obj: object) -> None:
        super().__init__(f"expected {expected}, got {type(obj).__name__}")
        self.expected = expected
        self.obj = obj


# A key showing up in both the accepted and the rejected table is a programming
# error. It is never recovered from.
class StoreInconsistency(MKGSLBException):
    def __init__(self, object_type: str, cluster: str, namespace: str, name: str) -> None:
        super().__init__(
            f"{object_type} {cluster}/{namespace}/{name} is both accepted and rejected"
        )
        self.object_type = object_type
        self.cluster = cluster
        self.namespace = namespace
        self.name = name


# This exception is raised when the current program execution should be
# terminated, e.g. by the signal handlers of the main process.
class MKTerminate(MKGSLBException):
    def __init__(self, signum: int) -> None:
        super().__init__(f"Got signal {signum}")
        self.signum = signum
