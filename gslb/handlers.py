#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Watch callbacks of a member cluster

The callbacks never raise: a broken event is logged and dropped, the watch
stream keeps delivering the next ones. Only with --debug exceptions propagate.
"""

from __future__ import annotations

import contextlib
from collections.abc import Callable, Iterator, Mapping
from logging import Logger
from typing import Any, Generic, TypeVar

from .classifier import ClassificationEngine
from .exceptions import MalformedEvent
from .keys import ObjectType
from .metadata import resource_version, to_ingress, to_namespace, to_route, to_service

T = TypeVar("T")


class ResourceEventHandler(Generic[T]):
    def __init__(
        self,
        object_type: ObjectType,
        cluster: str,
        convert: Callable[[object], T],
        add: Callable[[T, str], None],
        update: Callable[[T, T, str], None],
        delete: Callable[[T, str], None],
        logger: Logger,
        *,
        debug: bool = False,
    ) -> None:
        self.object_type = object_type
        self.cluster = cluster
        self._convert = convert
        self._add = add
        self._update = update
        self._delete = delete
        self._logger = logger
        self._debug = debug

    @contextlib.contextmanager
    def _contained(self, event: str) -> Iterator[None]:
        try:
            yield
        except MalformedEvent as e:
            self._logger.debug(
                "cluster: %s, msg: dropping %s event, %s", self.cluster, event, e
            )
            if self._debug:
                raise
        except Exception:
            self._logger.exception(
                "cluster: %s, msg: exception while handling %s %s event",
                self.cluster,
                self.object_type.value,
                event,
            )
            if self._debug:
                raise

    def on_add(self, obj: object) -> None:
        with self._contained("ADD"):
            self._add(self._convert(obj), self.cluster)

    def on_update(self, old: object, new: object) -> None:
        with self._contained("UPDATE"):
            old_obj = self._convert(old)
            new_obj = self._convert(new)
            # Periodic resyncs deliver the same version again.
            if (version := resource_version(new_obj)) and version == resource_version(old_obj):
                return
            self._update(old_obj, new_obj, self.cluster)

    def on_delete(self, obj: object) -> None:
        with self._contained("DELETE"):
            self._delete(self._convert(obj), self.cluster)


def create_event_handlers(
    engine: ClassificationEngine, cluster: str, logger: Logger, *, debug: bool = False
) -> Mapping[ObjectType, ResourceEventHandler[Any]]:
    logger.info("cluster: %s, msg: adding event handlers", cluster)
    return {
        ObjectType.NAMESPACE: ResourceEventHandler(
            ObjectType.NAMESPACE,
            cluster,
            to_namespace,
            engine.add_namespace,
            engine.update_namespace,
            engine.delete_namespace,
            logger,
            debug=debug,
        ),
        ObjectType.SERVICE: ResourceEventHandler(
            ObjectType.SERVICE,
            cluster,
            to_service,
            engine.add_service,
            engine.update_service,
            engine.delete_service,
            logger,
            debug=debug,
        ),
        ObjectType.INGRESS: ResourceEventHandler(
            ObjectType.INGRESS,
            cluster,
            to_ingress,
            engine.add_ingress,
            engine.update_ingress,
            engine.delete_ingress,
            logger,
            debug=debug,
        ),
        ObjectType.ROUTE: ResourceEventHandler(
            ObjectType.ROUTE,
            cluster,
            to_route,
            engine.add_route,
            engine.update_route,
            engine.delete_route,
            logger,
            debug=debug,
        ),
    }
