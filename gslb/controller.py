#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""List-then-watch loops of the member clusters

One thread per cluster and object kind. Each thread keeps the last seen version
of every object, so a MODIFIED event can be handed to the callbacks together
with the previous version.
"""

from __future__ import annotations

import functools
import threading
from collections.abc import Callable, Iterable, Sequence
from logging import ERROR, Logger
from typing import Any

from kubernetes import client, watch  # type: ignore[import]
from kubernetes.client.rest import ApiException  # type: ignore[import]
from tenacity import (
    before_sleep_log,
    retry_if_exception,
    Retrying,
    stop_when_event_set,
    wait_random_exponential,
)

from .classifier import ClassificationEngine
from .exceptions import MalformedEvent
from .handlers import create_event_handlers, ResourceEventHandler
from .keys import ObjectType
from .metadata import to_route

ROUTE_GROUP = "route.openshift.io"
ROUTE_VERSION = "v1"
ROUTE_PLURAL = "routes"

_MAX_BACKOFF = 30.0
_ACCESS_DENIED = frozenset({401, 403})


class ResourceExpired(Exception):
    """The watch fell behind the compaction of the API server (410 Gone)"""


def _object_key(obj: Any) -> tuple[str, str]:
    if isinstance(obj, dict):
        metadata = obj.get("metadata", {})
        return metadata.get("namespace") or "", metadata.get("name") or ""
    return obj.metadata.namespace or "", obj.metadata.name


def _list_resource_version(listing: Any) -> str | None:
    if isinstance(listing, dict):
        return listing.get("metadata", {}).get("resourceVersion")
    return listing.metadata.resource_version


def _list_items(listing: Any) -> list[Any]:
    if isinstance(listing, dict):
        return list(listing.get("items", []))
    return list(listing.items or [])


def _event_resource_version(obj: Any) -> str | None:
    if isinstance(obj, dict):
        return obj.get("metadata", {}).get("resourceVersion")
    return obj.metadata.resource_version


class WatchThread(threading.Thread):
    def __init__(
        self,
        name: str,
        logger: Logger,
        handler: ResourceEventHandler[Any],
        list_fn: Callable[..., Any],
        resync: Callable[[Sequence[Any]], None],
        *,
        watch_timeout: int,
        backoff: float = 1.0,
        debug: bool = False,
    ) -> None:
        super().__init__(name=name, daemon=True)
        self._logger = logger
        self._handler = handler
        self._list_fn = list_fn
        self._resync = resync
        self._watch_timeout = watch_timeout
        self._backoff = backoff
        self._debug = debug
        self._terminate_event = threading.Event()
        self._cache: dict[tuple[str, str], Any] = {}
        self._active_watch: watch.Watch | None = None
        self._watch_lock = threading.Lock()
        self.synced = threading.Event()

    def run(self) -> None:
        self._logger.info("Starting up")
        try:
            self._retrying()(self._list_and_watch)
        except ApiException as e:
            self._logger.error(
                "Kubernetes API access denied (status=%s), check the RBAC permissions",
                e.status,
            )
        self._logger.info("Terminated")

    def _retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, ApiException):
            return exc.status not in _ACCESS_DENIED
        return not self._debug

    def _retrying(self) -> Retrying:
        # The backoff ends early once the thread is terminated.
        return Retrying(
            retry=retry_if_exception(self._retryable),
            wait=wait_random_exponential(multiplier=self._backoff, max=_MAX_BACKOFF),
            stop=stop_when_event_set(self._terminate_event),
            sleep=self._terminate_event.wait,
            before_sleep=before_sleep_log(self._logger, ERROR, exc_info=True),
            retry_error_callback=lambda retry_state: None,
        )

    def _list_and_watch(self) -> None:
        while not self._terminate_event.is_set():
            try:
                self._watch(self._list())
            except ResourceExpired:
                self._logger.warning("Watch resource version expired, re-listing")

    def terminate(self) -> None:
        self._terminate_event.set()
        with self._watch_lock:
            if self._active_watch is not None:
                self._active_watch.stop()

    def _list(self) -> str | None:
        listing = self._list_fn()
        items = _list_items(listing)
        self._cache = {_object_key(obj): obj for obj in items}
        self._resync(items)
        self.synced.set()
        self._logger.info("Synced %d objects", len(items))
        return _list_resource_version(listing)

    def _watch(self, resource_version: str | None) -> None:
        while not self._terminate_event.is_set():
            watcher = watch.Watch()
            with self._watch_lock:
                self._active_watch = watcher
            try:
                for event in watcher.stream(
                    self._list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self._watch_timeout,
                ):
                    if self._terminate_event.is_set():
                        return
                    resource_version = self.dispatch(event) or resource_version
            except ApiException as e:
                if e.status == 410:
                    raise ResourceExpired() from e
                raise
            finally:
                with self._watch_lock:
                    self._active_watch = None

    def dispatch(self, event: dict[str, Any]) -> str | None:
        """Hands a single watch event to the callbacks

        Returns the resource version to resume watching from.
        """
        event_type = event.get("type")
        obj = event.get("object")
        if event_type == "ERROR":
            code = obj.get("code") if isinstance(obj, dict) else getattr(obj, "code", None)
            if code == 410:
                raise ResourceExpired()
            self._logger.warning("Watch error: %s", obj)
            return None
        if obj is None:
            return None
        if event_type == "BOOKMARK":
            return _event_resource_version(obj)

        key = _object_key(obj)
        if event_type in ("ADDED", "MODIFIED"):
            old = self._cache.get(key)
            self._cache[key] = obj
            if old is None:
                self._handler.on_add(obj)
            else:
                self._handler.on_update(old, obj)
        elif event_type == "DELETED":
            self._cache.pop(key, None)
            self._handler.on_delete(obj)
        else:
            self._logger.debug("Ignoring watch event of type %s", event_type)
        return _event_resource_version(obj)


class MemberController:
    """Watches the traffic relevant objects of one member cluster"""

    def __init__(
        self,
        cluster: str,
        api_client: client.ApiClient,
        engine: ClassificationEngine,
        logger: Logger,
        *,
        watch_routes: bool = False,
        watch_timeout: int = 300,
        debug: bool = False,
    ) -> None:
        self.name = cluster
        self._engine = engine
        self._logger = logger
        handlers = create_event_handlers(
            engine, cluster, logger.getChild("handlers"), debug=debug
        )
        core = client.CoreV1Api(api_client)
        networking = client.NetworkingV1Api(api_client)

        watches: list[tuple[ObjectType, Callable[..., Any], Callable[[Sequence[Any]], None]]] = [
            (
                ObjectType.NAMESPACE,
                core.list_namespace,
                lambda items: engine.resync_namespaces(items, cluster),
            ),
            (
                ObjectType.SERVICE,
                core.list_service_for_all_namespaces,
                lambda items: engine.resync_services(items, cluster),
            ),
            (
                ObjectType.INGRESS,
                networking.list_ingress_for_all_namespaces,
                lambda items: engine.resync_ingresses(items, cluster),
            ),
        ]
        if watch_routes:
            custom = client.CustomObjectsApi(api_client)
            watches.append(
                (
                    ObjectType.ROUTE,
                    functools.partial(
                        custom.list_cluster_custom_object, ROUTE_GROUP, ROUTE_VERSION, ROUTE_PLURAL
                    ),
                    lambda items: engine.resync_routes(self._routes(items), cluster),
                )
            )

        self.threads = [
            WatchThread(
                f"{cluster}/{object_type.value}",
                logger.getChild(object_type.value),
                handlers[object_type],
                list_fn,
                resync,
                watch_timeout=watch_timeout,
                debug=debug,
            )
            for object_type, list_fn, resync in watches
        ]

    def _routes(self, items: Iterable[Any]) -> list[Any]:
        routes = []
        for item in items:
            try:
                routes.append(to_route(item))
            except MalformedEvent as e:
                self._logger.debug("cluster: %s, msg: skipping route, %s", self.name, e)
        return routes

    def start(self) -> None:
        self._logger.info("cluster: %s, msg: starting %d watches", self.name, len(self.threads))
        for thread in self.threads:
            thread.start()

    def terminate(self) -> None:
        for thread in self.threads:
            thread.terminate()

    def join(self, timeout: float | None = None) -> None:
        for thread in self.threads:
            thread.join(timeout)
