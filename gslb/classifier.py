#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Classification of the watched objects into accepted and rejected ones

Per tracked key the engine knows three states: unseen, accepted and rejected.
Every event results in exactly one classification of the affected record(s),
which is then applied to the membership store of its kind:

    Accepted  -> move to the accepted table, publish ADD (was not accepted)
                 or UPDATE (was accepted with a different checksum)
    Rejected  -> move to the rejected table, publish DELETE if it was accepted
    Skipped   -> drop from both tables, publish DELETE if it was accepted

Deleting an object drops it from both tables and publishes DELETE with the
hostname of the accepted entry, if there was one. An update whose checksum did
not change is ignored completely.

Each kind has its own lock, the complete read-modify-write of an event runs
under it. Keys are published while holding the lock, so the order of the keys
of a hostname matches the order of the store transitions.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from logging import Logger
from typing import Protocol, Union

from kubernetes import client  # type: ignore[import]

from .admission import AdmissionFilter, NamespaceFilter
from .keys import ChangeKey, ObjectType, Operation
from .log import VERBOSE
from .metadata import (
    extract_ingress_hosts,
    extract_namespace,
    extract_route,
    extract_service,
    IngressHostMeta,
    is_service_type_lb,
    NamespaceMeta,
    Route,
    RouteMeta,
    ServiceMeta,
    TrafficMetadata,
)
from .store import Membership, MembershipStore


class Filter(AdmissionFilter, NamespaceFilter, Protocol):
    pass


class Publisher(Protocol):
    def publish(self, key: ChangeKey) -> None:
        ...


@dataclass(frozen=True)
class Accepted:
    meta: TrafficMetadata


@dataclass(frozen=True)
class Rejected:
    meta: TrafficMetadata


@dataclass(frozen=True)
class Skipped:
    meta: TrafficMetadata
    reason: str


Classification = Union[Accepted, Rejected, Skipped]

_INCOMPLETE = "IP address/hostname not found in status field"
_NOT_LB = "type not LoadBalancer"


class ClassificationEngine:
    def __init__(
        self,
        admission_filter: Filter,
        publisher: Publisher,
        logger: Logger,
        *,
        check_invariants: bool = False,
    ) -> None:
        self._filter = admission_filter
        self._publisher = publisher
        self._logger = logger
        self._check_invariants = check_invariants
        lock_logger = logger.getChild("lock")
        self.services: MembershipStore[ServiceMeta] = MembershipStore(
            ObjectType.SERVICE, lock_logger.getChild("services")
        )
        self.ingresses: MembershipStore[IngressHostMeta] = MembershipStore(
            ObjectType.INGRESS, lock_logger.getChild("ingresses")
        )
        self.routes: MembershipStore[RouteMeta] = MembershipStore(
            ObjectType.ROUTE, lock_logger.getChild("routes")
        )
        self.namespaces: MembershipStore[NamespaceMeta] = MembershipStore(
            ObjectType.NAMESPACE, lock_logger.getChild("namespaces")
        )

    def store(self, object_type: ObjectType) -> MembershipStore:
        return {
            ObjectType.SERVICE: self.services,
            ObjectType.INGRESS: self.ingresses,
            ObjectType.ROUTE: self.routes,
            ObjectType.NAMESPACE: self.namespaces,
        }[object_type]

    def _traffic_stores(self) -> Sequence[MembershipStore]:
        # Fixed order, the namespace handling takes these locks one after another.
        return (self.services, self.ingresses, self.routes)

    #   .--Classification--------------------------------------------------.

    def classify(self, meta: TrafficMetadata, cluster: str) -> Classification:
        # Nothing to place in traffic yet, so the filter is not even asked.
        if not meta.complete:
            return Skipped(meta, _INCOMPLETE)
        if not self._filter.apply_filter(meta, cluster):
            return Rejected(meta)
        return Accepted(meta)

    def _classify_service(self, svc: client.V1Service, cluster: str) -> Classification:
        meta, _ok = extract_service(svc, cluster)
        if not is_service_type_lb(svc):
            return Skipped(meta, _NOT_LB)
        return self.classify(meta, cluster)

    def _classify_route(self, route: Route, cluster: str) -> Classification:
        meta, _ok = extract_route(route, cluster)
        return self.classify(meta, cluster)

    #   .--Transitions-----------------------------------------------------.

    def _publish(
        self, operation: Operation, meta: TrafficMetadata, hostname: str, publish: bool
    ) -> None:
        if not publish:
            return
        self._publisher.publish(
            ChangeKey(
                operation, meta.object_type, meta.cluster, meta.namespace, meta.name, hostname
            )
        )

    def _verify(self, store: MembershipStore, meta: TrafficMetadata | NamespaceMeta) -> None:
        if self._check_invariants:
            store.verify_key(meta.cluster, meta.namespace, meta.key)

    def _apply(
        self, store: MembershipStore, result: Classification, *, publish: bool = True
    ) -> None:
        """Moves the record into the table matching its classification

        Caller must hold the lock of the store.
        """
        meta = result.meta
        if isinstance(result, Accepted):
            previous = store.accept(meta)
            if previous is None:
                self._logger.log(
                    VERBOSE,
                    "cluster: %s, ns: %s, %s: %s, msg: accepted",
                    meta.cluster,
                    meta.namespace,
                    meta.object_type.value,
                    meta.name,
                )
                self._publish(Operation.ADD, meta, meta.hostname, publish)
            elif previous.checksum != meta.checksum:
                self._publish(Operation.UPDATE, meta, meta.hostname, publish)
        elif isinstance(result, Rejected):
            previous = store.reject(meta)
            self._logger.log(
                VERBOSE,
                "cluster: %s, ns: %s, %s: %s, msg: rejected because it couldn't pass through the filter",
                meta.cluster,
                meta.namespace,
                meta.object_type.value,
                meta.name,
            )
            if previous is not None:
                self._publish(Operation.DELETE, previous, previous.hostname, publish)
        else:
            self._logger.debug(
                "cluster: %s, ns: %s, %s: %s, msg: not considered, %s",
                meta.cluster,
                meta.namespace,
                meta.object_type.value,
                meta.name,
                result.reason,
            )
            previous = store.forget(meta.cluster, meta.namespace, meta.key)
            if previous is not None:
                self._publish(Operation.DELETE, previous, previous.hostname, publish)
        self._verify(store, meta)

    def _delete(
        self, store: MembershipStore, meta: TrafficMetadata, *, publish: bool = True
    ) -> None:
        """Caller must hold the lock of the store"""
        previous = store.forget(meta.cluster, meta.namespace, meta.key)
        # Only objects the graph layer knows about need a DELETE key.
        if previous is not None:
            self._publish(Operation.DELETE, previous, previous.hostname, publish)

    def _update(
        self,
        store: MembershipStore,
        old: TrafficMetadata,
        result: Classification,
    ) -> None:
        if old.checksum == result.meta.checksum:
            self._logger.debug(
                "cluster: %s, ns: %s, %s: %s, msg: no changes",
                old.cluster,
                old.namespace,
                old.object_type.value,
                old.name,
            )
            return
        self._apply(store, result)

    #   .--Services--------------------------------------------------------.

    def add_service(self, svc: client.V1Service, cluster: str) -> None:
        with self.services.lock:
            self._apply(self.services, self._classify_service(svc, cluster))

    def update_service(
        self, old_svc: client.V1Service, svc: client.V1Service, cluster: str
    ) -> None:
        old_meta, _ok = extract_service(old_svc, cluster)
        with self.services.lock:
            self._update(self.services, old_meta, self._classify_service(svc, cluster))

    def delete_service(self, svc: client.V1Service, cluster: str) -> None:
        # The status may already be gone, the stored entry knows the hostname.
        meta, _ok = extract_service(svc, cluster)
        with self.services.lock:
            self._delete(self.services, meta)

    #   .--Routes----------------------------------------------------------.

    def add_route(self, route: Route, cluster: str) -> None:
        with self.routes.lock:
            self._apply(self.routes, self._classify_route(route, cluster))

    def update_route(self, old_route: Route, route: Route, cluster: str) -> None:
        old_meta, _ok = extract_route(old_route, cluster)
        with self.routes.lock:
            self._update(self.routes, old_meta, self._classify_route(route, cluster))

    def delete_route(self, route: Route, cluster: str) -> None:
        meta, _ok = extract_route(route, cluster)
        with self.routes.lock:
            self._delete(self.routes, meta)

    #   .--Ingresses-------------------------------------------------------.

    def _stored_ingress_hosts(
        self, cluster: str, namespace: str, ingress_name: str
    ) -> list[IngressHostMeta]:
        return [
            meta
            for table in (self.ingresses.accepted, self.ingresses.rejected)
            for meta in table.objects(cluster)
            if meta.namespace == namespace and meta.ingress_name == ingress_name
        ]

    def add_ingress(self, ing: client.V1Ingress, cluster: str) -> None:
        with self.ingresses.lock:
            for meta in extract_ingress_hosts(ing, cluster):
                self._apply(self.ingresses, self.classify(meta, cluster))

    def update_ingress(
        self, old_ing: client.V1Ingress, ing: client.V1Ingress, cluster: str
    ) -> None:
        """Diffs the host rules of both versions

        Hosts are matched by namespace, ingress name and host. Vanished hosts
        are deleted, new hosts are added and the remaining ones are updated if
        their checksum changed.
        """
        old_hosts = {meta.key: meta for meta in extract_ingress_hosts(old_ing, cluster)}
        new_hosts = {meta.key: meta for meta in extract_ingress_hosts(ing, cluster)}
        with self.ingresses.lock:
            for key, old_meta in old_hosts.items():
                if (new_meta := new_hosts.get(key)) is None:
                    self._delete(self.ingresses, old_meta)
                    continue
                self._update(self.ingresses, old_meta, self.classify(new_meta, cluster))
            for key, new_meta in new_hosts.items():
                if key in old_hosts:
                    continue
                self._apply(self.ingresses, self.classify(new_meta, cluster))

    def delete_ingress(self, ing: client.V1Ingress, cluster: str) -> None:
        with self.ingresses.lock:
            hosts = {meta.key: meta for meta in extract_ingress_hosts(ing, cluster)}
            for meta in self._stored_ingress_hosts(
                cluster, ing.metadata.namespace, ing.metadata.name
            ):
                hosts.setdefault(meta.key, meta)
            for meta in hosts.values():
                self._delete(self.ingresses, meta)

    #   .--Namespaces------------------------------------------------------.

    def _set_namespace_membership(self, meta: NamespaceMeta, accepted: bool) -> None:
        """Caller must hold the namespace lock"""
        if accepted:
            self.namespaces.accept(meta)
        else:
            self.namespaces.reject(meta)
            self._logger.log(
                VERBOSE,
                "cluster: %s, ns: %s, msg: ns didn't pass through the filter, adding to rejected list",
                meta.cluster,
                meta.name,
            )
        self._verify(self.namespaces, meta)

    def add_namespace(self, ns: client.V1Namespace, cluster: str) -> None:
        meta = extract_namespace(ns, cluster)
        with self.namespaces.lock:
            self._set_namespace_membership(meta, self._filter.apply_namespace(meta))
            self.reevaluate(cluster)

    def update_namespace(
        self, old_ns: client.V1Namespace, ns: client.V1Namespace, cluster: str
    ) -> None:
        old_meta = extract_namespace(old_ns, cluster)
        meta = extract_namespace(ns, cluster)
        if old_meta.checksum == meta.checksum:
            self._logger.debug("cluster: %s, ns: %s, msg: ns didn't change", cluster, meta.name)
            return
        with self.namespaces.lock:
            if self._filter.update_filter(old_meta, meta):
                self._logger.info(
                    "cluster: %s, namespace: %s, msg: namespace changed in filter, will re-apply",
                    cluster,
                    meta.name,
                )
            # Re-derived from the current verdict, also without a reported change.
            self._set_namespace_membership(meta, self._filter.apply_namespace(meta))
            self.reevaluate(cluster)

    def delete_namespace(self, ns: client.V1Namespace, cluster: str) -> None:
        meta = extract_namespace(ns, cluster)
        with self.namespaces.lock:
            if not self._filter.delete_from_filter(meta):
                self._logger.debug(
                    "cluster: %s, ns: %s, msg: no namespace exists in the filter", cluster, meta.name
                )
            self.namespaces.forget(meta.cluster, meta.namespace, meta.key)
            self.reevaluate(cluster)

    def reevaluate(self, cluster: str) -> int:
        """Re-applies the filter to all classified objects of a cluster

        Only objects whose verdict flipped are moved and published, so calling
        this repeatedly is harmless. Returns the number of moved objects.
        """
        moved = 0
        for store in self._traffic_stores():
            with store.lock:
                for meta in store.accepted.objects(cluster):
                    result = self.classify(meta, cluster)
                    if not isinstance(result, Accepted):
                        self._apply(store, result)
                        moved += 1
                for meta in store.rejected.objects(cluster):
                    result = self.classify(meta, cluster)
                    if isinstance(result, Accepted):
                        self._apply(store, result)
                        moved += 1
        if moved:
            self._logger.info("cluster: %s, msg: re-evaluation moved %d objects", cluster, moved)
        return moved

    #   .--Resync----------------------------------------------------------.

    def resync_services(
        self, services: Iterable[client.V1Service], cluster: str, *, publish: bool = True
    ) -> None:
        with self.services.lock:
            results = [self._classify_service(svc, cluster) for svc in services]
            self._resync(self.services, results, cluster, publish)

    def resync_routes(
        self, routes: Iterable[Route], cluster: str, *, publish: bool = True
    ) -> None:
        with self.routes.lock:
            results = [self._classify_route(route, cluster) for route in routes]
            self._resync(self.routes, results, cluster, publish)

    def resync_ingresses(
        self, ingresses: Iterable[client.V1Ingress], cluster: str, *, publish: bool = True
    ) -> None:
        with self.ingresses.lock:
            results = [
                self.classify(meta, cluster)
                for ing in ingresses
                for meta in extract_ingress_hosts(ing, cluster)
            ]
            self._resync(self.ingresses, results, cluster, publish)

    def _resync(
        self,
        store: MembershipStore,
        results: Sequence[Classification],
        cluster: str,
        publish: bool,
    ) -> None:
        """Brings the stores of a cluster in line with a complete listing

        Objects missing from the listing have been deleted while we were not
        watching. With publish=False the stores are only populated, e.g. to
        bootstrap the graph layer from the accepted tables.
        """
        listed = {(r.meta.namespace, r.meta.key) for r in results}
        for table in (store.accepted, store.rejected):
            for meta in table.objects(cluster):
                if (meta.namespace, meta.key) not in listed:
                    self._delete(store, meta, publish=publish)
        for result in results:
            self._apply(store, result, publish=publish)

    def resync_namespaces(self, namespaces: Iterable[client.V1Namespace], cluster: str) -> None:
        metas = [extract_namespace(ns, cluster) for ns in namespaces]
        listed = {meta.name for meta in metas}
        with self.namespaces.lock:
            for stored in self.namespaces.accepted.objects(cluster) + self.namespaces.rejected.objects(
                cluster
            ):
                if stored.name not in listed:
                    self._filter.delete_from_filter(stored)
                    self.namespaces.forget(stored.cluster, stored.namespace, stored.key)
            for meta in metas:
                self._set_namespace_membership(meta, self._filter.apply_namespace(meta))
            self.reevaluate(cluster)

    def membership(
        self, object_type: ObjectType, cluster: str, namespace: str, name: str
    ) -> Membership:
        return self.store(object_type).status(cluster, namespace, name)
