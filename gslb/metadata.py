#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Traffic relevant metadata of the watched Kubernetes objects

Every watched kind is reduced to a small, frozen record carrying the fields the
admission filter and the graph layer look at. The checksum of a record covers
exactly these fields: two records with the same checksum are interchangeable.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import ClassVar, Union

from kubernetes import client  # type: ignore[import]
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import MalformedEvent
from .keys import fnv1a_32, ObjectType

LB_SERVICE_TYPE = "LoadBalancer"


def _checksum(*parts: object) -> int:
    return fnv1a_32("|".join(str(p) for p in parts))


def _sorted_labels(labels: Mapping[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


@dataclass(frozen=True)
class ServiceMeta:
    object_type: ClassVar[ObjectType] = ObjectType.SERVICE

    cluster: str
    namespace: str
    name: str
    hostname: str = ""
    ip_address: str = ""
    labels: Mapping[str, str] = field(default_factory=dict)
    ports: Sequence[tuple[str, int]] = ()
    service_type: str = LB_SERVICE_TYPE

    @property
    def key(self) -> str:
        return self.name

    @property
    def complete(self) -> bool:
        return bool(self.hostname and self.ip_address)

    @property
    def checksum(self) -> int:
        return _checksum(
            self.hostname,
            self.ip_address,
            _sorted_labels(self.labels),
            sorted(self.ports),
            self.service_type,
        )


@dataclass(frozen=True)
class IngressHostMeta:
    """One host rule of an Ingress

    The name is "<ingress name>/<host>", so several hosts of the same Ingress
    can live side by side in the stores.
    """

    object_type: ClassVar[ObjectType] = ObjectType.INGRESS

    cluster: str
    namespace: str
    ingress_name: str
    hostname: str
    ip_address: str = ""
    labels: Mapping[str, str] = field(default_factory=dict)
    paths: Sequence[tuple[str, str, str]] = ()
    tls: bool = False

    @property
    def name(self) -> str:
        return f"{self.ingress_name}/{self.hostname}"

    @property
    def key(self) -> str:
        return self.name

    @property
    def complete(self) -> bool:
        return bool(self.hostname and self.ip_address)

    @property
    def checksum(self) -> int:
        return _checksum(
            self.hostname,
            self.ip_address,
            _sorted_labels(self.labels),
            sorted(self.paths),
            self.tls,
        )


@dataclass(frozen=True)
class RouteMeta:
    object_type: ClassVar[ObjectType] = ObjectType.ROUTE

    cluster: str
    namespace: str
    name: str
    hostname: str = ""
    ip_address: str = ""
    labels: Mapping[str, str] = field(default_factory=dict)
    path: str = ""
    service: str = ""
    tls_termination: str = ""

    @property
    def key(self) -> str:
        return self.name

    @property
    def complete(self) -> bool:
        return bool(self.hostname and self.ip_address)

    @property
    def checksum(self) -> int:
        return _checksum(
            self.hostname,
            self.ip_address,
            _sorted_labels(self.labels),
            self.path,
            self.service,
            self.tls_termination,
        )


@dataclass(frozen=True)
class NamespaceMeta:
    object_type: ClassVar[ObjectType] = ObjectType.NAMESPACE

    cluster: str
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)

    # A namespace is stored under its own name in the namespace of the same name.
    @property
    def namespace(self) -> str:
        return self.name

    @property
    def key(self) -> str:
        return self.name

    @property
    def hostname(self) -> str:
        return ""

    @property
    def complete(self) -> bool:
        return True

    @property
    def checksum(self) -> int:
        return _checksum(self.name, _sorted_labels(self.labels))


ObjectMetadata = Union[ServiceMeta, IngressHostMeta, RouteMeta, NamespaceMeta]
TrafficMetadata = Union[ServiceMeta, IngressHostMeta, RouteMeta]


#   .--Route---------------------------------------------------------------.
#   | OpenShift routes are delivered as plain dicts by the custom objects  |
#   | API, so we validate the parts we need ourselves.                     |
#   '----------------------------------------------------------------------'


class RouteObjectMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    namespace: str
    labels: dict[str, str] = Field(default_factory=dict)
    resource_version: str = Field("", alias="resourceVersion")


class RouteTargetReference(BaseModel):
    kind: str = "Service"
    name: str


class RouteTLSConfig(BaseModel):
    termination: str = ""


class RouteSpec(BaseModel):
    host: str = ""
    path: str = ""
    to: RouteTargetReference
    tls: RouteTLSConfig | None = None


class RouteIngressCondition(BaseModel):
    type: str
    status: str
    message: str = ""


class RouteIngress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    host: str = ""
    router_name: str = Field("", alias="routerName")
    conditions: list[RouteIngressCondition] = Field(default_factory=list)


class RouteStatus(BaseModel):
    ingress: list[RouteIngress] = Field(default_factory=list)


class Route(BaseModel):
    metadata: RouteObjectMeta
    spec: RouteSpec
    status: RouteStatus = Field(default_factory=RouteStatus)


#   .--Conversion----------------------------------------------------------.
#   | Turn the loosely typed watch payloads into the expected kind.        |
#   '----------------------------------------------------------------------'


def to_service(obj: object) -> client.V1Service:
    if not isinstance(obj, client.V1Service):
        raise MalformedEvent("Service", obj)
    return obj


def to_ingress(obj: object) -> client.V1Ingress:
    if not isinstance(obj, client.V1Ingress):
        raise MalformedEvent("Ingress", obj)
    return obj


def to_namespace(obj: object) -> client.V1Namespace:
    if not isinstance(obj, client.V1Namespace):
        raise MalformedEvent("Namespace", obj)
    return obj


def to_route(obj: object) -> Route:
    if isinstance(obj, Route):
        return obj
    if not isinstance(obj, Mapping):
        raise MalformedEvent("Route", obj)
    try:
        return Route.model_validate(obj)
    except ValidationError as e:
        raise MalformedEvent("Route", obj) from e


def resource_version(obj: object) -> str:
    if isinstance(obj, Route):
        return obj.metadata.resource_version
    metadata = getattr(obj, "metadata", None)
    return getattr(metadata, "resource_version", None) or ""


#   .--Extraction----------------------------------------------------------.


def is_service_type_lb(svc: client.V1Service) -> bool:
    return svc.spec is not None and svc.spec.type == LB_SERVICE_TYPE


def _lb_ingress(status: object) -> Sequence[object]:
    load_balancer = getattr(status, "load_balancer", None)
    return getattr(load_balancer, "ingress", None) or ()


def extract_service(svc: client.V1Service, cluster: str) -> tuple[ServiceMeta, bool]:
    """The returned flag is False as long as no VIP and hostname are assigned"""
    ip_address = hostname = ""
    if lb_ingress := _lb_ingress(svc.status):
        ip_address = getattr(lb_ingress[0], "ip", None) or ""
        hostname = getattr(lb_ingress[0], "hostname", None) or ""
    ports = tuple(
        (p.protocol or "TCP", p.port) for p in ((svc.spec.ports if svc.spec else None) or ())
    )
    meta = ServiceMeta(
        cluster=cluster,
        namespace=svc.metadata.namespace,
        name=svc.metadata.name,
        hostname=hostname,
        ip_address=ip_address,
        labels=dict(svc.metadata.labels or {}),
        ports=ports,
        service_type=(svc.spec.type if svc.spec else None) or "",
    )
    return meta, meta.complete


def _ingress_paths(rule: client.V1IngressRule) -> tuple[tuple[str, str, str], ...]:
    if rule.http is None:
        return ()
    paths = []
    for http_path in rule.http.paths or ():
        backend_name = backend_port = ""
        if (backend := http_path.backend) is not None and backend.service is not None:
            backend_name = backend.service.name or ""
            if backend.service.port is not None:
                backend_port = str(backend.service.port.number or backend.service.port.name or "")
        paths.append((http_path.path or "/", backend_name, backend_port))
    return tuple(paths)


def extract_ingress_hosts(ing: client.V1Ingress, cluster: str) -> list[IngressHostMeta]:
    """One record per host rule, rules without a host are not load balanced globally"""
    host_ips: dict[str, str] = {}
    default_ip = ""
    for lb_ingress in _lb_ingress(ing.status):
        ip_address = getattr(lb_ingress, "ip", None) or ""
        if host := getattr(lb_ingress, "hostname", None):
            host_ips.setdefault(host, ip_address)
        elif not default_ip:
            default_ip = ip_address

    tls_hosts = {h for tls in ((ing.spec.tls if ing.spec else None) or ()) for h in tls.hosts or ()}
    labels = dict(ing.metadata.labels or {})

    metas: list[IngressHostMeta] = []
    seen: set[str] = set()
    for rule in (ing.spec.rules if ing.spec else None) or ():
        if not rule.host or rule.host in seen:
            continue
        seen.add(rule.host)
        metas.append(
            IngressHostMeta(
                cluster=cluster,
                namespace=ing.metadata.namespace,
                ingress_name=ing.metadata.name,
                hostname=rule.host,
                ip_address=host_ips.get(rule.host, default_ip),
                labels=labels,
                paths=_ingress_paths(rule),
                tls=rule.host in tls_hosts,
            )
        )
    return metas


def route_ip_address(route: Route) -> str | None:
    # The load balancer reports the VIP as message of the Admitted condition.
    for route_ingress in route.status.ingress:
        for condition in route_ingress.conditions:
            if condition.type != "Admitted" or condition.status != "True":
                continue
            try:
                return str(ipaddress.ip_address(condition.message.strip()))
            except ValueError:
                continue
    return None


def extract_route(route: Route, cluster: str) -> tuple[RouteMeta, bool]:
    meta = RouteMeta(
        cluster=cluster,
        namespace=route.metadata.namespace,
        name=route.metadata.name,
        hostname=route.spec.host,
        ip_address=route_ip_address(route) or "",
        labels=dict(route.metadata.labels),
        path=route.spec.path,
        service=route.spec.to.name,
        tls_termination=route.spec.tls.termination if route.spec.tls else "",
    )
    return meta, meta.complete


def extract_namespace(ns: client.V1Namespace, cluster: str) -> NamespaceMeta:
    return NamespaceMeta(
        cluster=cluster,
        name=ns.metadata.name,
        labels=dict(ns.metadata.labels or {}),
    )
