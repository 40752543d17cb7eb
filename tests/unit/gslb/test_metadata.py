#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import pytest
from kubernetes import client  # type: ignore[import]

from tests.testlib.gslb import ingress, namespace, route, route_dict, service

from gslb.exceptions import MalformedEvent
from gslb.metadata import (
    extract_ingress_hosts,
    extract_namespace,
    extract_route,
    extract_service,
    is_service_type_lb,
    resource_version,
    to_ingress,
    to_namespace,
    to_route,
    to_service,
)


def test_extract_service() -> None:
    meta, ok = extract_service(service(), "c1")
    assert ok
    assert (meta.cluster, meta.namespace, meta.name, meta.key) == ("c1", "ns1", "svc1", "svc1")
    assert (meta.hostname, meta.ip_address) == ("svc1.example.com", "10.0.0.5")
    assert meta.ports == (("TCP", 80),)


@pytest.mark.parametrize(
    "ip, hostname",
    [
        (None, None),
        ("10.0.0.5", None),
        (None, "svc1.example.com"),
    ],
)
def test_extract_service_not_ready(ip: str | None, hostname: str | None) -> None:
    meta, ok = extract_service(service(ip=ip, hostname=hostname), "c1")
    assert not ok
    assert meta.name == "svc1"


def test_is_service_type_lb() -> None:
    assert is_service_type_lb(service())
    assert not is_service_type_lb(service(service_type="NodePort"))


def test_service_checksum_ignores_resource_version() -> None:
    old, _ok = extract_service(service(version="1"), "c1")
    new, _ok = extract_service(service(version="2"), "c1")
    assert old.checksum == new.checksum


@pytest.mark.parametrize(
    "changes",
    [
        {"ip": "10.0.0.6"},
        {"hostname": "other.example.com"},
        {"labels": {"team": "a"}},
        {"port": 8080},
        {"service_type": "ClusterIP"},
    ],
)
def test_service_checksum_covers_relevant_fields(changes: dict) -> None:
    old, _ok = extract_service(service(), "c1")
    new, _ok = extract_service(service(**changes), "c1")
    assert old.checksum != new.checksum


def test_extract_ingress_hosts() -> None:
    metas = extract_ingress_hosts(ingress(["a.example.com", "b.example.com"]), "c1")
    assert [(m.name, m.hostname, m.ip_address) for m in metas] == [
        ("ing1/a.example.com", "a.example.com", "10.0.0.10"),
        ("ing1/b.example.com", "b.example.com", "10.0.0.10"),
    ]
    assert all(m.complete for m in metas)


def test_extract_ingress_hosts_per_host_status() -> None:
    ing = ingress(["a.example.com", "b.example.com"], ip=None)
    ing.status.load_balancer.ingress = [
        client.V1IngressLoadBalancerIngress(ip="10.0.0.1", hostname="a.example.com"),
        client.V1IngressLoadBalancerIngress(ip="10.0.0.2", hostname="b.example.com"),
    ]
    metas = extract_ingress_hosts(ing, "c1")
    assert [m.ip_address for m in metas] == ["10.0.0.1", "10.0.0.2"]


def test_extract_ingress_hosts_skips_rules_without_host() -> None:
    ing = ingress(["a.example.com", "a.example.com"])
    ing.spec.rules.append(client.V1IngressRule())
    assert [m.hostname for m in extract_ingress_hosts(ing, "c1")] == ["a.example.com"]


def test_extract_ingress_hosts_without_status() -> None:
    metas = extract_ingress_hosts(ingress(["a.example.com"], ip=None), "c1")
    assert len(metas) == 1
    assert not metas[0].complete


def test_extract_ingress_hosts_tls() -> None:
    ing = ingress(["a.example.com", "b.example.com"])
    ing.spec.tls = [client.V1IngressTLS(hosts=["b.example.com"], secret_name="b-cert")]
    assert [m.tls for m in extract_ingress_hosts(ing, "c1")] == [False, True]


def test_extract_route() -> None:
    meta, ok = extract_route(route(), "c1")
    assert ok
    assert (meta.name, meta.hostname, meta.ip_address, meta.service) == (
        "r1",
        "r1.example.com",
        "10.0.0.20",
        "svc1",
    )


def test_extract_route_ignores_non_ip_condition_messages() -> None:
    raw = route_dict()
    raw["status"]["ingress"][0]["conditions"] = [
        {"type": "Admitted", "status": "True", "message": "waiting for VIP"},
        {"type": "Admitted", "status": "False", "message": "10.0.0.1"},
    ]
    meta, ok = extract_route(to_route(raw), "c1")
    assert not ok
    assert meta.ip_address == ""


def test_extract_namespace() -> None:
    meta = extract_namespace(namespace(labels={"gslb": "enabled"}), "c1")
    assert (meta.cluster, meta.name, meta.namespace, meta.key) == ("c1", "ns1", "ns1", "ns1")
    assert meta.labels == {"gslb": "enabled"}


@pytest.mark.parametrize(
    "convert, obj",
    [
        (to_service, namespace()),
        (to_ingress, service()),
        (to_namespace, None),
        (to_route, service()),
        (to_route, {"metadata": {"name": "r1"}}),
    ],
)
def test_malformed_objects(convert, obj) -> None:  # type: ignore[no-untyped-def]
    with pytest.raises(MalformedEvent):
        convert(obj)


def test_resource_version() -> None:
    assert resource_version(service(version="42")) == "42"
    assert resource_version(route(version="7")) == "7"
    assert resource_version(object()) == ""
