#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from gslb.admission import DEFAULT_CONFIG, FilterConfig, matches_selector, read_config, SelectorFilter
from gslb.metadata import NamespaceMeta, ServiceMeta

LOGGER = logging.getLogger("gslb.test.filter")


def _filter(**kwargs: object) -> SelectorFilter:
    return SelectorFilter(FilterConfig.model_validate(kwargs), LOGGER)


def _service(cluster: str = "c1", namespace: str = "ns1", **labels: str) -> ServiceMeta:
    return ServiceMeta(
        cluster=cluster,
        namespace=namespace,
        name="svc1",
        hostname="svc1.example.com",
        ip_address="10.0.0.5",
        labels=labels,
    )


def _namespace(cluster: str = "c1", name: str = "ns1", **labels: str) -> NamespaceMeta:
    return NamespaceMeta(cluster=cluster, name=name, labels=labels)


@pytest.mark.parametrize(
    "labels, selector, result",
    [
        ({}, {}, True),
        ({"a": "1"}, {}, True),
        ({"a": "1", "b": "2"}, {"a": "1"}, True),
        ({"a": "2"}, {"a": "1"}, False),
        ({}, {"a": "1"}, False),
    ],
)
def test_matches_selector(labels: dict, selector: dict, result: bool) -> None:
    assert matches_selector(labels, selector) is result


def test_default_filter_admits_everything() -> None:
    selector_filter = SelectorFilter(DEFAULT_CONFIG, LOGGER)
    assert selector_filter.apply_filter(_service(), "c1")
    assert selector_filter.apply_filter(_service(cluster="c9", namespace="any"), "c9")


def test_app_selector() -> None:
    selector_filter = _filter(app_selector={"gslb": "enabled"})
    assert selector_filter.apply_filter(_service(gslb="enabled"), "c1")
    assert not selector_filter.apply_filter(_service(gslb="disabled"), "c1")
    assert not selector_filter.apply_filter(_service(), "c1")


def test_cluster_restriction() -> None:
    selector_filter = _filter(clusters=["c1"])
    assert selector_filter.apply_filter(_service(), "c1")
    assert not selector_filter.apply_filter(_service(cluster="c2"), "c2")


def test_namespace_selection() -> None:
    selector_filter = _filter(namespace_selector={"gslb": "enabled"})
    assert not selector_filter.apply_filter(_service(), "c1")

    assert selector_filter.apply_namespace(_namespace(gslb="enabled"))
    assert selector_filter.is_namespace_selected("c1", "ns1")
    assert selector_filter.apply_filter(_service(), "c1")
    # Selection is per cluster
    assert not selector_filter.apply_filter(_service(cluster="c2"), "c2")

    assert not selector_filter.apply_namespace(_namespace())
    assert not selector_filter.apply_filter(_service(), "c1")


def test_namespace_of_excluded_cluster_is_not_selected() -> None:
    selector_filter = _filter(namespace_selector={"gslb": "enabled"}, clusters=["c1"])
    assert not selector_filter.apply_namespace(_namespace(cluster="c2", gslb="enabled"))
    assert not selector_filter.is_namespace_selected("c2", "ns1")


def test_update_filter(caplog: pytest.LogCaptureFixture) -> None:
    selector_filter = _filter(namespace_selector={"gslb": "enabled"})
    plain, enabled = _namespace(), _namespace(gslb="enabled")
    selector_filter.apply_namespace(plain)

    with caplog.at_level(logging.INFO, logger=LOGGER.name):
        assert selector_filter.update_filter(plain, enabled)
    assert "namespace entered the filter" in caplog.text
    assert selector_filter.is_namespace_selected("c1", "ns1")

    assert not selector_filter.update_filter(enabled, _namespace(gslb="enabled", team="a"))
    assert selector_filter.is_namespace_selected("c1", "ns1")

    caplog.clear()
    with caplog.at_level(logging.INFO, logger=LOGGER.name):
        assert selector_filter.update_filter(enabled, plain)
    assert "namespace left the filter" in caplog.text
    assert not selector_filter.is_namespace_selected("c1", "ns1")

    assert not selector_filter.update_filter(plain, plain)


def test_delete_from_filter() -> None:
    selector_filter = _filter(namespace_selector={"gslb": "enabled"})
    enabled = _namespace(gslb="enabled")
    assert not selector_filter.delete_from_filter(enabled)

    selector_filter.apply_namespace(enabled)
    assert selector_filter.delete_from_filter(enabled)
    assert not selector_filter.is_namespace_selected("c1", "ns1")
    assert not selector_filter.delete_from_filter(enabled)


def test_read_config(tmp_path: Path) -> None:
    path = tmp_path / "filter.json"
    path.write_text(
        '{"namespace_selector": {"gslb": "enabled"}, "clusters": ["c1", "c2"]}',
        encoding="utf-8",
    )
    assert read_config(path) == FilterConfig(
        namespace_selector={"gslb": "enabled"}, app_selector={}, clusters=["c1", "c2"]
    )


def test_read_config_default() -> None:
    assert read_config(None) is DEFAULT_CONFIG


def test_read_invalid_config(tmp_path: Path) -> None:
    path = tmp_path / "filter.json"
    path.write_text('{"clusters": "c1"}', encoding="utf-8")
    with pytest.raises(ValidationError):
        read_config(path)
