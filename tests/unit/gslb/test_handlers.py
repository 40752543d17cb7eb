#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import logging

import pytest

from tests.testlib.gslb import ingress, namespace, RecordingPublisher, route_dict, service

from gslb.classifier import ClassificationEngine
from gslb.exceptions import MalformedEvent
from gslb.handlers import create_event_handlers, ResourceEventHandler
from gslb.keys import ObjectType
from gslb.metadata import to_service
from gslb.store import Membership

LOGGER = logging.getLogger("gslb.test.handlers")


def test_create_event_handlers(engine: ClassificationEngine) -> None:
    handlers = create_event_handlers(engine, "c1", LOGGER)
    assert set(handlers) == set(ObjectType)
    assert all(h.cluster == "c1" for h in handlers.values())
    assert all(t is h.object_type for t, h in handlers.items())


def test_handlers_feed_the_engine(
    engine: ClassificationEngine, publisher: RecordingPublisher
) -> None:
    handlers = create_event_handlers(engine, "c1", LOGGER)
    handlers[ObjectType.SERVICE].on_add(service())
    handlers[ObjectType.INGRESS].on_add(ingress(["a.example.com"]))
    handlers[ObjectType.ROUTE].on_add(route_dict())

    assert [(op, obj_type) for op, obj_type, *_rest in publisher.pop()] == [
        ("ADD", "Service"),
        ("ADD", "Ingress"),
        ("ADD", "Route"),
    ]

    handlers[ObjectType.ROUTE].on_delete(route_dict())
    assert publisher.pop() == [("DELETE", "Route", "c1", "ns1", "r1", "r1.example.com")]


def test_malformed_event_is_dropped(
    engine: ClassificationEngine, publisher: RecordingPublisher
) -> None:
    handlers = create_event_handlers(engine, "c1", LOGGER)
    handlers[ObjectType.SERVICE].on_add(namespace())
    handlers[ObjectType.SERVICE].on_update(service(), namespace())
    handlers[ObjectType.ROUTE].on_add({"metadata": {"name": "r1"}})
    handlers[ObjectType.NAMESPACE].on_delete(None)

    assert publisher.pop() == []
    assert engine.membership(ObjectType.SERVICE, "c1", "ns1", "svc1") is Membership.UNSEEN


def test_malformed_event_in_debug_mode(engine: ClassificationEngine) -> None:
    handlers = create_event_handlers(engine, "c1", LOGGER, debug=True)
    with pytest.raises(MalformedEvent):
        handlers[ObjectType.SERVICE].on_add(namespace())


def test_update_with_same_resource_version_is_ignored(
    engine: ClassificationEngine, publisher: RecordingPublisher
) -> None:
    handlers = create_event_handlers(engine, "c1", LOGGER)
    handlers[ObjectType.SERVICE].on_add(service())
    publisher.pop()

    handlers[ObjectType.SERVICE].on_update(service(), service(ip="10.0.0.6"))
    assert publisher.pop() == []

    handlers[ObjectType.SERVICE].on_update(service(), service(ip="10.0.0.6", version="2"))
    assert publisher.pop() == [("UPDATE", "Service", "c1", "ns1", "svc1", "svc1.example.com")]


def _failing(*args: object) -> None:
    raise RuntimeError("boom")


def test_exceptions_are_contained(caplog: pytest.LogCaptureFixture) -> None:
    handler = ResourceEventHandler(
        ObjectType.SERVICE, "c1", to_service, _failing, _failing, _failing, LOGGER
    )
    with caplog.at_level(logging.ERROR, logger=LOGGER.name):
        handler.on_add(service())
        handler.on_delete(service())
    assert caplog.text.count("exception while handling Service") == 2


def test_exceptions_in_debug_mode() -> None:
    handler = ResourceEventHandler(
        ObjectType.SERVICE, "c1", to_service, _failing, _failing, _failing, LOGGER, debug=True
    )
    with pytest.raises(RuntimeError):
        handler.on_update(service(), service(version="2"))
