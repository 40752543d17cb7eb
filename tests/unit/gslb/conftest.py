#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import logging
from collections.abc import Callable, Mapping, Sequence

import pytest

from tests.testlib.gslb import ENABLED, RecordingPublisher

from gslb.admission import FilterConfig, SelectorFilter
from gslb.classifier import ClassificationEngine


@pytest.fixture(name="publisher")
def fixture_publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture(name="make_engine")
def fixture_make_engine(
    publisher: RecordingPublisher,
) -> Callable[..., ClassificationEngine]:
    def make(
        namespace_selector: Mapping[str, str] | None = None,
        app_selector: Mapping[str, str] | None = ENABLED,
        clusters: Sequence[str] = (),
    ) -> ClassificationEngine:
        config = FilterConfig(
            namespace_selector=dict(namespace_selector or {}),
            app_selector=dict(app_selector or {}),
            clusters=list(clusters),
        )
        logger = logging.getLogger("gslb.test")
        return ClassificationEngine(
            SelectorFilter(config, logger.getChild("filter")),
            publisher,
            logger,
            check_invariants=True,
        )

    return make


@pytest.fixture(name="engine")
def fixture_engine(make_engine: Callable[..., ClassificationEngine]) -> ClassificationEngine:
    return make_engine()
