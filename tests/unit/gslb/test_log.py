#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import io
import logging
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from gslb import log


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    yield
    log.clear_console_logging()


@pytest.mark.parametrize(
    "verbosity, level",
    [
        (0, logging.INFO),
        (1, log.VERBOSE),
        (2, logging.DEBUG),
        (3, logging.DEBUG),
    ],
)
def test_verbosity_to_log_level(verbosity: int, level: int) -> None:
    assert log.verbosity_to_log_level(verbosity) == level


def test_verbosity_to_log_level_invalid() -> None:
    with pytest.raises(ValueError):
        log.verbosity_to_log_level(-1)


def test_verbose_level_name() -> None:
    assert logging.getLevelName(log.VERBOSE) == "VERBOSE"


def test_setup_logging_handler() -> None:
    stream = io.StringIO()
    log.setup_logging_handler(stream)
    log.logger.setLevel(log.VERBOSE)

    logging.getLogger("gslb.engine").log(log.VERBOSE, "accepted %s", "svc1")
    logging.getLogger("gslb.engine").debug("not shown")

    assert "[15] [gslb.engine " in stream.getvalue()
    assert "accepted svc1" in stream.getvalue()
    assert "not shown" not in stream.getvalue()
    assert len(log.logger.handlers) == 1


def test_open_log(tmp_path: Path) -> None:
    path = tmp_path / "gslb.log"
    logfile = log.open_log(path)
    log.logger.info("hello")
    logfile.flush()
    assert "hello" in path.read_text(encoding="utf-8")
    logfile.close()


def test_open_log_falls_back_to_stderr(tmp_path: Path) -> None:
    assert log.open_log(tmp_path / "missing" / "gslb.log") is sys.stderr
