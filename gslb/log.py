#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import logging
import sys
from pathlib import Path
from typing import IO

# Just for reference, the predefined logging levels:
#
# Python         added here
# --------------------------
# CRITICAL 50
# ERROR    40
# WARNING  30                 <= default level in Python
# INFO     20
#                VERBOSE  15
# DEBUG    10
#
# Every accepted or rejected object and every published key is logged with
# VERBOSE, the per-lock chatter and "not ready yet" objects with DEBUG.
VERBOSE = 15
logging.addLevelName(VERBOSE, "VERBOSE")

logger = logging.getLogger("gslb")


def get_formatter(
    format_str: str = "%(asctime)s [%(levelno)s] [%(name)s %(process)d] %(message)s",
) -> logging.Formatter:
    """Returns a new message formater instance that uses the standard
    log format by default. You can also set another format if you like."""
    return logging.Formatter(format_str)


def clear_console_logging() -> None:
    logger.handlers[:] = []
    logger.addHandler(logging.NullHandler())
    logger.setLevel(logging.INFO)


# Set default logging handler to avoid "No handler found" warnings.
clear_console_logging()


def open_log(log_file_path: str | Path) -> IO[str]:
    """Open logfile and fall back to stderr if this is not successfull
    The opened file-like object is returned.
    """
    log_file_path = Path(log_file_path)
    logfile: IO[str]
    try:
        logfile = log_file_path.open("a", encoding="utf-8")
        logfile.flush()
    except Exception as e:
        logger.exception("Cannot open log file '%s': %s", log_file_path, e)
        logfile = sys.stderr
    setup_logging_handler(logfile)
    return logfile


def setup_logging_handler(stream: IO[str], formatter: logging.Formatter | None = None) -> None:
    """This method enables all log messages to be written to the given
    stream file object."""
    if formatter is None:
        formatter = get_formatter()

    handler = logging.StreamHandler(stream=stream)
    handler.setFormatter(formatter)

    del logger.handlers[:]  # Remove all previously existing handlers
    logger.addHandler(handler)


def verbosity_to_log_level(verbosity: int) -> int:
    """Values for "verbosity":

      0: enables INFO and above
      1: enables VERBOSE and above
      2: enables DEBUG and above (ALL messages)
    """
    if verbosity == 0:
        return logging.INFO
    if verbosity == 1:
        return VERBOSE
    if verbosity >= 2:
        return logging.DEBUG
    raise ValueError(verbosity)
