#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.
"""Settings handling for the GSLB member cluster ingestion."""

import sys
from argparse import ArgumentParser, ArgumentTypeError, RawDescriptionHelpFormatter
from pathlib import Path
from typing import NamedTuple, Optional

from .workqueue import QueueSettings


class AnnotatedPath(NamedTuple):
    """a filesystem path with a user-presentable description"""

    description: str
    value: Path


class Paths(NamedTuple):
    """filesystem paths related to the ingestion"""

    kubeconfig: Optional[AnnotatedPath]
    filter_config: Optional[AnnotatedPath]
    log_file: Optional[AnnotatedPath]


class GSLBArgumentParser(ArgumentParser):
    """An argument parser for the ingestion"""

    def __init__(self, prog: str, version: str) -> None:
        super().__init__(
            prog=prog,
            formatter_class=RawDescriptionHelpFormatter,
            description="Watch the member clusters and feed the GSLB graph layer.",
        )
        self._add_arguments(version)

    def _add_arguments(self, version: str) -> None:
        self.add_argument(
            "-V", "--version", action="version", version="%(prog)s version " + version
        )
        self.add_argument("-v", "--verbose", action="count", default=0, help="increase verbosity")
        self.add_argument(
            "-d",
            "--debug",
            action="store_true",
            help="enable debug mode, letting exceptions through",
        )
        self.add_argument("--kubeconfig", type=Path, help="kubeconfig with the member clusters")
        self.add_argument(
            "--cluster",
            dest="clusters",
            action="append",
            metavar="CONTEXT",
            required=True,
            help="kubeconfig context of a member cluster (repeatable)",
        )
        self.add_argument(
            "--workers",
            type=self._positive_int,
            default=8,
            help="number of work queues handed to the graph layer (default: %(default)s)",
        )
        self.add_argument(
            "--filter-config", type=Path, help="JSON file with the admission filter selectors"
        )
        self.add_argument(
            "--routes", action="store_true", help="also watch OpenShift routes"
        )
        self.add_argument(
            "--watch-timeout",
            type=self._positive_int,
            default=300,
            help="seconds until a watch is reopened (default: %(default)s)",
        )
        self.add_argument(
            "--queue-base-delay",
            type=self._non_negative_float,
            default=QueueSettings().base_delay,
            help="initial per key backoff in seconds (default: %(default)s)",
        )
        self.add_argument(
            "--queue-max-delay",
            type=self._non_negative_float,
            default=QueueSettings().max_delay,
            help="maximum per key backoff in seconds (default: %(default)s)",
        )
        self.add_argument(
            "--queue-qps",
            type=self._non_negative_float,
            default=QueueSettings().qps,
            help="overall dequeue rate per queue, 0 disables the limit (default: %(default)s)",
        )
        self.add_argument(
            "--queue-burst",
            type=self._positive_int,
            default=QueueSettings().burst,
            help="burst size of the dequeue rate limit (default: %(default)s)",
        )
        self.add_argument("--log-file", type=Path, help="append the log to this file")

    @staticmethod
    def _positive_int(value: str) -> int:
        try:
            number = int(value)
            if number <= 0:
                raise ValueError
        except ValueError:
            raise ArgumentTypeError("invalid positive number: %r" % value)
        return number

    @staticmethod
    def _non_negative_float(value: str) -> float:
        try:
            number = float(value)
            if number < 0:
                raise ValueError
        except ValueError:
            raise ArgumentTypeError("invalid non-negative number: %r" % value)
        return number


class Options(NamedTuple):
    """various post-processed commandline options"""

    verbosity: int
    debug: bool
    clusters: list[str]
    num_workers: int
    watch_routes: bool
    watch_timeout: int
    queue: QueueSettings


class Settings(NamedTuple):
    """all settings of the ingestion"""

    paths: Paths
    options: Options


def _annotated(description: str, value: Optional[Path]) -> Optional[AnnotatedPath]:
    return None if value is None else AnnotatedPath(description, value)


def create_settings(version: str, argv: list[str]) -> Settings:
    """Returns all ingestion settings"""
    parser = GSLBArgumentParser(Path(argv[0]).name, version)
    args = parser.parse_args(argv[1:])
    paths = Paths(
        kubeconfig=_annotated("kubeconfig", args.kubeconfig),
        filter_config=_annotated("admission filter configuration", args.filter_config),
        log_file=_annotated("log file", args.log_file),
    )
    options = Options(
        verbosity=args.verbose,
        debug=args.debug,
        # keep the order, but every cluster only once
        clusters=list(dict.fromkeys(args.clusters)),
        num_workers=args.workers,
        watch_routes=args.routes,
        watch_timeout=args.watch_timeout,
        queue=QueueSettings(
            base_delay=args.queue_base_delay,
            max_delay=args.queue_max_delay,
            qps=args.queue_qps,
            burst=args.queue_burst,
        ),
    )
    return Settings(paths=paths, options=options)


if __name__ == "__main__":
    from . import __version__

    print(create_settings(__version__, sys.argv))
