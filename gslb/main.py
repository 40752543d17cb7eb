#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import signal
import sys
import threading
from logging import getLogger, Logger
from types import FrameType

from kubernetes import config as kube_config  # type: ignore[import]

from . import __version__
from . import log
from .admission import read_config, SelectorFilter
from .classifier import ClassificationEngine
from .controller import MemberController
from .exceptions import MKTerminate
from .log import VERBOSE
from .publisher import KeyPublisher
from .settings import create_settings, Settings
from .worker import log_sync, QueueWorker, SyncFunction
from .workqueue import ShardedQueues


def bail_out(logger: Logger, reason: str) -> None:
    logger.error("FATAL ERROR: %s", reason)
    sys.exit(1)


def create_controllers(
    settings: Settings, engine: ClassificationEngine, logger: Logger
) -> list[MemberController]:
    kubeconfig = settings.paths.kubeconfig
    controllers = []
    for cluster in settings.options.clusters:
        api_client = kube_config.new_client_from_config(
            config_file=None if kubeconfig is None else str(kubeconfig.value),
            context=cluster,
        )
        controllers.append(
            MemberController(
                cluster,
                api_client,
                engine,
                logger.getChild("controller").getChild(cluster),
                watch_routes=settings.options.watch_routes,
                watch_timeout=settings.options.watch_timeout,
                debug=settings.options.debug,
            )
        )
    return controllers


def run(settings: Settings, logger: Logger, sync: SyncFunction | None = None) -> None:
    filter_config_path = settings.paths.filter_config
    admission_filter = SelectorFilter(
        read_config(None if filter_config_path is None else filter_config_path.value),
        logger.getChild("filter"),
    )
    queues: ShardedQueues[str] = ShardedQueues(
        settings.options.num_workers, settings.options.queue
    )
    engine = ClassificationEngine(
        admission_filter,
        KeyPublisher(queues, logger.getChild("publisher")),
        logger.getChild("engine"),
        check_invariants=settings.options.debug,
    )
    workers = [
        QueueWorker(
            queue.name,
            logger.getChild("worker"),
            queue,
            sync or log_sync(logger.getChild("graph")),
        )
        for queue in queues
    ]
    controllers = create_controllers(settings, engine, logger)

    terminate_main_event = threading.Event()

    def signal_handler(signum: int, stack_frame: FrameType | None) -> None:
        logger.log(VERBOSE, "Got signal %d.", signum)
        raise MKTerminate(signum)

    signal.signal(signal.SIGHUP, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    for worker in workers:
        worker.start()
    for controller in controllers:
        controller.start()

    try:
        while not terminate_main_event.is_set():
            terminate_main_event.wait(1)
    except MKTerminate:
        pass
    finally:
        logger.log(VERBOSE, "Stopping watches")
        for controller in controllers:
            controller.terminate()
        for controller in controllers:
            controller.join(timeout=5)
        logger.log(VERBOSE, "Stopping workers")
        queues.shut_down()
        for worker in workers:
            worker.terminate()
        for worker in workers:
            worker.join(timeout=5)


def main() -> None:
    """Main entry and option parsing."""
    logger = getLogger("gslb")
    settings = create_settings(__version__, sys.argv)

    try:
        log.setup_logging_handler(sys.stderr)
        log.logger.setLevel(log.verbosity_to_log_level(settings.options.verbosity))
        if settings.paths.log_file is not None:
            settings.paths.log_file.value.parent.mkdir(parents=True, exist_ok=True)
            log.open_log(settings.paths.log_file.value)

        logger.info("-" * 65)
        logger.info(
            "gslb ingestion version %s starting for clusters %s",
            __version__,
            ", ".join(settings.options.clusters),
        )
        run(settings, logger)
        logger.info("Successfully shut down.")
        sys.exit(0)

    except Exception as e:
        if settings.options.debug:
            raise
        bail_out(logger, str(e))


if __name__ == "__main__":
    main()
