"""Run the campaign scheduler without the HTTP API.

Usage:
    pushcast-worker                  # uses DATABASE_URL etc. from env / .env
    python -m pushcast.worker

Any number of workers may poll the same database; the claim on each
campaign keeps every dispatch single.  SIGINT / SIGTERM stop the worker
after the dispatch in progress finishes.
"""
from __future__ import annotations

import logging
import signal
import threading

from pushcast.core.logging import setup_logging
from pushcast.core.settings import get_settings
from pushcast.scheduling.scheduler import build_scheduler

logger = logging.getLogger(__name__)


def main() -> None:
    setup_logging()
    settings = get_settings()
    scheduler = build_scheduler(settings)
    stopping = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.info("Received signal %d; stopping", signum)
        stopping.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    scheduler.start()
    logger.info("%s worker started (%s)", settings.app_name, settings.app_env)
    stopping.wait()
    scheduler.stop(wait=True)


if __name__ == "__main__":
    main()
