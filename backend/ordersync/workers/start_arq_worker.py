#!/usr/bin/env python3
"""Entry point for the order sync worker (carrier selection, SendCloud pulls).

USAGE:
    python -m ordersync.workers.start_arq_worker           # long-running
    python -m ordersync.workers.start_arq_worker --burst   # drain queue, exit
    python -m ordersync.workers.start_arq_worker --check   # exit 0 if a worker is healthy

    Or directly:
    arq ordersync.workers.arq_worker.WorkerSettings
"""

import argparse
import logging
import sys

from arq import run_worker
from arq.worker import check_health

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Order sync arq worker")
    parser.add_argument("--burst", action="store_true", help="Process queued jobs then exit")
    parser.add_argument("--check", action="store_true", help="Exit 0 if a worker reported healthy recently")
    args = parser.parse_args(argv)

    from ordersync.workers.arq_worker import WorkerSettings

    if args.check:
        return check_health(WorkerSettings)

    logger.info("[ARQ] Starting order sync worker (burst=%s)", args.burst)
    run_worker(WorkerSettings, burst=args.burst)
    return 0


if __name__ == "__main__":
    sys.exit(main())
