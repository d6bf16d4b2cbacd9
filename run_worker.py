import argparse
import asyncio
import logging
import socket

from automations import config
from automations.core.scheduler import Scheduler
from automations.db.database import init_db

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Start a workflow automations worker")
    parser.add_argument(
        "--worker-id",
        type=str,
        default=f"worker-{socket.gethostname()}",
        help="Identity used to tag the leases this worker takes",
    )
    parser.add_argument(
        "--interval", type=float, default=config.POLL_INTERVAL, help="Seconds between polls"
    )
    parser.add_argument(
        "--once", action="store_true", help="Run a single iteration and exit"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    init_db()
    scheduler = Scheduler(args.worker_id, interval=args.interval)
    if args.once:
        print(scheduler.run_once())
    else:
        asyncio.run(scheduler.start())
