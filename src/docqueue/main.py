"""Main entry point for docqueue: the API server and the background worker."""

import argparse
import logging
import signal
import sys
from datetime import timedelta
from typing import NoReturn

from docqueue.admission.worker import WorkerOutcome
from docqueue.config import settings
from docqueue.scheduler import SchedulerService
from docqueue.services import Services, get_services

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class DocQueueWorker:
    """Runs the queue worker, the reaper and quota rollover on a schedule."""

    def __init__(self, services: Services | None = None) -> None:
        self.services = services or get_services()
        self.scheduler = SchedulerService(
            max_workers=self.services.settings.scheduler_max_workers,
            timezone=self.services.settings.scheduler_timezone,
        )

    def _handle_queue_poll(self) -> None:
        counts = self.services.worker.drain(max_jobs=self.services.settings.queue_drain_batch)
        handled = {outcome.value: n for outcome, n in counts.items() if n and outcome is not WorkerOutcome.IDLE}
        if handled:
            logger.info(f"Queue poll handled {handled}")

    def _handle_sweep(self) -> None:
        logger.info("Running reaper sweep...")
        report = self.services.reaper.sweep()
        if not report.ok:
            logger.warning(f"Sweep finished with failed passes: {sorted(report.errors)}")

    def _handle_rollover(self) -> None:
        rolled = self.services.ledger.rollover_idle_accounts()
        logger.info(f"Rolled over {rolled} idle quota accounts")

    def start(self) -> None:
        """Register the scheduled jobs and start the scheduler."""
        logger.info("Starting docqueue worker...")

        config = self.services.settings
        self.scheduler.every(
            "queue_poll",
            self._handle_queue_poll,
            timedelta(seconds=config.queue_poll_seconds),
            run_now=True,
        )
        # Don't purge on startup
        self.scheduler.every("reaper_sweep", self._handle_sweep, timedelta(minutes=config.sweep_interval))
        self.scheduler.every("quota_rollover", self._handle_rollover, timedelta(minutes=config.rollover_interval))

        self.scheduler.start()

    def stop(self) -> None:
        """Stop all services gracefully."""
        logger.info("Stopping docqueue worker...")
        self.scheduler.shutdown(wait=True)
        self.services.close()
        logger.info("docqueue worker stopped")


def run_worker() -> NoReturn:
    worker = DocQueueWorker()

    # Handle graceful shutdown
    def signal_handler(signum: int, frame: object) -> None:
        logger.info(f"Received signal {signum}")
        worker.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        worker.start()
        logger.info("Worker running. Press Ctrl+C to stop.")
        signal.pause()  # Wait for signals
    except AttributeError:
        # signal.pause() not available on Windows
        import time
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        worker.stop()

    sys.exit(0)


def run_api() -> None:
    import uvicorn

    uvicorn.run(
        "docqueue.api.app:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(prog="docqueue", description="Document job queue service")
    parser.add_argument("command", choices=["api", "worker"], help="Process to run")
    args = parser.parse_args(argv)

    if args.command == "api":
        run_api()
    else:
        run_worker()


if __name__ == "__main__":
    main()
