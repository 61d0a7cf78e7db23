"""
Entry point: operate the scheduled-post delivery queue.

Usage::

    python run.py sweep                 # one process_queue() pass
    python run.py worker                # sweep every sweep_interval_seconds
                                        # (SIGUSR1 resets the circuit breakers)
    python run.py metrics               # print queue metrics as JSON
    python run.py retry <job_id>        # re-arm one failed job
    python run.py retry-all [--limit N] # reset failed jobs to due-now
    python run.py cancel <job_id> --user <user_id>
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

from postqueue.config import Settings, get_settings, validate_env  # noqa: E402
from postqueue.database import SupabaseDB  # noqa: E402
from postqueue.exceptions import ConfigurationError  # noqa: E402
from postqueue.logging.event_logger import EventLogger  # noqa: E402
from postqueue.resilience.circuit_breaker import CircuitBreakerRegistry  # noqa: E402
from postqueue.resilience.error_monitor import ErrorMonitor  # noqa: E402
from postqueue.resilience.resilient_publisher import ResilientPublisher  # noqa: E402
from postqueue.resilience.retry import RetryConfig  # noqa: E402
from postqueue.scheduling.job_queue import JobQueue  # noqa: E402
from postqueue.scheduling.publishing_scheduler import PublishingScheduler  # noqa: E402
from postqueue.tools.x_publisher import XPublisher  # noqa: E402

logger = logging.getLogger("run")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="postqueue", description="Scheduled post delivery queue")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("sweep", help="Process due jobs once")
    commands.add_parser("worker", help="Process due jobs in a loop")
    commands.add_parser("metrics", help="Print queue metrics")

    retry = commands.add_parser("retry", help="Re-arm one failed job")
    retry.add_argument("job_id")

    retry_all = commands.add_parser("retry-all", help="Reset failed jobs to due now")
    retry_all.add_argument("--limit", type=int, default=None)

    cancel = commands.add_parser("cancel", help="Cancel a job")
    cancel.add_argument("job_id")
    cancel.add_argument("--user", required=True, dest="user_id")

    return parser


async def build_queue(settings: Settings, breakers: CircuitBreakerRegistry) -> JobQueue:
    """Wire the job queue from settings and environment."""
    db = await SupabaseDB.create()
    event_logger = EventLogger(log_dir=settings.log_dir)

    publisher = ResilientPublisher(
        XPublisher(base_url=settings.x_api_base_url, timeout=settings.x_api_timeout_seconds),
        breaker=breakers.get_or_create(settings.publisher_service, settings.resilience),
        retry_config=RetryConfig.from_settings(settings.resilience),
        service=settings.publisher_service,
        monitor=ErrorMonitor(),
    )
    return JobQueue(db, publisher, config=settings.queue, event_logger=event_logger)


def install_breaker_reset(scheduler: PublishingScheduler) -> None:
    """``kill -USR1 <worker pid>`` forces every circuit breaker back to CLOSED."""
    if not hasattr(signal, "SIGUSR1"):
        logger.warning("SIGUSR1 not available; breaker reset signal disabled")
        return
    asyncio.get_running_loop().add_signal_handler(signal.SIGUSR1, scheduler.reset_breakers)


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
        validate_env(strict=True)
    except ConfigurationError as exc:
        # Logging is not configured yet when settings fail to load
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    configure_logging(settings)
    breakers = CircuitBreakerRegistry.from_settings(settings.resilience)
    queue = await build_queue(settings, breakers)

    if args.command == "sweep":
        result = await queue.process_queue()
        for job_result in result.results:
            logger.info("%s %s %s", job_result.job_id, job_result.outcome.value, job_result.message or "")
        logger.info("Processed %d jobs", result.processed)
        return 0

    if args.command == "worker":
        scheduler = PublishingScheduler(queue, event_logger=queue.event_logger, breakers=breakers)
        install_breaker_reset(scheduler)
        healthy = await scheduler.start()
        return 0 if healthy else 1

    if args.command == "metrics":
        metrics = await queue.get_queue_metrics()
        print(json.dumps(metrics.to_dict(), indent=2))
        return 0

    if args.command == "retry":
        outcome = await queue.retry_failed_job(args.job_id)
    elif args.command == "retry-all":
        reset_ids = await queue.retry_failed_jobs(retry_all=True, limit=args.limit)
        logger.info("Reset %d failed jobs", len(reset_ids))
        return 0
    else:
        outcome = await queue.cancel_job(args.job_id, args.user_id)

    if not outcome.success:
        logger.error("%s %s failed: %s", args.command, args.job_id, outcome.error)
        return 1
    logger.info("%s %s ok (status=%s)", args.command, args.job_id, outcome.job.status.value)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
