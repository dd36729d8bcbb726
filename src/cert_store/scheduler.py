"""
Scheduler — periodic refresh of the base bundle (`certstore bundle watch`).

Infrastructure layer — uses APScheduler (3.x) for lightweight in-process
scheduling driven by a standard 5-field cron expression.

The scheduler wraps each refresh within a LoggingExecutionContext for
timing and success/failure logging. A failed refresh is logged and the
schedule carries on; the store is untouched by a refresh that fails.

Graceful shutdown: handles SIGINT/SIGTERM to stop the scheduler cleanly.
"""

from __future__ import annotations

import signal
import sys
from collections.abc import Callable

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from railway import LoggingExecutionContext
from railway.result import Result

from cert_store.domain.metadata import Metadata

log = structlog.get_logger()

JOB_ID = "cert_store_bundle_refresh"


def cron_trigger(cron: str) -> CronTrigger:
    """CronTrigger from a 5-field expression (minute hour dom month dow)."""
    minute, hour, dom, month, dow = cron.split()
    return CronTrigger(minute=minute, hour=hour, day=dom, month=month, day_of_week=dow)


def create_scheduler(
    refresh_fn: Callable[[], Result[Metadata]],
    cron: str = "0 3 * * *",
    run_on_startup: bool = True,
) -> BlockingScheduler:
    """
    Create a configured APScheduler that refreshes the base bundle on a cron schedule.

    Args:
        refresh_fn: Zero-argument callable returning Result[Metadata] (the wired refresh).
        cron: Standard 5-field cron expression (minute hour dom month dow).
              Default "0 3 * * *" runs daily at 03:00.
        run_on_startup: If True, refresh once immediately before entering the loop.

    Returns:
        A configured BlockingScheduler (call .start() to begin).
    """
    scheduler = BlockingScheduler()
    ctx = LoggingExecutionContext(operation="BundleRefresh")

    def _job() -> None:
        result = ctx.execute(refresh_fn)
        if result.is_success():
            record = result.value()
            log.info(
                "scheduler.job_completed",
                certificates=record.combined_bundle.cert_count,
                version=record.base_bundle.version,
            )
        else:
            log.error("scheduler.job_failed", failure=str(result.error()))

    scheduler.add_job(
        _job,
        trigger=cron_trigger(cron),
        id=JOB_ID,
        name="Base bundle refresh",
        replace_existing=True,
    )

    if run_on_startup:
        log.info("scheduler.startup_run", message="Refreshing base bundle immediately on startup")
        _job()

    _register_shutdown_signals(scheduler)

    return scheduler


def _register_shutdown_signals(scheduler: BlockingScheduler) -> None:
    """Register SIGINT and SIGTERM handlers for graceful shutdown."""

    def _shutdown(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        log.info("scheduler.shutdown_requested", signal=sig_name)
        scheduler.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
