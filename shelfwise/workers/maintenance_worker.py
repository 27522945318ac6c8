"""
Nightly maintenance worker.

Runs the fine sweep, the restriction sweep and the due-date reminders at a
scheduled hour (default 2 AM). run_maintenance_once() can also be driven by
cron or by the admin job endpoints.
"""
import asyncio
import signal
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional

import structlog

from shelfwise.config import get_settings
from shelfwise.database.connection import init_db
from shelfwise.monitoring.logging import setup_logging
from shelfwise.services import LendingServices, build_services

logger = structlog.get_logger(__name__)


async def run_maintenance_once(
    services: LendingServices, as_of: Optional[date] = None
) -> Dict[str, Any]:
    """
    Run every maintenance job once.

    A failing job is logged and reported; the remaining jobs still run.

    Args:
        services: Wired lending components
        as_of: Day to evaluate (defaults to today)

    Returns:
        Dict[str, Any]: Per-job result, "skipped" or {"error": ...}
    """
    flags = services.flags
    results: Dict[str, Any] = {}

    if not flags.background_jobs_enabled:
        logger.warning("maintenance_skipped", reason="background_jobs_disabled")
        return {"fines": "skipped", "restrictions": "skipped", "due_notifications": "skipped"}

    logger.info("maintenance_started", as_of=as_of.isoformat() if as_of else None)

    jobs = [
        ("fines", flags.overdue_detection_enabled, lambda: services.fines.run_sweep(as_of)),
        ("restrictions", True, services.restrictions.run_sweep),
        (
            "due_notifications",
            flags.notifications_enabled and flags.overdue_detection_enabled,
            lambda: services.notifications.process_due_notifications(as_of),
        ),
    ]

    for name, enabled, job in jobs:
        if not enabled:
            results[name] = "skipped"
            continue
        try:
            results[name] = await job()
        except Exception as e:
            logger.error("maintenance_job_failed", job=name, error=str(e))
            results[name] = {"error": str(e)}

    failed = [
        name for name, result in results.items() if isinstance(result, dict) and "error" in result
    ]
    logger.info("maintenance_completed", failed_jobs=failed)
    return results


def calculate_next_run_time(target_hour: int = 2, now: Optional[datetime] = None) -> float:
    """
    Calculate seconds until next scheduled run.

    Args:
        target_hour: Hour of day to run (24-hour format)
        now: Current time (defaults to datetime.now())

    Returns:
        float: Seconds until next run
    """
    now = now or datetime.now()
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # Past today's slot: schedule for tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()

    logger.info(
        "maintenance_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )

    return seconds_until


class MaintenanceWorker:
    """
    Scheduling loop around run_maintenance_once().

    SIGINT/SIGTERM stop the loop between jobs; a running job is allowed to
    finish.
    """

    def __init__(self, services: LendingServices, target_hour: int = 2):
        self.services = services
        self.target_hour = target_hour
        self.running = False

    def stop(self, *_: Any) -> None:
        logger.info("maintenance_worker_shutdown_signal_received")
        self.running = False

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self.stop)
        signal.signal(signal.SIGTERM, self.stop)

    async def run(self) -> None:
        """Sleep until the scheduled hour, run maintenance, repeat."""
        self.running = True
        logger.info("maintenance_worker_starting", target_hour=self.target_hour)

        try:
            while self.running:
                seconds_until = calculate_next_run_time(self.target_hour)

                # Wake up every minute to notice a shutdown signal
                while seconds_until > 0 and self.running:
                    sleep_time = min(seconds_until, 60)
                    await asyncio.sleep(sleep_time)
                    seconds_until -= sleep_time

                if not self.running:
                    break

                await run_maintenance_once(self.services)
        finally:
            logger.info("maintenance_worker_stopped")


async def start_maintenance_worker(target_hour: Optional[int] = None, once: bool = False) -> None:
    """
    Build services and run the worker.

    Args:
        target_hour: Hour of day to run (defaults to settings.maintenance_hour)
        once: Run the jobs a single time and exit
    """
    settings = get_settings()
    services = build_services(settings)
    setup_logging(settings, services.flags)

    try:
        await init_db(services.engine)
        if once:
            await run_maintenance_once(services)
            return

        worker = MaintenanceWorker(
            services,
            target_hour=settings.maintenance_hour if target_hour is None else target_hour,
        )
        worker.install_signal_handlers()
        await worker.run()
    finally:
        await services.close()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Shelfwise maintenance worker")
    parser.add_argument(
        "--hour", type=int, default=None, help="Hour of day to run maintenance (0-23)"
    )
    parser.add_argument(
        "--once", action="store_true", help="Run all jobs once and exit (for cron)"
    )
    args = parser.parse_args()

    asyncio.run(start_maintenance_worker(target_hour=args.hour, once=args.once))


if __name__ == "__main__":
    main()
