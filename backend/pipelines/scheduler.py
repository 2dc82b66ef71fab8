"""Fixed-interval driver for the creation and resolution jobs.

Jobs run sequentially on one thread. The clock and the sleep are behind a
:class:`Ticker` so tests can step the scheduler without waiting on wall time.
"""

from __future__ import annotations

import argparse
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from loguru import logger

from app.core.config import get_settings


class Ticker(Protocol):
    def now(self) -> datetime:
        ...

    def sleep(self, seconds: float) -> None:
        ...


class SystemTicker:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


@dataclass(slots=True)
class ScheduledJob:
    name: str
    interval: timedelta
    run: Callable[[], Any]
    next_run: datetime | None = None
    runs: int = 0
    failures: int = 0


@dataclass(slots=True)
class Scheduler:
    ticker: Ticker = field(default_factory=SystemTicker)
    jobs: list[ScheduledJob] = field(default_factory=list)

    def add_job(
        self,
        name: str,
        interval: timedelta,
        run: Callable[[], Any],
        *,
        run_immediately: bool = True,
    ) -> ScheduledJob:
        if interval <= timedelta(0):
            raise ValueError(f"Interval for {name} must be positive")
        now = self.ticker.now()
        job = ScheduledJob(
            name=name,
            interval=interval,
            run=run,
            next_run=now if run_immediately else now + interval,
        )
        self.jobs.append(job)
        return job

    def run_pending(self) -> list[str]:
        """Run every job that is due once; returns the names that ran."""
        ran: list[str] = []
        for job in self.jobs:
            now = self.ticker.now()
            if job.next_run is not None and job.next_run > now:
                continue
            logger.info("Running scheduled job {}", job.name)
            try:
                job.run()
            except Exception:  # noqa: BLE001 - the loop must survive a failing job
                job.failures += 1
                logger.exception("Scheduled job {} failed", job.name)
            job.runs += 1
            job.next_run = now + job.interval
            ran.append(job.name)
        return ran

    def seconds_until_next(self) -> float:
        if not self.jobs:
            return 0.0
        now = self.ticker.now()
        upcoming = min(job.next_run or now for job in self.jobs)
        return max((upcoming - now).total_seconds(), 0.0)

    def run_forever(self, max_iterations: int | None = None) -> None:
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            self.run_pending()
            iterations += 1
            if max_iterations is not None and iterations >= max_iterations:
                break
            self.ticker.sleep(self.seconds_until_next())


def build_default_scheduler(ticker: Ticker | None = None) -> Scheduler:
    from .market_creation_run import run_creation_job
    from .resolution_run import run_resolution_job

    settings = get_settings()
    scheduler = Scheduler(ticker=ticker or SystemTicker())
    scheduler.add_job(
        "automated-markets",
        timedelta(minutes=settings.creation_interval_minutes),
        run_creation_job,
    )
    scheduler.add_job(
        "automated-resolutions",
        timedelta(minutes=settings.resolution_interval_minutes),
        run_resolution_job,
    )
    return scheduler


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the automated market jobs on fixed intervals")
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Stop after this many scheduler steps (runs forever by default)",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    scheduler = build_default_scheduler()
    logger.info(
        "Starting scheduler with jobs: {}",
        ", ".join(f"{job.name} every {job.interval}" for job in scheduler.jobs),
    )
    scheduler.run_forever(max_iterations=args.max_iterations)


if __name__ == "__main__":
    main()
