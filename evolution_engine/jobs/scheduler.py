"""
Job scheduler for the evolution engine.

Each registered job runs on its own cadence, either a fixed interval or once a
day at a wall-clock time. Every run goes through ``HealthMonitor.call`` under
the job's name, so a job that keeps failing opens its own circuit and is
skipped until its cool-down passes, without affecting the other jobs.

Two entry points run the same wrapped function:

    tick(name)     scheduled path; failures are logged and swallowed so the
                   loop continues with the next slot
    trigger(name)  administrative path; failures propagate to the caller

Shutdown goes through a ``CancellationToken``. Jobs receive the token and
check it between items, so ``stop()`` lets the item in progress finish.

Usage:
    scheduler = Scheduler(health)
    scheduler.register('batch_analysis', run_batch, interval=timedelta(minutes=10))
    scheduler.start()
    ...
    await scheduler.stop()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from evolution_engine.core.errors import CircuitOpenError, NotFound
from evolution_engine.services.health_monitor import HealthMonitor


logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative stop signal shared by the scheduler and its jobs."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return False
        return True


JobFunction = Callable[[CancellationToken], Awaitable[Any]]


@dataclass
class ScheduledJob:
    name: str
    fn: JobFunction
    interval: Optional[timedelta] = None
    daily_at: Optional[time] = None
    initial_delay: timedelta = timedelta(0)
    run_count: int = 0
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_result: Any = field(default=None, repr=False)

    def seconds_until_next(self, now: datetime) -> float:
        """Delay before the next run, measured from ``now`` (local time)."""
        if self.daily_at is not None:
            target = datetime.combine(now.date(), self.daily_at)
            if target <= now:
                target += timedelta(days=1)
            return (target - now).total_seconds()

        if self.last_started_at is None:
            return self.initial_delay.total_seconds()
        due = self.last_started_at + self.interval
        return max(0.0, (due - now).total_seconds())


class Scheduler:
    """
    Runs registered jobs on independent cadences.

    Args:
        health: Every run is wrapped as ``health.call(job_name, ...)``.
        clock: Local wall-clock time; tests pass a fixed clock.
    """

    def __init__(self, health: HealthMonitor, clock: Callable[[], datetime] = datetime.now):
        self._health = health
        self._clock = clock
        self._jobs: Dict[str, ScheduledJob] = {}
        self._tasks: List[asyncio.Task] = []
        self._token = CancellationToken()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def token(self) -> CancellationToken:
        return self._token

    def register(
        self,
        name: str,
        fn: JobFunction,
        interval: Optional[timedelta] = None,
        daily_at: Optional[time] = None,
        initial_delay: timedelta = timedelta(0),
    ) -> ScheduledJob:
        """
        Register a job with exactly one of ``interval`` or ``daily_at``.

        Raises:
            ValueError: Neither or both cadences given, or a duplicate name.
        """
        if (interval is None) == (daily_at is None):
            raise ValueError(f"Job {name!r} needs exactly one of interval or daily_at")
        if name in self._jobs:
            raise ValueError(f"Job {name!r} already registered")

        job = ScheduledJob(name=name, fn=fn, interval=interval, daily_at=daily_at, initial_delay=initial_delay)
        self._jobs[name] = job
        return job

    def get_job(self, name: str) -> ScheduledJob:
        job = self._jobs.get(name)
        if job is None:
            raise NotFound('Job', name)
        return job

    def list_jobs(self) -> List[ScheduledJob]:
        return [self._jobs[name] for name in sorted(self._jobs)]

    # =========================================================================
    # Running Jobs
    # =========================================================================

    async def _run(self, job: ScheduledJob) -> Any:
        job.last_started_at = self._clock()
        job.run_count += 1
        try:
            result = await self._health.call(job.name, lambda: job.fn(self._token))
        except Exception as e:
            job.last_error = f"{type(e).__name__}: {e}"
            raise
        finally:
            job.last_finished_at = self._clock()

        job.last_error = None
        job.last_result = result
        return result

    async def tick(self, name: str) -> Any:
        """
        Run one scheduled slot of ``name``. Never raises for job failures.

        Returns:
            The job's result, or None if it failed or was short-circuited.
        """
        job = self.get_job(name)
        try:
            return await self._run(job)
        except CircuitOpenError as e:
            logger.warning("Job %s skipped: %s", name, e)
        except Exception:
            logger.exception("Job %s failed", name)
        return None

    async def trigger(self, name: str) -> Any:
        """
        Run ``name`` now on behalf of an operator. Failures propagate.

        Raises:
            NotFound: Unknown job name.
        """
        job = self.get_job(name)
        logger.info("Job %s triggered manually", name)
        return await self._run(job)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start one loop per job on the running event loop."""
        if self._tasks:
            return
        if self._token.cancelled:
            self._token = CancellationToken()
        for job in self.list_jobs():
            self._tasks.append(asyncio.create_task(self._loop(job), name=f"job:{job.name}"))
        logger.info("Scheduler started with %d job(s)", len(self._tasks))

    async def stop(self) -> None:
        """Signal cancellation and wait for the in-flight items to finish."""
        self._token.cancel()
        tasks, self._tasks = self._tasks, []
        if tasks:
            await asyncio.gather(*tasks)
        logger.info("Scheduler stopped")

    async def _loop(self, job: ScheduledJob) -> None:
        while not self._token.cancelled:
            delay = job.seconds_until_next(self._clock())
            if await self._token.wait(delay):
                break
            await self.tick(job.name)
