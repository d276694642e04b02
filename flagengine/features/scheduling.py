"""
Scheduled work for the flag engine.

Override expiry and periodic remote refresh run as coroutine jobs. Inside a
running event loop they go to an AsyncIOScheduler bound to that loop, so they
never race with synchronous flag reads and writes. Outside any loop (plain
scripts, synchronous callers) they go to a BackgroundScheduler and each job
runs to completion on a worker thread. Every job is exposed as a
ScheduledHandle whose cancel() is idempotent.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence
from uuid import uuid4

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler

logger = logging.getLogger(__name__)

JobFunc = Callable[..., Awaitable[Any]]


def _run_coroutine_job(func: JobFunc, *args: Any) -> Any:
    """Run a coroutine job on a BackgroundScheduler worker thread."""
    return asyncio.run(func(*args))


class ScheduledHandle:
    """
    Cancellable reference to a scheduled job.

    Cancelling a job that already fired or was already cancelled is a no-op.
    """

    def __init__(self, scheduler: BaseScheduler, job_id: str, run_at: Optional[datetime] = None):
        self._scheduler = scheduler
        self.job_id = job_id
        self.run_at = run_at
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        try:
            self._scheduler.remove_job(self.job_id)
        except JobLookupError:
            # Already fired (one-shot jobs are removed after running)
            pass

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"<ScheduledHandle {self.job_id} {state}>"


class LoopScheduler:
    """
    Lazily started schedulers owned by one engine instance.

    The loop scheduler binds to the event loop running when a job is
    scheduled, and is rebuilt if that loop has since been closed. The thread
    scheduler is started the first time a job is scheduled with no loop
    running. The two are independent, so jobs on one survive a restart of
    the other.
    """

    def __init__(self):
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread_scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return any(
            scheduler is not None and scheduler.running
            for scheduler in (self._scheduler, self._thread_scheduler)
        )

    def _ensure_started(self) -> BaseScheduler:
        """
        Return a started scheduler for the calling context.

        Raises:
            RuntimeError: If the scheduler thread cannot be started
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return self._ensure_thread_scheduler()

        if self._scheduler is not None and self._loop is loop and self._scheduler.running:
            return self._scheduler

        self._stop_loop_scheduler()
        scheduler = AsyncIOScheduler(event_loop=loop, timezone=timezone.utc)
        scheduler.start()
        self._scheduler = scheduler
        self._loop = loop
        logger.debug("Flag scheduler started on event loop")
        return scheduler

    def _ensure_thread_scheduler(self) -> BackgroundScheduler:
        if self._thread_scheduler is not None and self._thread_scheduler.running:
            return self._thread_scheduler

        scheduler = BackgroundScheduler(timezone=timezone.utc)
        scheduler.start()
        self._thread_scheduler = scheduler
        logger.debug("Flag scheduler started on background thread")
        return scheduler

    def _add_job(self, func: JobFunc, args: Sequence[Any], **trigger_args) -> BaseScheduler:
        scheduler = self._ensure_started()
        if isinstance(scheduler, BackgroundScheduler):
            scheduler.add_job(_run_coroutine_job, args=[func, *args], **trigger_args)
        else:
            scheduler.add_job(func, args=list(args), **trigger_args)
        return scheduler

    def call_later(
        self,
        delay_seconds: float,
        func: JobFunc,
        args: Sequence[Any] = (),
        job_id: Optional[str] = None,
    ) -> ScheduledHandle:
        """
        Run a coroutine function once after delay_seconds.

        Raises:
            RuntimeError: If the scheduler cannot be started
        """
        run_at = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        job_id = job_id or f"once-{uuid4().hex}"
        scheduler = self._add_job(
            func,
            args,
            trigger="date",
            run_date=run_at,
            id=job_id,
            misfire_grace_time=None,  # run no matter how late
        )
        return ScheduledHandle(scheduler, job_id, run_at)

    def call_every(self, interval_seconds: float, func: JobFunc, job_id: str) -> ScheduledHandle:
        """
        Run a coroutine function every interval_seconds.

        Raises:
            RuntimeError: If the scheduler cannot be started
        """
        scheduler = self._add_job(
            func,
            (),
            trigger="interval",
            seconds=interval_seconds,
            id=job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        return ScheduledHandle(scheduler, job_id)

    def shutdown(self) -> None:
        """Stop both schedulers; pending jobs are dropped."""
        self._stop_loop_scheduler()

        scheduler, self._thread_scheduler = self._thread_scheduler, None
        if scheduler is not None:
            scheduler.remove_all_jobs()
            if scheduler.running:
                scheduler.shutdown(wait=False)
            logger.debug("Flag background scheduler stopped")

    def _stop_loop_scheduler(self) -> None:
        scheduler, loop = self._scheduler, self._loop
        self._scheduler = None
        self._loop = None
        if scheduler is None:
            return
        scheduler.remove_all_jobs()
        if scheduler.running and loop is not None and not loop.is_closed():
            scheduler.shutdown(wait=False)
        logger.debug("Flag scheduler stopped")
