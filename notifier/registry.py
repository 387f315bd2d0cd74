"""
In-memory schedule registry backed by APScheduler.

Holds at most one daily cron job per job id. Jobs are registered paused
and toggled with start/stop; remove disposes the APScheduler job. The
registry is never persisted: it is rebuilt from the durable job store on
startup (see NotificationService.reconcile_on_startup).
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Callable, Dict, Optional, Set, Union

from apscheduler.events import (
    EVENT_JOB_EXECUTED,
    EVENT_JOB_ERROR,
    EVENT_JOB_MISSED,
    EVENT_JOB_MAX_INSTANCES
)
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from notifier.config import DEFAULT_TIMEZONE
from notifier.errors import InvalidTime, JobNotFound
from notifier.timerules import daily_trigger, format_time_of_day, resolve_timezone, validate_time

logger = logging.getLogger(__name__)


@dataclass
class ScheduleHandle:
    """Live timer bound to a daily hour:minute rule."""
    job_id: str
    hour: int
    minute: int
    timezone: tzinfo
    running: bool = False

    @property
    def time(self) -> str:
        return format_time_of_day(self.hour, self.minute)


class KeyedLock:
    """
    Re-entrant lock per key.

    Holders of different keys never block each other. A key's lock is
    dropped once no thread holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}  # key -> [RLock, holders + waiters]

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class ScheduleRegistry:
    """
    Maps job ids to paused/running daily APScheduler jobs.

    Fires run on the scheduler's thread pool, so callbacks of different jobs
    run concurrently. Stopping or removing a job prevents future fires but
    does not interrupt one already executing.
    """

    def __init__(
        self,
        timezone: Union[str, tzinfo] = DEFAULT_TIMEZONE,
        max_workers: int = 5,
        misfire_grace_time: int = 300,
        scheduler: Optional[BackgroundScheduler] = None
    ):
        """
        Initialize the registry.

        Args:
            timezone: Zone in which hour:minute rules are evaluated
            max_workers: Maximum number of concurrent fires
            misfire_grace_time: Seconds a late fire is still executed
            scheduler: Pre-built APScheduler instance (mainly for tests)
        """
        self.timezone = resolve_timezone(timezone)
        self._handles: Dict[str, ScheduleHandle] = {}
        self._lock = threading.RLock()

        if scheduler is None:
            scheduler = BackgroundScheduler(
                jobstores={'default': MemoryJobStore()},
                executors={'default': ThreadPoolExecutor(max_workers)},
                job_defaults={
                    'coalesce': True,  # Combine multiple missed runs into one
                    'max_instances': 1,  # Never overlap fires of the same job
                    'misfire_grace_time': misfire_grace_time
                },
                timezone=self.timezone
            )
        self.scheduler = scheduler

        self._setup_event_listeners()

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_executed_listener(event):
            logger.debug(f"Job '{event.job_id}' fired (scheduled for {event.scheduled_run_time})")

        def job_error_listener(event):
            logger.error(f"Job '{event.job_id}' raised exception: {event.exception}\n{event.traceback}")

        def job_missed_listener(event):
            logger.warning(f"Job '{event.job_id}' missed scheduled run time {event.scheduled_run_time}")

        def job_max_instances_listener(event):
            logger.warning(f"Job '{event.job_id}' skipped: previous fire still running")

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
        self.scheduler.add_listener(job_max_instances_listener, EVENT_JOB_MAX_INSTANCES)

    def register(self, job_id: str, hour: int, minute: int, on_fire: Callable[[], None]) -> ScheduleHandle:
        """
        Register a paused daily job, replacing any existing one for job_id.

        Args:
            job_id: Job identifier
            hour: Hour of day (0-23)
            minute: Minute (0-59)
            on_fire: Callable invoked (without arguments) on every fire

        Returns:
            The new, stopped handle

        Raises:
            InvalidTime: If hour/minute are out of range
        """
        if not validate_time(hour, minute):
            raise InvalidTime(f"Invalid time of day: {hour}:{minute}")

        with self._lock:
            if job_id in self._handles:
                logger.debug(f"Replacing existing schedule for '{job_id}'")
                self._dispose(job_id)

            self.scheduler.add_job(
                on_fire,
                trigger=daily_trigger(hour, minute, self.timezone),
                id=job_id,
                name=job_id,
                next_run_time=None,  # added paused
                replace_existing=True
            )
            handle = ScheduleHandle(job_id=job_id, hour=hour, minute=minute, timezone=self.timezone)
            self._handles[job_id] = handle

        logger.info(f"Registered '{job_id}' daily at {handle.time} ({self.timezone})")
        return handle

    def start(self, job_id: str) -> bool:
        """Resume a job. Returns False if no handle exists."""
        with self._lock:
            handle = self._handles.get(job_id)
            if handle is None:
                logger.warning(f"Cannot start '{job_id}': not registered")
                return False
            if not handle.running:
                self.scheduler.resume_job(job_id)
                handle.running = True
                logger.info(f"Started '{job_id}' (next run: {self.next_run_time(job_id)})")
            return True

    def stop(self, job_id: str) -> bool:
        """Pause a job. Returns False if no handle exists."""
        with self._lock:
            handle = self._handles.get(job_id)
            if handle is None:
                logger.warning(f"Cannot stop '{job_id}': not registered")
                return False
            if handle.running:
                self.scheduler.pause_job(job_id)
                handle.running = False
                logger.info(f"Stopped '{job_id}'")
            return True

    def remove(self, job_id: str) -> bool:
        """Stop and dispose a job. Returns False if no handle exists."""
        with self._lock:
            if job_id not in self._handles:
                return False
            self._dispose(job_id)
        logger.info(f"Removed '{job_id}'")
        return True

    def _dispose(self, job_id: str):
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            logger.debug(f"Job '{job_id}' was already gone from the scheduler")
        self._handles.pop(job_id, None)

    def get_handle(self, job_id: str) -> Optional[ScheduleHandle]:
        with self._lock:
            return self._handles.get(job_id)

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            handle = self._handles.get(job_id)
            return bool(handle and handle.running)

    def job_ids(self) -> Set[str]:
        with self._lock:
            return set(self._handles)

    def list_active_job_ids(self) -> Set[str]:
        """Job ids whose handle is currently running."""
        with self._lock:
            return {job_id for job_id, handle in self._handles.items() if handle.running}

    def next_run_time(self, job_id: str) -> Optional[datetime]:
        """
        Next fire instant, or None while the job is stopped.

        Raises:
            JobNotFound: If job_id is not registered
        """
        if self.get_handle(job_id) is None:
            raise JobNotFound(f"No schedule registered for '{job_id}'")
        job = self.scheduler.get_job(job_id)
        return job.next_run_time if job else None

    def startup(self):
        """Start the scheduler thread. Handles registered earlier become live."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info(f"Scheduler started with {len(self._handles)} handle(s)")

    def shutdown(self, wait: bool = True):
        """
        Stop the scheduler thread.

        Args:
            wait: If True, wait for in-flight fires to complete
        """
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
