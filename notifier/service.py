"""
Notification job lifecycle.

NotificationService is the caller-facing API: it keeps the in-memory
ScheduleRegistry and the durable JobStore in step on every mutating call,
and rebuilds the registry from the durable store on startup. Every
operation returns an OperationResult instead of raising, so callers (HTTP
handlers, the CLI) always get an explicit outcome.

Consistency rules:
- schedule_daily registers the job paused and stores it as active; start
  (or activate) makes it fire. reconcile_on_startup starts every durable
  active job, so a scheduled job is running after the next restart either way.
- start marks the durable row active, stop marks it inactive, so the
  durable flag follows the last explicit start/stop.
- When the durable store fails after the registry was changed, the registry
  change is kept and STORE_UNAVAILABLE is returned.
"""

import functools
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from notifier.config import NotifierConfig
from notifier.errors import DurableStoreUnavailable
from notifier.jobs import DeliveryHistory, NotificationSender, build_sender, deliver_digest
from notifier.models import OperationResult, Outcome, TimeOfDay
from notifier.registry import KeyedLock, ScheduleRegistry
from notifier.stores import JobStore, SQLNotificationStore, TaskStore, ensure_sqlite_directory
from notifier.timerules import (
    Clock,
    SystemClock,
    format_time_of_day,
    is_job_id,
    job_id_for,
    normalize_recipient,
    recipient_for_job_id,
    resolve_timezone,
    validate_time
)

logger = logging.getLogger(__name__)

# Used when a durable row carries an unusable time
DEFAULT_TIME = TimeOfDay(8, 0)


class NotificationService:
    """
    Daily digest scheduling service.

    Lifecycle calls for the same job are serialised; calls for different
    jobs run concurrently.
    """

    def __init__(
        self,
        registry: ScheduleRegistry,
        job_store: JobStore,
        task_store: TaskStore,
        sender: NotificationSender,
        history: Optional[DeliveryHistory] = None,
        clock: Optional[Clock] = None,
        timezone=None
    ):
        """
        Initialize the service.

        Args:
            registry: Schedule registry holding the live timers
            job_store: Durable notification job store
            task_store: Source of the tasks included in digests
            sender: Notification sender used for fires and test sends
            history: Optional delivery history
            clock: Clock defining "today" (defaults to the system clock)
            timezone: Zone defining "today" (defaults to the registry's zone)
        """
        self.registry = registry
        self.job_store = job_store
        self.task_store = task_store
        self.sender = sender
        self.history = history
        self.clock = clock or SystemClock()
        self.timezone = resolve_timezone(timezone) if timezone else registry.timezone
        self._locks = KeyedLock()

    @classmethod
    def from_config(cls, config: NotifierConfig) -> 'NotificationService':
        """Build a service wired to the SQL store and sender named in config."""
        ensure_sqlite_directory(config.database_url)
        store = SQLNotificationStore(config.database_url)
        registry = ScheduleRegistry(
            timezone=config.timezone,
            max_workers=config.max_workers,
            misfire_grace_time=config.misfire_grace_time
        )
        history = DeliveryHistory(Path(config.history.file).expanduser(), config.history.max_entries)
        return cls(
            registry=registry,
            job_store=store,
            task_store=store,
            sender=build_sender(config.sender),
            history=history
        )

    def _resolve(self, recipient_or_job_id) -> Optional[Tuple[str, str]]:
        """Return (job_id, recipient), or None for unusable input."""
        if not isinstance(recipient_or_job_id, str) or not recipient_or_job_id.strip():
            return None
        value = recipient_or_job_id.strip()
        if is_job_id(value):
            recipient = normalize_recipient(recipient_for_job_id(value))
        else:
            recipient = normalize_recipient(value)
        return job_id_for(recipient), recipient

    def _fire(self, recipient: str, job_id: str):
        deliver_digest(
            recipient,
            self.task_store,
            self.sender,
            self.timezone,
            clock=self.clock,
            kind='scheduled',
            job_id=job_id,
            history=self.history
        )

    def _register(self, recipient: str, job_id: str, hour: int, minute: int):
        self.registry.register(job_id, hour, minute, functools.partial(self._fire, recipient, job_id))

    def schedule_daily(self, recipient: str, hour: int, minute: int) -> OperationResult:
        """
        Register (or re-time) the daily digest for recipient.

        The job is left stopped; call start() or use activate().

        Returns:
            OperationResult with the job id
        """
        if not isinstance(recipient, str) or not recipient.strip():
            return OperationResult.failure(Outcome.INVALID_INPUT, message="Recipient is required")
        if is_job_id(recipient.strip()):
            return OperationResult.failure(
                Outcome.INVALID_INPUT, message=f"Recipient looks like a job id: {recipient}"
            )
        if not validate_time(hour, minute):
            return OperationResult.failure(
                Outcome.INVALID_INPUT,
                message=f"Invalid time {hour}:{minute}. Use 24-hour time (00:00 - 23:59)"
            )

        recipient = normalize_recipient(recipient)
        job_id = job_id_for(recipient)
        time_text = format_time_of_day(hour, minute)

        with self._locks.hold(job_id):
            self._register(recipient, job_id, hour, minute)
            try:
                self.job_store.upsert_job(recipient, hour, minute, is_active=True)
            except DurableStoreUnavailable as e:
                logger.error(f"Scheduled '{job_id}' in memory but could not save it: {e}")
                return OperationResult.failure(Outcome.STORE_UNAVAILABLE, job_id, str(e))

        logger.info(f"Scheduled daily digest for {recipient} at {time_text}")
        return OperationResult.success(job_id, f"Daily digest for {recipient} scheduled at {time_text}")

    def start(self, recipient_or_job_id: str) -> OperationResult:
        """Start firing a registered job and mark it active."""
        resolved = self._resolve(recipient_or_job_id)
        if resolved is None:
            return OperationResult.failure(Outcome.INVALID_INPUT, message="Recipient or job id is required")
        job_id, recipient = resolved

        with self._locks.hold(job_id):
            if not self.registry.start(job_id):
                return OperationResult.failure(Outcome.NOT_FOUND, job_id, f"No notification registered for {recipient}")
            try:
                self.job_store.set_active(recipient, True)
            except DurableStoreUnavailable as e:
                logger.error(f"Started '{job_id}' but could not mark it active: {e}")
                return OperationResult.failure(Outcome.STORE_UNAVAILABLE, job_id, str(e))

        return OperationResult.success(job_id, f"Notification started for {recipient}")

    def activate(self, recipient: str, hour: int, minute: int) -> OperationResult:
        """Schedule and start the daily digest in one call."""
        result = self.schedule_daily(recipient, hour, minute)
        if not result:
            return result
        started = self.start(result.job_id)
        if not started:
            return started
        return OperationResult.success(result.job_id, result.message)

    def stop(self, recipient_or_job_id: str) -> OperationResult:
        """
        Stop a running job and mark it inactive.

        Returns NOT_FOUND when nothing is running for the recipient.
        """
        resolved = self._resolve(recipient_or_job_id)
        if resolved is None:
            return OperationResult.failure(Outcome.INVALID_INPUT, message="Recipient or job id is required")
        job_id, recipient = resolved

        with self._locks.hold(job_id):
            if not self.registry.is_running(job_id):
                return OperationResult.failure(Outcome.NOT_FOUND, job_id, f"No active notification for {recipient}")
            self.registry.stop(job_id)
            try:
                self.job_store.deactivate_job(recipient)
            except DurableStoreUnavailable as e:
                logger.error(f"Stopped '{job_id}' but could not deactivate it: {e}")
                return OperationResult.failure(Outcome.STORE_UNAVAILABLE, job_id, str(e))

        logger.info(f"Stopped daily digest for {recipient}")
        return OperationResult.success(job_id, f"Notification stopped for {recipient}")

    def remove(self, recipient_or_job_id: str) -> OperationResult:
        """Dispose the job and delete its durable row."""
        resolved = self._resolve(recipient_or_job_id)
        if resolved is None:
            return OperationResult.failure(Outcome.INVALID_INPUT, message="Recipient or job id is required")
        job_id, recipient = resolved

        with self._locks.hold(job_id):
            removed = self.registry.remove(job_id)
            try:
                deleted = self.job_store.delete_job(recipient)
            except DurableStoreUnavailable as e:
                logger.error(f"Removed '{job_id}' from memory but could not delete it: {e}")
                return OperationResult.failure(Outcome.STORE_UNAVAILABLE, job_id, str(e))

        if not (removed or deleted):
            return OperationResult.failure(Outcome.NOT_FOUND, job_id, f"No notification found for {recipient}")

        logger.info(f"Removed daily digest for {recipient}")
        return OperationResult.success(job_id, f"Notification removed for {recipient}")

    def send_test(self, recipient: str) -> OperationResult:
        """Send one digest now, without touching schedules or stored jobs."""
        if not isinstance(recipient, str) or not recipient.strip():
            return OperationResult.failure(Outcome.INVALID_INPUT, message="Recipient is required")
        recipient = normalize_recipient(recipient)

        delivery = deliver_digest(
            recipient,
            self.task_store,
            self.sender,
            self.timezone,
            clock=self.clock,
            kind='test',
            history=self.history
        )
        if not delivery.ok:
            return OperationResult.failure(
                Outcome.SEND_FAILED, message=f"Test digest to {recipient} failed: {delivery.error}"
            )
        return OperationResult.success(
            message=f"Test digest sent to {recipient} ({delivery.pending_count} pending task(s))"
        )

    def reconcile_on_startup(self) -> OperationResult:
        """
        Rebuild the registry from the durable store.

        Every durable job gets a handle; exactly the active ones are started,
        handles without a durable row are removed. Handles whose time is
        unchanged are kept, so calling this again is harmless (the daemon
        does so periodically to pick up changes made by other processes).

        Each job is re-read under its lock before it is applied, so a
        lifecycle call that lands while reconciling is never undone.

        Returns:
            OperationResult whose job_ids are the running jobs
        """
        try:
            jobs = self.job_store.list_all_jobs()
        except DurableStoreUnavailable as e:
            logger.error(f"Cannot reconcile schedules: {e}")
            return OperationResult.failure(Outcome.STORE_UNAVAILABLE, message=str(e))

        candidates = {job_id_for(job.recipient): job.recipient for job in jobs}
        for job_id in self.registry.job_ids() - set(candidates):
            candidates[job_id] = recipient_for_job_id(job_id)

        stored = 0
        try:
            for job_id in sorted(candidates):
                if self._sync_job(job_id, candidates[job_id]):
                    stored += 1
        except DurableStoreUnavailable as e:
            logger.error(f"Reconcile interrupted: {e}")
            return OperationResult(
                Outcome.STORE_UNAVAILABLE,
                message=str(e),
                job_ids=sorted(self.registry.list_active_job_ids())
            )

        running = sorted(self.registry.list_active_job_ids())
        logger.info(f"Reconciled {stored} job(s), {len(running)} running")
        return OperationResult.success(message=f"{len(running)} of {stored} job(s) running", job_ids=running)

    def _sync_job(self, job_id: str, recipient: str) -> bool:
        """
        Make the handle for job_id match its durable row.

        Returns:
            True if a durable row exists
        """
        with self._locks.hold(job_id):
            job = self.job_store.get_job(recipient)
            if job is None:
                if self.registry.remove(job_id):
                    logger.info(f"Dropped '{job_id}': no longer in the job store")
                return False

            hour, minute = job.hour, job.minute
            if not validate_time(hour, minute):
                logger.warning(
                    f"Job for {job.recipient} has invalid time {hour}:{minute}, using {DEFAULT_TIME}"
                )
                hour, minute = DEFAULT_TIME

            handle = self.registry.get_handle(job_id)
            if handle is None or (handle.hour, handle.minute) != (hour, minute):
                self._register(job.recipient, job_id, hour, minute)

            if job.is_active:
                self.registry.start(job_id)
            else:
                self.registry.stop(job_id)
            return True

    def list_active(self) -> List[str]:
        """
        Job ids of active jobs.

        Read from the durable store; falls back to the registry's running
        handles if the store is unreachable.
        """
        try:
            return [job_id_for(job.recipient) for job in self.job_store.list_active_jobs()]
        except DurableStoreUnavailable as e:
            logger.warning(f"Job store unavailable, listing in-memory jobs instead: {e}")
            return sorted(self.registry.list_active_job_ids())

    def active_count(self) -> int:
        return len(self.list_active())

    def stop_all(self) -> OperationResult:
        """Stop every running job and deactivate every durable job."""
        stopped = []
        for job_id in sorted(self.registry.list_active_job_ids()):
            with self._locks.hold(job_id):
                if self.registry.stop(job_id):
                    stopped.append(job_id)

        try:
            for job in self.job_store.list_active_jobs():
                with self._locks.hold(job_id_for(job.recipient)):
                    self.job_store.deactivate_job(job.recipient)
        except DurableStoreUnavailable as e:
            logger.error(f"Stopped {len(stopped)} job(s) in memory but could not deactivate them: {e}")
            return OperationResult(Outcome.STORE_UNAVAILABLE, message=str(e), job_ids=stopped)

        logger.info(f"Stopped all notifications ({len(stopped)} running)")
        return OperationResult.success(message=f"Stopped {len(stopped)} job(s)", job_ids=stopped)

    def start_all(self) -> OperationResult:
        """Start every registered job and mark it active."""
        started = []
        for job_id in sorted(self.registry.job_ids()):
            result = self.start(job_id)
            if result.outcome is Outcome.STORE_UNAVAILABLE:
                return OperationResult(Outcome.STORE_UNAVAILABLE, message=result.message, job_ids=started)
            if result:
                started.append(job_id)
        return OperationResult.success(message=f"Started {len(started)} job(s)", job_ids=started)

    def job_info(self, recipient_or_job_id: str) -> Optional[Dict[str, Any]]:
        """
        Get information about a job.

        Returns:
            Dict with job_id, recipient, exists, running, time, next_run and
            is_active (None if the store is unreachable), or None if the job
            is neither registered nor stored
        """
        resolved = self._resolve(recipient_or_job_id)
        if resolved is None:
            return None
        job_id, recipient = resolved

        handle = self.registry.get_handle(job_id)
        try:
            stored = self.job_store.get_job(recipient)
        except DurableStoreUnavailable as e:
            logger.warning(f"Job store unavailable while reading '{job_id}': {e}")
            stored = None
            is_active = None
        else:
            is_active = stored.is_active if stored else None

        if handle is None and stored is None:
            return None

        next_run = self.registry.next_run_time(job_id) if handle and handle.running else None
        return {
            'job_id': job_id,
            'recipient': recipient,
            'exists': handle is not None,
            'running': bool(handle and handle.running),
            'time': handle.time if handle else stored.time,
            'next_run': next_run.isoformat() if next_run else None,
            'is_active': is_active
        }

    def startup(self) -> OperationResult:
        """Reconcile with the durable store, then start firing."""
        result = self.reconcile_on_startup()
        self.registry.startup()
        return result

    def shutdown(self, wait: bool = True):
        self.registry.shutdown(wait=wait)
