"""
Daily Task Digest Notifier

Schedules a daily e-mail style digest of each recipient's pending tasks,
using APScheduler for wall-clock timers and a SQL database as the durable
source of truth.

Features:
- One daily job per recipient (re-scheduling replaces the previous time)
- Jobs survive restarts (rebuilt from the durable store on startup)
- Wall-clock firing in a configured timezone, stable across DST changes
- Concurrent fires; a failed delivery never disables a job
- Delivery history and test sends
"""

from notifier.config import NotifierConfig
from notifier.jobs import (
    CommandNotificationSender,
    DeliveryHistory,
    LogNotificationSender,
    NotificationSender,
    deliver_digest,
)
from notifier.models import NotificationJob, OperationResult, Outcome, Task, TimeOfDay
from notifier.registry import ScheduleRegistry
from notifier.service import NotificationService
from notifier.stores import JobStore, SQLNotificationStore, TaskStore
from notifier.timerules import job_id_for, next_fire_time, parse_time_of_day, validate_time

__version__ = "0.1.0"
__all__ = [
    "NotifierConfig",
    "NotificationService",
    "ScheduleRegistry",
    "JobStore",
    "TaskStore",
    "SQLNotificationStore",
    "NotificationSender",
    "LogNotificationSender",
    "CommandNotificationSender",
    "DeliveryHistory",
    "deliver_digest",
    "NotificationJob",
    "OperationResult",
    "Outcome",
    "Task",
    "TimeOfDay",
    "job_id_for",
    "next_fire_time",
    "parse_time_of_day",
    "validate_time",
]
