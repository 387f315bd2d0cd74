"""
Data models for notification jobs, tasks and operation results.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional, List, NamedTuple


class TimeOfDay(NamedTuple):
    """Wall-clock time of day"""
    hour: int
    minute: int

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


@dataclass
class NotificationJob:
    """Durable daily notification schedule for one recipient"""
    recipient: str
    job_id: str
    hour: int
    minute: int
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def time_of_day(self) -> TimeOfDay:
        return TimeOfDay(self.hour, self.minute)

    @property
    def time(self) -> str:
        """Time of day as HH:MM"""
        return str(self.time_of_day)

    @classmethod
    def from_row(cls, row) -> 'NotificationJob':
        """Create from database row"""
        return cls(
            recipient=row.recipient,
            job_id=row.job_id,
            hour=row.hour,
            minute=row.minute,
            is_active=bool(row.is_active),
            created_at=row.created_at,
            updated_at=row.updated_at
        )

    def to_dict(self) -> dict:
        return {
            'recipient': self.recipient,
            'job_id': self.job_id,
            'time': self.time,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class Task:
    """Planner task as read from the task store"""
    title: str
    completed: bool
    category: str = 'general'
    priority: str = 'medium'  # 'high', 'medium' or 'low'
    date: Optional[date] = None

    @classmethod
    def from_row(cls, row) -> 'Task':
        """Create from database row"""
        return cls(
            title=row.title,
            completed=bool(row.completed),
            category=row.category or 'general',
            priority=row.priority or 'medium',
            date=row.date
        )


class Outcome(str, Enum):
    OK = 'ok'
    NOT_FOUND = 'not_found'
    INVALID_INPUT = 'invalid_input'
    STORE_UNAVAILABLE = 'store_unavailable'
    SEND_FAILED = 'send_failed'


@dataclass
class OperationResult:
    """
    Result of a lifecycle operation.

    Truthy only when the outcome is OK, so callers that only care about
    success can use it like a bool.
    """
    outcome: Outcome
    job_id: Optional[str] = None
    message: str = ''
    job_ids: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, job_id: Optional[str] = None, message: str = '', **kwargs) -> 'OperationResult':
        return cls(Outcome.OK, job_id=job_id, message=message, **kwargs)

    @classmethod
    def failure(cls, outcome: Outcome, job_id: Optional[str] = None, message: str = '') -> 'OperationResult':
        return cls(outcome, job_id=job_id, message=message)


@dataclass
class DeliveryResult:
    """Outcome of a single digest delivery (scheduled fire or test)"""
    recipient: str
    run_id: str
    kind: str  # 'scheduled' or 'test'
    status: str  # 'success' or 'failed'
    pending_count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == 'success'
