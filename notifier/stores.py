"""
Durable job store and task store.

JobStore and TaskStore are the interfaces the lifecycle service talks to.
SQLNotificationStore implements both on top of SQLAlchemy Core so the
notifier can share the planner's database (any SQLAlchemy URL; SQLite by
default). Every SQLAlchemy failure is re-raised as DurableStoreUnavailable.
"""

import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from pathlib import Path
from typing import Optional, List

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Integer, MetaData, String, Table,
    create_engine, delete, insert, select, update
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError

from notifier.errors import DurableStoreUnavailable
from notifier.models import NotificationJob, Task
from notifier.timerules import job_id_for, normalize_recipient

logger = logging.getLogger(__name__)

metadata = MetaData()

notification_jobs = Table(
    "notification_jobs",
    metadata,
    Column("recipient", String(320), primary_key=True),
    Column("job_id", String(1024), nullable=False, unique=True),
    Column("hour", Integer, nullable=False),
    Column("minute", Integer, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

tasks = Table(
    "tasks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", String(500), nullable=False),
    Column("date", Date, nullable=False, index=True),
    Column("completed", Boolean, nullable=False, default=False),
    Column("category", String(100), nullable=False, default="general"),
    Column("priority", String(20), nullable=False, default="medium"),
)


def ensure_sqlite_directory(url: str):
    """Create the directory holding a file-based SQLite database."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        Path(parsed.database).expanduser().parent.mkdir(parents=True, exist_ok=True)


class JobStore(ABC):
    """Durable storage for NotificationJob rows, keyed by recipient."""

    @abstractmethod
    def get_job(self, recipient: str) -> Optional[NotificationJob]:
        ...

    @abstractmethod
    def list_active_jobs(self) -> List[NotificationJob]:
        ...

    @abstractmethod
    def list_all_jobs(self) -> List[NotificationJob]:
        ...

    @abstractmethod
    def upsert_job(self, recipient: str, hour: int, minute: int, is_active: bool) -> NotificationJob:
        ...

    @abstractmethod
    def set_active(self, recipient: str, is_active: bool) -> bool:
        """Set the active flag; returns False if no row exists."""
        ...

    def deactivate_job(self, recipient: str) -> bool:
        return self.set_active(recipient, False)

    @abstractmethod
    def delete_job(self, recipient: str) -> bool:
        """Delete the row; returns False if no row existed."""
        ...


class TaskStore(ABC):
    """Read access to the planner's tasks."""

    @abstractmethod
    def get_tasks_by_date(self, day: date) -> List[Task]:
        ...


class SQLNotificationStore(JobStore, TaskStore):
    """
    SQLAlchemy-backed job and task store.

    Args:
        url: SQLAlchemy database URL (e.g. sqlite:///notifier.db)
        engine: Existing engine to reuse instead of url
        create_tables: Create missing tables on startup
    """

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None, create_tables: bool = True):
        if engine is None:
            if not url:
                raise ValueError("Either url or engine is required")
            engine = create_engine(url)
        self.engine = engine

        if create_tables:
            try:
                metadata.create_all(self.engine)
            except SQLAlchemyError as e:
                raise DurableStoreUnavailable(f"Cannot initialise notifier tables: {e}") from e

        logger.debug(f"Notification store using {self.engine.url!r}")

    def get_job(self, recipient: str) -> Optional[NotificationJob]:
        stmt = select(notification_jobs).where(
            notification_jobs.c.recipient == normalize_recipient(recipient)
        )
        try:
            with self.engine.connect() as conn:
                row = conn.execute(stmt).first()
        except SQLAlchemyError as e:
            raise DurableStoreUnavailable(f"Failed to read job for {recipient}: {e}") from e
        return NotificationJob.from_row(row) if row else None

    def list_active_jobs(self) -> List[NotificationJob]:
        return self._list_jobs(active_only=True)

    def list_all_jobs(self) -> List[NotificationJob]:
        return self._list_jobs(active_only=False)

    def _list_jobs(self, active_only: bool) -> List[NotificationJob]:
        stmt = select(notification_jobs).order_by(notification_jobs.c.recipient)
        if active_only:
            stmt = stmt.where(notification_jobs.c.is_active)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as e:
            raise DurableStoreUnavailable(f"Failed to list jobs: {e}") from e
        return [NotificationJob.from_row(row) for row in rows]

    def upsert_job(self, recipient: str, hour: int, minute: int, is_active: bool = True) -> NotificationJob:
        recipient = normalize_recipient(recipient)
        now = datetime.now()
        try:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(notification_jobs.c.recipient).where(notification_jobs.c.recipient == recipient)
                ).first()

                if existing:
                    conn.execute(
                        update(notification_jobs)
                        .where(notification_jobs.c.recipient == recipient)
                        .values(hour=hour, minute=minute, is_active=is_active, updated_at=now)
                    )
                    logger.info(f"Updated notification job for {recipient}")
                else:
                    conn.execute(
                        insert(notification_jobs).values(
                            recipient=recipient,
                            job_id=job_id_for(recipient),
                            hour=hour,
                            minute=minute,
                            is_active=is_active,
                            created_at=now,
                            updated_at=now
                        )
                    )
                    logger.info(f"Created notification job for {recipient}")

                row = conn.execute(
                    select(notification_jobs).where(notification_jobs.c.recipient == recipient)
                ).first()
        except SQLAlchemyError as e:
            raise DurableStoreUnavailable(f"Failed to save job for {recipient}: {e}") from e

        return NotificationJob.from_row(row)

    def set_active(self, recipient: str, is_active: bool) -> bool:
        stmt = (
            update(notification_jobs)
            .where(notification_jobs.c.recipient == normalize_recipient(recipient))
            .values(is_active=is_active, updated_at=datetime.now())
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as e:
            raise DurableStoreUnavailable(f"Failed to update job for {recipient}: {e}") from e
        return result.rowcount > 0

    def delete_job(self, recipient: str) -> bool:
        stmt = delete(notification_jobs).where(
            notification_jobs.c.recipient == normalize_recipient(recipient)
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as e:
            raise DurableStoreUnavailable(f"Failed to delete job for {recipient}: {e}") from e
        return result.rowcount > 0

    def get_tasks_by_date(self, day: date) -> List[Task]:
        stmt = select(tasks).where(tasks.c.date == day).order_by(tasks.c.id)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as e:
            raise DurableStoreUnavailable(f"Failed to read tasks for {day}: {e}") from e
        return [Task.from_row(row) for row in rows]

    def add_task(self, title: str, day: date, completed: bool = False,
                 category: str = "general", priority: str = "medium") -> int:
        """Insert a task row. The planner owns task CRUD; this is for seeding and tests."""
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    insert(tasks).values(
                        title=title, date=day, completed=completed,
                        category=category, priority=priority
                    )
                )
        except SQLAlchemyError as e:
            raise DurableStoreUnavailable(f"Failed to add task: {e}") from e
        return result.inserted_primary_key[0]

    def close(self):
        """Release pooled connections."""
        self.engine.dispose()
