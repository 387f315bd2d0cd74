"""
Daily digest delivery.

Builds the payload for a fire (or a test send): today's incomplete tasks in
the configured timezone, handed to a NotificationSender. Failures are logged
and recorded in the delivery history; they are never retried here and never
propagate out of a scheduled fire.
"""

import json
import logging
import os
import subprocess
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, tzinfo
from pathlib import Path
from typing import Dict, Any, Optional, List, Union

from notifier.config import default_history_file
from notifier.errors import SendFailed
from notifier.models import DeliveryResult, Task
from notifier.stores import TaskStore
from notifier.timerules import Clock, SystemClock, resolve_timezone

logger = logging.getLogger(__name__)

PRIORITY_ORDER = ('high', 'medium', 'low')

PRIORITY_LABELS = {
    'high': 'High priority',
    'medium': 'Medium priority',
    'low': 'Low priority',
}


class DeliveryHistory:
    """
    Persists digest delivery runs to a JSON file.

    Each run record contains:
    - recipient: Who the digest was for
    - job_id: Job that fired (None for test sends)
    - run_id: Unique run identifier
    - kind: 'scheduled' or 'test'
    - start_time / end_time: ISO timestamps
    - elapsed_seconds: Duration in seconds
    - pending_count: Number of incomplete tasks in the digest
    - status: 'success', 'failed', or 'running'
    - error: Error message (if failed)
    """

    def __init__(self, history_file: Optional[Path] = None, max_entries: int = 1000):
        """
        Initialize history store.

        Args:
            history_file: Path to history JSON file (uses default if not specified)
            max_entries: Maximum number of history entries to keep
        """
        self.history_file = Path(history_file) if history_file else Path(default_history_file())
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._ensure_file_exists()

    def _ensure_file_exists(self):
        """Ensure the history file and its parent directory exist."""
        self.history_file.parent.mkdir(parents=True, exist_ok=True)
        if not self.history_file.exists():
            self._write_history([])

    def _read_history(self) -> List[Dict[str, Any]]:
        try:
            with open(self.history_file, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, FileNotFoundError):
            return []

    def _write_history(self, history: List[Dict[str, Any]]):
        with open(self.history_file, 'w') as f:
            json.dump(history, f, indent=2, default=str)

    def add_run(self, record: Dict[str, Any]):
        """Append a run record, keeping only the most recent max_entries."""
        with self._lock:
            history = self._read_history()
            history.append(record)
            if len(history) > self.max_entries:
                history = history[-self.max_entries:]
            self._write_history(history)

    def update_run(self, run_id: str, updates: Dict[str, Any]):
        with self._lock:
            history = self._read_history()
            for record in history:
                if record.get('run_id') == run_id:
                    record.update(updates)
                    break
            self._write_history(history)

    def get_history(
        self,
        recipient: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Get run history with optional filters.

        Args:
            recipient: Filter by recipient
            status: Filter by status ('success', 'failed', 'running')
            limit: Maximum number of entries to return

        Returns:
            List of run records (most recent first)
        """
        with self._lock:
            history = self._read_history()

        if recipient:
            history = [r for r in history if r.get('recipient') == recipient]
        if status:
            history = [r for r in history if r.get('status') == status]

        history.sort(key=lambda r: r.get('start_time', ''), reverse=True)

        if limit:
            history = history[:limit]
        return history

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for record in self._read_history():
                if record.get('run_id') == run_id:
                    return record
        return None

    def clear_history(self, recipient: Optional[str] = None):
        """
        Clear history, optionally for a single recipient.
        """
        with self._lock:
            if recipient:
                history = [r for r in self._read_history() if r.get('recipient') != recipient]
                self._write_history(history)
            else:
                self._write_history([])


def render_digest(tasks: List[Task], today: Optional[date] = None) -> str:
    """
    Render the plain-text digest of pending tasks, grouped by priority.
    """
    lines = []
    if today is not None:
        lines.append(f"Pending tasks for {today.isoformat()}")
        lines.append("")

    if not tasks:
        lines.append("No pending tasks for today. Enjoy your day!")
        return "\n".join(lines) + "\n"

    groups: Dict[str, List[Task]] = {priority: [] for priority in PRIORITY_ORDER}
    for task in tasks:
        groups.get(task.priority, groups['medium']).append(task)

    for priority in PRIORITY_ORDER:
        group = groups[priority]
        if not group:
            continue
        lines.append(f"{PRIORITY_LABELS[priority]} ({len(group)})")
        for task in group:
            lines.append(f"  - {task.title} [{task.category.capitalize()}]")
        lines.append("")

    lines.append(f"{len(tasks)} pending task(s) in total.")
    return "\n".join(lines) + "\n"


class NotificationSender(ABC):
    """
    Delivers a digest to one recipient.

    Returns True on success; may return False or raise SendFailed otherwise.
    """

    @abstractmethod
    def send(self, recipient: str, tasks: List[Task]) -> bool:
        ...


class LogNotificationSender(NotificationSender):
    """Writes the digest to the log instead of delivering it."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def send(self, recipient: str, tasks: List[Task]) -> bool:
        logger.log(self.level, f"Digest for {recipient}:\n{render_digest(tasks)}")
        return True


class CommandNotificationSender(NotificationSender):
    """
    Pipes the rendered digest to a shell command.

    The recipient is exported as NOTIFIER_RECIPIENT and the pending task
    count as NOTIFIER_PENDING_COUNT, so the command can be e.g.
    'mail -s "Today" "$NOTIFIER_RECIPIENT"'.
    """

    def __init__(self, command: str, timeout: int = 60, working_dir: Optional[str] = None):
        """
        Args:
            command: Shell command receiving the digest on stdin
            timeout: Timeout in seconds
            working_dir: Working directory for the command
        """
        self.command = command
        self.timeout = timeout
        self.working_dir = working_dir

    def send(self, recipient: str, tasks: List[Task]) -> bool:
        """
        Raises:
            SendFailed: If the command times out, cannot start or exits non-zero
        """
        env = dict(os.environ)
        env['NOTIFIER_RECIPIENT'] = recipient
        env['NOTIFIER_PENDING_COUNT'] = str(len(tasks))

        try:
            result = subprocess.run(
                self.command,
                shell=True,
                input=render_digest(tasks),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                cwd=self.working_dir,
                env=env
            )
        except subprocess.TimeoutExpired as e:
            raise SendFailed(f"Send command timed out after {self.timeout}s") from e
        except OSError as e:
            raise SendFailed(f"Send command could not be executed: {e}") from e

        if result.returncode != 0:
            raise SendFailed(
                f"Send command failed with exit code {result.returncode}: {result.stderr.strip()}"
            )
        return True


def deliver_digest(
    recipient: str,
    task_store: TaskStore,
    sender: NotificationSender,
    zone: Union[str, tzinfo],
    clock: Optional[Clock] = None,
    kind: str = 'scheduled',
    job_id: Optional[str] = None,
    history: Optional[DeliveryHistory] = None
) -> DeliveryResult:
    """
    Send today's incomplete tasks to recipient.

    Args:
        recipient: Digest recipient
        task_store: Source of today's tasks
        sender: Notification sender
        zone: Timezone defining "today"
        clock: Clock (defaults to the system clock)
        kind: 'scheduled' or 'test'
        job_id: Job that fired, if any
        history: Delivery history to record the run in

    Returns:
        DeliveryResult; never raises for send or task-store failures
    """
    clock = clock or SystemClock()
    tz = resolve_timezone(zone)
    run_id = str(uuid.uuid4())[:8]
    log_prefix = f"[{recipient}:{run_id}]"
    start_time = datetime.now(tz)

    logger.info(f"{log_prefix} Sending {kind} digest")
    _record(history, 'add', {
        'recipient': recipient,
        'job_id': job_id,
        'run_id': run_id,
        'kind': kind,
        'start_time': start_time.isoformat(),
        'end_time': None,
        'elapsed_seconds': None,
        'pending_count': None,
        'status': 'running',
        'error': None
    })

    pending_count = 0
    error = None
    try:
        today = clock.today_in_zone(tz)
        tasks = task_store.get_tasks_by_date(today)
        pending = [task for task in tasks if not task.completed]
        pending_count = len(pending)
        logger.info(f"{log_prefix} Found {pending_count} pending task(s) for {today}")

        sent = sender.send(recipient, pending)
        if not sent:
            error = "sender reported failure"
    except SendFailed as e:
        error = str(e)
    except Exception as e:
        logger.exception(f"{log_prefix} Digest delivery raised")
        error = str(e) or type(e).__name__

    status = 'failed' if error else 'success'
    end_time = datetime.now(tz)
    if error:
        logger.error(f"{log_prefix} Digest not delivered: {error}")
    else:
        logger.info(f"{log_prefix} Digest delivered")

    _record(history, 'update', run_id, {
        'end_time': end_time.isoformat(),
        'elapsed_seconds': round((end_time - start_time).total_seconds(), 2),
        'pending_count': pending_count,
        'status': status,
        'error': error
    })

    return DeliveryResult(
        recipient=recipient,
        run_id=run_id,
        kind=kind,
        status=status,
        pending_count=pending_count,
        error=error
    )


def _record(history: Optional[DeliveryHistory], action: str, *args):
    if history is None:
        return
    try:
        if action == 'add':
            history.add_run(*args)
        else:
            history.update_run(*args)
    except OSError as e:
        logger.warning(f"Failed to write delivery history: {e}")


def build_sender(sender_config) -> NotificationSender:
    """
    Create the NotificationSender described by a SenderConfig.

    Raises:
        ValueError: For unknown sender types or a command sender without command
    """
    if sender_config.type == 'log':
        return LogNotificationSender()
    if sender_config.type == 'command':
        if not (sender_config.command or '').strip():
            raise ValueError("'command' sender requires 'command'")
        return CommandNotificationSender(sender_config.command, timeout=sender_config.timeout)
    raise ValueError(f"Unknown sender type '{sender_config.type}'")
