"""
Tests for digest rendering, delivery and history.
"""

import sys
from datetime import date

import pytest

from notifier.config import SenderConfig
from notifier.errors import SendFailed
from notifier.jobs import (
    CommandNotificationSender,
    DeliveryHistory,
    LogNotificationSender,
    build_sender,
    deliver_digest,
    render_digest
)
from notifier.models import Task

from .fakes import FakeTaskStore, RecordingSender

TODAY = date(2026, 10, 19)

needs_shell = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")


def test_render_empty_digest():
    text = render_digest([], TODAY)
    assert "2026-10-19" in text
    assert "No pending tasks for today" in text


def test_render_groups_by_priority():
    text = render_digest([
        Task("Water plants", completed=False, priority="low"),
        Task("Submit report", completed=False, priority="high", category="work"),
        Task("Call mom", completed=False),
    ])

    assert text.index("High priority (1)") < text.index("Medium priority (1)") < text.index("Low priority (1)")
    assert "Submit report [Work]" in text
    assert "3 pending task(s) in total." in text


def test_deliver_digest_success(clock, history):
    store = FakeTaskStore({TODAY: [Task("A", completed=False), Task("B", completed=True)]})
    sender = RecordingSender()

    result = deliver_digest("ana@example.com", store, sender, "America/Santiago",
                            clock=clock, job_id="daily-email-x", history=history)

    assert result.ok
    assert result.pending_count == 1
    assert sender.calls[0][0] == "ana@example.com"

    run = history.get_run(result.run_id)
    assert run['status'] == 'success'
    assert run['kind'] == 'scheduled'
    assert run['job_id'] == "daily-email-x"
    assert run['end_time'] is not None


def test_deliver_digest_sender_false(clock, history):
    sender = RecordingSender(fail_for={"ana@example.com"})

    result = deliver_digest("ana@example.com", FakeTaskStore(), sender, "UTC", clock=clock, history=history)

    assert not result.ok
    assert result.error == "sender reported failure"
    assert history.get_run(result.run_id)['status'] == 'failed'


def test_deliver_digest_task_store_failure(clock):
    class BrokenStore(FakeTaskStore):
        def get_tasks_by_date(self, day):
            raise RuntimeError("database locked")

    sender = RecordingSender()
    result = deliver_digest("ana@example.com", BrokenStore(), sender, "UTC", clock=clock)

    assert result.status == 'failed'
    assert "database locked" in result.error
    assert sender.calls == []


def test_history_filters_and_limit(tmp_path):
    history = DeliveryHistory(tmp_path / "h.json", max_entries=3)
    for i in range(5):
        history.add_run({
            'run_id': str(i),
            'recipient': "ana@example.com" if i % 2 else "beto@example.com",
            'status': 'success' if i < 4 else 'failed',
            'start_time': f"2026-10-19T08:0{i}:00",
        })

    runs = history.get_history()
    assert [run['run_id'] for run in runs] == ["4", "3", "2"]
    assert [run['run_id'] for run in history.get_history(recipient="ana@example.com")] == ["3"]
    assert [run['run_id'] for run in history.get_history(status="failed")] == ["4"]
    assert len(history.get_history(limit=1)) == 1

    history.clear_history("beto@example.com")
    assert [run['run_id'] for run in history.get_history()] == ["3"]
    history.clear_history()
    assert history.get_history() == []


def test_history_survives_corrupt_file(tmp_path):
    path = tmp_path / "h.json"
    path.write_text("{not json")
    history = DeliveryHistory(path)
    assert history.get_history() == []


def test_log_sender(caplog):
    caplog.set_level("INFO", logger="notifier.jobs")
    assert LogNotificationSender().send("ana@example.com", [Task("A", completed=False)])
    assert "Digest for ana@example.com" in caplog.text


@needs_shell
def test_command_sender_pipes_digest(tmp_path):
    out = tmp_path / "out.txt"
    sender = CommandNotificationSender(f'cat > "{out}"; echo "$NOTIFIER_RECIPIENT $NOTIFIER_PENDING_COUNT" >> "{out}"')

    assert sender.send("ana@example.com", [Task("Buy milk", completed=False)])

    text = out.read_text()
    assert "Buy milk" in text
    assert "ana@example.com 1" in text


@needs_shell
def test_command_sender_failure():
    with pytest.raises(SendFailed, match="exit code 3"):
        CommandNotificationSender("echo nope >&2; exit 3").send("ana@example.com", [])


@needs_shell
def test_command_sender_timeout():
    with pytest.raises(SendFailed, match="timed out"):
        CommandNotificationSender("sleep 5", timeout=1).send("ana@example.com", [])


def test_build_sender():
    assert isinstance(build_sender(SenderConfig()), LogNotificationSender)
    sender = build_sender(SenderConfig(type="command", command="cat", timeout=5))
    assert isinstance(sender, CommandNotificationSender)
    assert sender.timeout == 5

    with pytest.raises(ValueError):
        build_sender(SenderConfig(type="command"))
    with pytest.raises(ValueError):
        build_sender(SenderConfig(type="carrier-pigeon"))


@needs_shell
def test_deliver_digest_records_command_failure(clock, history):
    sender = CommandNotificationSender("exit 2")

    result = deliver_digest("ana@example.com", FakeTaskStore(), sender, "UTC", clock=clock, history=history)

    assert not result.ok
    assert "exit code 2" in result.error
    assert history.get_run(result.run_id)['error'] == result.error
