import os
from datetime import datetime, timezone

import pytest

from notifier.jobs import DeliveryHistory
from notifier.registry import ScheduleRegistry
from notifier.service import NotificationService

from .fakes import FakeTaskStore, FrozenClock, InMemoryJobStore, RecordingSender

ZONE = "America/Santiago"

# 2026-10-19 10:00 in Santiago (UTC-3)
NOW = datetime(2026, 10, 19, 13, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Keep tests independent of the caller's NOTIFIER_* environment."""
    for key in list(os.environ):
        if key.startswith("NOTIFIER_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("NOTIFIER_DATA_DIR", str(tmp_path / "data"))


@pytest.fixture()
def registry():
    reg = ScheduleRegistry(timezone=ZONE, max_workers=4)
    yield reg
    reg.shutdown(wait=False)


@pytest.fixture()
def job_store():
    return InMemoryJobStore()


@pytest.fixture()
def task_store():
    return FakeTaskStore()


@pytest.fixture()
def sender():
    return RecordingSender()


@pytest.fixture()
def clock():
    return FrozenClock(NOW)


@pytest.fixture()
def history(tmp_path):
    return DeliveryHistory(tmp_path / "history.json")


@pytest.fixture()
def service(registry, job_store, task_store, sender, clock, history):
    return NotificationService(
        registry=registry,
        job_store=job_store,
        task_store=task_store,
        sender=sender,
        history=history,
        clock=clock
    )
