"""
Fixtures for the fine-tune lifecycle tests, wired to a SQLite store in
tmp_path.
"""

import pytest

from finetune.service import FineTuneService
from finetune.storage.sqlite_store import SqliteLifecycleStore

from fakes import FakeClock, FakeProvider, InMemorySource, RecordingNotifier, make_rows, no_sleep


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return SqliteLifecycleStore(tmp_path / "finetune.db")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def source():
    return InMemorySource(make_rows(12))


@pytest.fixture
def service(store, provider, notifier, source, clock):
    return FineTuneService(
        store, provider, notifier, source,
        clock=clock, sleep=no_sleep, holder_id="test-runner",
    )
