"""Tests for scheduled dispatch."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from mail_sync.dispatch import DispatchJob, summarize_tick

from conftest import RecordingQueue

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def job(storage, queue, settings):
    settings.poll_interval_minutes = 15
    settings.max_auto_retries = 3
    settings.run_timeout_seconds = 600
    return DispatchJob(storage, queue, settings, clock=lambda: NOW)


def test_never_synced_account_is_polled(job, queue, account_id):
    result = job.run_tick()
    assert result == {'reset': [], 'polled': [account_id], 'retried': []}
    assert queue.calls == [(account_id, "scheduled", 0)]


def test_recently_synced_account_is_not_polled(job, storage, account_id):
    storage.update_account(account_id, last_sync_at=NOW - timedelta(minutes=5))
    assert job.run_tick()['polled'] == []
    storage.update_account(account_id, last_sync_at=NOW - timedelta(minutes=20))
    assert job.run_tick()['polled'] == [account_id]


def test_blocked_pending_and_disabled_accounts_skipped(job, storage, account_id):
    storage.update_account(account_id, auto_sync_blocked=1)
    storage.add_account("user-1", "imap", "pending@example.com")
    disabled = storage.add_account("user-1", "imap", "off@example.com")
    storage.complete_setup(disabled)
    storage.disable_account(disabled)
    assert job.run_tick() == {'reset': [], 'polled': [], 'retried': []}


def test_failed_account_retried_when_due(job, storage, account_id):
    run_id = storage.begin_sync(account_id, "manual", now=NOW - timedelta(minutes=2))
    storage.finish_run_failure(account_id, run_id, "ProviderTransientError", "503", NOW + timedelta(minutes=1))

    assert job.run_tick()['retried'] == []
    assert job.run_tick(NOW + timedelta(minutes=2))['retried'] == [account_id]


def test_retry_stops_after_max_failures(job, storage, account_id):
    for _ in range(3):
        run_id = storage.begin_sync(account_id, "scheduled")
        storage.finish_run_failure(account_id, run_id, "ProviderTransientError", "503", NOW - timedelta(minutes=1))
    assert storage.get_account(account_id)['consecutive_failures'] == 3
    assert job.run_tick()['retried'] == []


def test_stale_run_is_reset(job, storage, account_id):
    run_id = storage.begin_sync(account_id, "manual", now=NOW - timedelta(hours=1))

    result = job.run_tick()

    assert result['reset'] == [account_id]
    account = storage.get_account(account_id)
    assert account['sync_state'] == 'error'
    assert account['last_error_code'] == 'RunTimeout'
    assert storage.get_run(run_id)['status'] == 'failed'
    assert result['retried'] == [account_id]


def test_active_run_is_left_alone(job, storage, account_id):
    storage.begin_sync(account_id, "manual", now=NOW - timedelta(minutes=1))
    result = job.run_tick()
    assert result['reset'] == []
    assert storage.get_account(account_id)['sync_state'] == 'syncing'


def test_summarize_tick():
    assert summarize_tick({'reset': ['a'], 'polled': ['b', 'c'], 'retried': []}) == {
        'reset': 1, 'polled': 2, 'retried': 0,
    }


def test_loop_survives_failing_tick(job, monkeypatch):
    ticks = []

    def flaky_tick(now=None):
        ticks.append(now)
        if len(ticks) == 1:
            raise RuntimeError("database is locked")
        return {'reset': [], 'polled': [], 'retried': []}

    monkeypatch.setattr(job, "run_tick", flaky_tick)

    async def scenario():
        await job.start_periodic(interval_seconds=0.01)
        await asyncio.sleep(0.05)
        await job.stop_periodic()

    asyncio.run(scenario())
    assert len(ticks) >= 2
