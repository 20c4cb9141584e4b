"""Tests for credential renewal."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from mail_sync.credentials import CredentialRefresher
from mail_sync.errors import CredentialExpired, ProviderTransientError
from mail_sync.providers.base import ProviderCredentials

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def refresher(storage):
    return CredentialRefresher(storage, expiry_skew_seconds=300, refresh_attempts=2)


def test_needs_refresh_inside_skew(refresher):
    assert refresher.needs_refresh({'token_expires_at': (NOW + timedelta(minutes=2)).isoformat()}, NOW)
    assert not refresher.needs_refresh({'token_expires_at': (NOW + timedelta(hours=1)).isoformat()}, NOW)
    assert not refresher.needs_refresh({'token_expires_at': None}, NOW)


def test_ensure_fresh_skips_valid_token(refresher, storage, account_id, fake_provider):
    storage.update_account(account_id, token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1))
    account = storage.get_account(account_id)
    assert asyncio.run(refresher.ensure_fresh(account, fake_provider)) is None
    assert fake_provider.refresh_calls == 0


def test_ensure_fresh_renews_expiring_token(refresher, storage, account_id, fake_provider):
    storage.update_account(account_id, token_expires_at=datetime.now(timezone.utc) + timedelta(seconds=30))
    expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
    fake_provider.refresh_results = [ProviderCredentials("fresh", "rotated", expires)]

    asyncio.run(refresher.ensure_fresh(storage.get_account(account_id), fake_provider))

    account = storage.get_account(account_id)
    assert account['access_token'] == "fresh"
    assert account['refresh_token'] == "rotated"
    assert account['token_expires_at'] == expires.isoformat()


def test_refresh_retries_transient_failure(refresher, storage, account_id, fake_provider):
    fake_provider.refresh_results = [ProviderTransientError("timeout"), ProviderCredentials("second")]
    credentials = asyncio.run(refresher.refresh(storage.get_account(account_id), fake_provider))
    assert credentials.access_token == "second"
    assert fake_provider.refresh_calls == 2


def test_refresh_gives_up(refresher, storage, account_id, fake_provider):
    storage.update_account(account_id, access_token="old")
    fake_provider.refresh_results = [CredentialExpired("invalid_grant"), CredentialExpired("invalid_grant")]
    with pytest.raises(CredentialExpired):
        asyncio.run(refresher.refresh(storage.get_account(account_id), fake_provider))
    assert storage.get_account(account_id)['access_token'] == "old"
