"""Shared fixtures for tests."""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from mail_sync.config import SyncSettings
from mail_sync.providers.base import (
    DeltaPage,
    EmailFolder,
    EmailMessage,
    EmailProvider,
    ProviderCredentials,
    ProviderType,
)
from mail_sync.storage import SyncStorage
from mail_sync.sync import SyncOrchestrator


def make_message(
    message_id: str,
    folder_id: str = "INBOX",
    from_address: str = "alice@example.com",
    subject: str = "Hello",
    body: str = "Just checking in.",
    headers: Optional[Dict[str, str]] = None,
) -> EmailMessage:
    return EmailMessage(
        message_id=message_id,
        folder_id=folder_id,
        from_address=from_address,
        subject=subject,
        received_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        body_preview=body[:100],
        body_text=body,
        raw_headers=headers or {},
    )


class FakeProvider(EmailProvider):
    """In-memory mailbox. Cursors are the index of the next message."""

    def __init__(self, folders: List[EmailFolder], mailbox: Dict[str, List[EmailMessage]]):
        super().__init__({})
        self.folders = folders
        self.mailbox = mailbox
        self.removed: Dict[str, List[str]] = {}
        self.failures: List[Exception] = []
        self.folder_failures: Dict[str, Exception] = {}
        self.refresh_results: List[object] = []
        self.delay = 0.0
        self.fetch_calls: List[tuple] = []
        self.full_fetches: List[tuple] = []
        self.refresh_calls = 0
        self.disconnects = 0

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.IMAP

    async def list_folders(self) -> List[EmailFolder]:
        return list(self.folders)

    async def fetch_delta(self, folder: EmailFolder, cursor: Optional[str] = None, limit: int = 100) -> DeltaPage:
        self.fetch_calls.append((folder.folder_id, cursor))
        if self.delay:
            await asyncio.sleep(self.delay)
        if folder.folder_id in self.folder_failures:
            raise self.folder_failures[folder.folder_id]
        if self.failures:
            raise self.failures.pop(0)

        messages = self.mailbox.get(folder.folder_id, [])
        start = int(cursor or 0)
        page = messages[start:start + limit]
        end = start + len(page)
        return DeltaPage(
            messages=[m for m in page],
            removed_ids=self.removed.pop(folder.folder_id, []),
            next_cursor=str(end),
            has_more=end < len(messages),
        )

    async def fetch_full(self, message_id: str, folder_id: Optional[str] = None) -> Optional[EmailMessage]:
        self.full_fetches.append((message_id, folder_id))
        for messages in self.mailbox.values():
            for msg in messages:
                if msg.message_id == message_id:
                    return msg
        return None

    async def refresh_credential(self) -> ProviderCredentials:
        self.refresh_calls += 1
        if self.refresh_results:
            result = self.refresh_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return ProviderCredentials(access_token=f"token-{self.refresh_calls}")

    async def disconnect(self) -> None:
        self.disconnects += 1


@pytest.fixture
def settings(tmp_path) -> SyncSettings:
    return SyncSettings(
        db_path=str(tmp_path / "mail.db"),
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        page_size=50,
        api_tokens={"token-alice": "user-1", "token-bob": "user-2"},
        dispatch_secret="tick-secret",
    )


@pytest.fixture
def storage(settings) -> SyncStorage:
    return SyncStorage(settings.db_path)


@pytest.fixture
def folders() -> List[EmailFolder]:
    return [
        EmailFolder(folder_id="INBOX", name="INBOX", total_count=3),
        EmailFolder(folder_id="Sent", name="Sent", attributes=["\\Sent"], total_count=1),
        EmailFolder(folder_id="Projects", name="Projects", total_count=2),
    ]


@pytest.fixture
def fake_provider(folders) -> FakeProvider:
    return FakeProvider(
        folders,
        {
            "INBOX": [make_message(f"in-{i}") for i in range(3)],
            "Sent": [make_message("sent-0", folder_id="Sent", from_address="me@example.com")],
            "Projects": [make_message(f"proj-{i}", folder_id="Projects") for i in range(2)],
        },
    )


@pytest.fixture
def orchestrator(storage, settings, fake_provider) -> SyncOrchestrator:
    async def no_sleep(_delay):
        return None

    return SyncOrchestrator(
        storage,
        settings,
        provider_factory=lambda account, _settings: fake_provider,
        sleep=no_sleep,
    )


@pytest.fixture
def account_id(storage) -> str:
    """An IMAP account that has completed folder setup."""
    account_id = storage.add_account(
        user_id="user-1",
        provider="imap",
        email_address="me@example.com",
        config={"server": "imap.example.com", "password": "secret"},
    )
    storage.complete_setup(account_id)
    return account_id


async def sync_once(orchestrator: SyncOrchestrator, account_id: str, reason: str = "manual") -> str:
    run_id = await orchestrator.trigger_sync(account_id, reason)
    await orchestrator.wait_for_run(account_id)
    return run_id


class RecordingQueue:
    """Stands in for TriggerQueue; records requests instead of running them."""

    def __init__(self):
        self.calls = []

    def enqueue(self, account_id, reason="scheduled", delay=0):
        self.calls.append((account_id, getattr(reason, "value", reason), delay))
        return True
