"""
Email synchronization orchestrator.
Runs per-account sync passes: folder discovery, delta paging, categorization,
persistence and progress bookkeeping.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .categorizer import SenderScreening, categorize
from .config import SyncSettings
from .credentials import CredentialRefresher
from .errors import (
    AccountNotFound,
    AlreadySyncing,
    CredentialExpired,
    FolderUnavailable,
    NotOwned,
    ProviderPermanentError,
    ProviderRateLimited,
    ProviderTransientError,
    RunTimeout,
    SetupRequired,
    StorageError,
    SyncError,
)
from .folder_mapper import default_sync_enabled, map_folder, sort_key
from .models import CanonicalFolder, MappingSource, SyncState, TriggerReason
from .progress import build_status
from .providers import create_provider
from .providers.base import EmailFolder, EmailProvider
from .storage import SyncStorage, utcnow

logger = logging.getLogger(__name__)

JITTER = 0.2


def backoff_delay(
    attempt: int,
    base_seconds: float,
    max_seconds: float,
    retry_after: Optional[float] = None,
    rng: Callable[[float, float], float] = random.uniform
) -> float:
    """
    Delay before retry number `attempt` (1-based).

    base * 2^(attempt-1) with +/-20% jitter, capped. A provider Retry-After wins.
    """
    if retry_after is not None:
        return min(max_seconds, max(0.0, retry_after))
    delay = base_seconds * (2 ** (attempt - 1))
    delay *= 1 + rng(-JITTER, JITTER)
    return min(max_seconds, delay)


@dataclass
class RunProgress:
    processed: int = 0
    total: int = 0


class SyncOrchestrator:
    """
    Coordinates sync runs for all accounts.

    At most one run per account is active; the claim is an atomic state
    change in storage, so concurrent triggers from any process are safe.
    """

    def __init__(
        self,
        storage: SyncStorage,
        settings: SyncSettings,
        provider_factory: Optional[Callable[[Dict[str, Any], SyncSettings], EmailProvider]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize the orchestrator.

        Args:
            storage: SyncStorage instance
            settings: Loaded SyncSettings
            provider_factory: Builds a provider for an account row (default create_provider)
            sleep: Awaitable used for retry backoff
            clock: Returns the current UTC time
        """
        self.storage = storage
        self.settings = settings
        self.provider_factory = provider_factory or create_provider
        self.screening = SenderScreening(storage)
        self.credentials = CredentialRefresher(
            storage,
            expiry_skew_seconds=settings.expiry_skew_seconds,
            refresh_attempts=settings.refresh_attempts
        )
        self._sleep = sleep
        self._now = clock
        self._tasks: Dict[str, asyncio.Task] = {}

    # ==================== Public operations ====================

    def _load_account(self, account_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        account = self.storage.get_account(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} does not exist")
        if user_id is not None and account['user_id'] != user_id:
            raise NotOwned(f"Account {account_id} is not owned by {user_id}")
        return account

    async def trigger_sync(
        self,
        account_id: str,
        trigger_reason: Union[TriggerReason, str] = TriggerReason.MANUAL,
        user_id: Optional[str] = None
    ) -> str:
        """
        Start a sync run for an account.

        Returns:
            The new run ID

        Raises:
            AccountNotFound, NotOwned, SetupRequired, AlreadySyncing
        """
        reason = TriggerReason(trigger_reason)
        account = self._load_account(account_id, user_id)
        if not account['enabled']:
            raise AccountNotFound(f"Account {account_id} is disconnected")
        if account['sync_state'] == SyncState.PENDING_SETUP.value:
            raise SetupRequired(f"Account {account_id} has unconfirmed folders")

        run_id = self.storage.begin_sync(
            account_id,
            reason.value,
            clear_block=reason == TriggerReason.MANUAL,
            history_limit=self.settings.run_history_limit,
            now=self._now()
        )
        if run_id is None:
            raise AlreadySyncing(f"Account {account_id} already has an active run")

        logger.info(f"Starting {reason.value} sync {run_id} for account {account_id}")
        task = asyncio.create_task(self._run(account_id, run_id))
        self._tasks[account_id] = task
        task.add_done_callback(lambda t, a=account_id: self._forget_task(a, t))
        return run_id

    def _forget_task(self, account_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(account_id) is task:
            del self._tasks[account_id]

    async def wait_for_run(self, account_id: str) -> None:
        """Wait until the account's in-process run (if any) has finished."""
        task = self._tasks.get(account_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-process runs. Their accounts are reset by the stale-run sweep."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def get_status(self, account_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Read-only status from persisted counters."""
        account = self._load_account(account_id, user_id)
        run = self.storage.get_run(account['current_run_id']) if account.get('current_run_id') else None
        return build_status(account, run, self._now())

    def get_history(self, account_id: str, user_id: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        self._load_account(account_id, user_id)
        return self.storage.get_runs(account_id, limit=limit)

    async def discover_folders(self, account_id: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List the provider's folders, store new ones, and report detected mappings.

        Returns:
            One entry per folder with canonical type, confidence and enablement
        """
        account = self._load_account(account_id, user_id)
        provider = self.provider_factory(account, self.settings)
        try:
            remote = await self._call(provider, account, provider.list_folders)
        finally:
            await provider.disconnect()

        detected = []
        for folder in remote:
            mapping = map_folder(folder)
            row = self.storage.upsert_folder(
                account_id,
                folder,
                mapping.canonical_type.value,
                mapping.confidence,
                default_sync_enabled(mapping.canonical_type)
            )
            detected.append({
                'folder_id': row['provider_folder_id'],
                'name': row['name'],
                'canonical_type': row['canonical_type'],
                'confidence': row['mapping_confidence'],
                'mapping_source': row['mapping_source'],
                'needs_review': row['mapping_source'] == MappingSource.AUTO.value and mapping.needs_review,
                'enabled': bool(row['sync_enabled']),
                'message_count': row['message_count'],
            })

        detected.sort(key=lambda f: (sort_key(f['canonical_type']), f['name'].lower()))
        logger.info(f"Detected {len(detected)} folders for account {account_id}")
        return detected

    def confirm_mappings(
        self,
        account_id: str,
        confirmed_folders: List[Dict[str, Any]],
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Persist the user's folder confirmation and finish account setup.

        Entries with enabled=False are ignored. Safe to call repeatedly.
        """
        self._load_account(account_id, user_id)

        confirmed = 0
        for entry in confirmed_folders:
            if not entry.get('enabled', True):
                continue
            row = self.storage.get_folder(account_id, entry['folder_id'])
            if row is None:
                logger.warning(f"Ignoring confirmation for unknown folder {entry['folder_id']} on {account_id}")
                continue

            chosen = CanonicalFolder(entry['canonical_type'])
            detected = map_folder(EmailFolder(
                folder_id=row['provider_folder_id'],
                name=row['name'],
                attributes=row['attributes']
            )).canonical_type
            source = MappingSource.AUTO if chosen == detected else MappingSource.MANUAL
            self.storage.confirm_folder(account_id, row['provider_folder_id'], chosen.value, source.value)
            confirmed += 1

        if self.storage.complete_setup(account_id):
            logger.info(f"Account {account_id} setup complete")
        return {'confirmed': confirmed, 'state': self.storage.get_account(account_id)['sync_state']}

    async def fetch_full_message(
        self,
        account_id: str,
        provider_message_id: str,
        user_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Hydrate one stored message with full content from the provider."""
        account = self._load_account(account_id, user_id)
        folder_hint = None
        stored = self.storage.get_message(account_id, provider_message_id)
        if stored is not None:
            for row in self.storage.get_folders(account_id):
                if row['id'] == stored['folder_id']:
                    folder_hint = row['provider_folder_id']
                    break

        provider = self.provider_factory(account, self.settings)
        try:
            msg = await self._call(
                provider, account, lambda: provider.fetch_full(provider_message_id, folder_hint)
            )
        finally:
            await provider.disconnect()
        if msg is not None:
            self.storage.update_message_bodies(account_id, msg)
        return self.storage.get_message(account_id, provider_message_id)

    def screen_sender(
        self,
        account_id: str,
        sender_address: str,
        verdict: str,
        apply_to_existing: bool = False,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Record a screening decision for the account's owner."""
        account = self._load_account(account_id, user_id)
        owner = account['user_id']
        self.screening.record_screening_decision(sender_address, owner, verdict)
        changed = 0
        if apply_to_existing:
            changed = self.screening.recategorize_sender(owner, sender_address)
        return {'sender': sender_address.lower(), 'verdict': verdict, 'recategorized': changed}

    # ==================== Run processing ====================

    async def _call(self, provider: EmailProvider, account: Dict[str, Any], make_call: Callable[[], Awaitable]):
        """
        Invoke a provider call with retry.

        Transient and rate-limit failures back off up to max_attempts; an
        expired credential is refreshed once and the call repeated.
        """
        attempt = 0
        refreshed = False
        while True:
            attempt += 1
            try:
                return await make_call()
            except CredentialExpired as e:
                if refreshed:
                    raise
                logger.info(f"Credential rejected for account {account['id']}, refreshing: {e}")
                refreshed = True
                await self.credentials.refresh(account, provider)
            except (ProviderRateLimited, ProviderTransientError) as e:
                if attempt >= self.settings.max_attempts:
                    raise
                delay = backoff_delay(
                    attempt,
                    self.settings.backoff_base_seconds,
                    self.settings.backoff_max_seconds,
                    retry_after=getattr(e, 'retry_after', None)
                )
                logger.warning(
                    f"{e.code} for account {account['id']} "
                    f"(attempt {attempt}/{self.settings.max_attempts}), retrying in {delay:.1f}s: {e}"
                )
                await self._sleep(delay)

    async def _run(self, account_id: str, run_id: str) -> None:
        """Execute one run and record its outcome."""
        provider = None
        try:
            account = self.storage.get_account(account_id)
            provider = self.provider_factory(account, self.settings)
            await asyncio.wait_for(
                self._process(account, provider, run_id),
                timeout=self.settings.run_timeout_seconds
            )
            self.storage.finish_run_success(account_id, run_id, now=self._now())
            logger.info(f"Sync {run_id} for account {account_id} completed")
        except asyncio.TimeoutError:
            self._fail_run(account_id, run_id, RunTimeout(
                f"Run exceeded {self.settings.run_timeout_seconds:.0f}s"
            ))
        except SyncError as e:
            self._fail_run(account_id, run_id, e)
        except Exception as e:
            logger.exception(f"Unexpected failure in sync {run_id} for account {account_id}")
            self._fail_run(account_id, run_id, SyncError(f"{type(e).__name__}: {e}"))
        finally:
            if provider is not None:
                await provider.disconnect()

    def _fail_run(self, account_id: str, run_id: str, error: SyncError) -> None:
        account = self.storage.get_account(account_id) or {}
        failures = (account.get('consecutive_failures') or 0) + 1
        next_retry_at = self._now() + timedelta(seconds=backoff_delay(
            failures,
            self.settings.retry_base_seconds,
            self.settings.retry_max_seconds
        ))
        block = isinstance(error, ProviderPermanentError) and not isinstance(error, FolderUnavailable)

        logger.error(f"Sync {run_id} for account {account_id} failed with {error.code}: {error}")
        try:
            self.storage.finish_run_failure(
                account_id,
                run_id,
                error.code,
                str(error),
                next_retry_at,
                block_auto_sync=block,
                now=self._now()
            )
        except StorageError as e:
            logger.error(f"Could not record failure of sync {run_id}: {e}")

    async def _process(self, account: Dict[str, Any], provider: EmailProvider, run_id: str) -> None:
        account_id = account['id']
        await self.credentials.ensure_fresh(account, provider)

        remote = await self._call(provider, account, provider.list_folders)
        remote_by_id: Dict[str, EmailFolder] = {}
        for folder in remote:
            remote_by_id[folder.folder_id] = folder
            mapping = map_folder(folder)
            if self.storage.get_folder(account_id, folder.folder_id) is None:
                logger.info(
                    f"New folder {folder.name} on {account_id} mapped to "
                    f"{mapping.canonical_type.value} ({mapping.confidence})"
                )
            # Known folders keep their confirmed mapping
            self.storage.upsert_folder(
                account_id,
                folder,
                mapping.canonical_type.value,
                mapping.confidence,
                default_sync_enabled(mapping.canonical_type)
            )

        rows = []
        for row in self.storage.get_folders(account_id, enabled_only=True):
            if row['provider_folder_id'] in remote_by_id:
                rows.append(row)
            else:
                self.storage.set_folder_error(row['id'], FolderUnavailable.safe_message)
        rows.sort(key=lambda r: (sort_key(r['canonical_type']), r['name'].lower()))

        # Folder sizes only bound a backfill; incremental deltas grow the total as pages arrive
        progress = RunProgress(total=sum(r['message_count'] or 0 for r in rows if not r['cursor']))
        self.storage.record_progress(account_id, run_id, 0, progress.total, None, now=self._now())
        lookup = self.screening.lookup_for(account['user_id'])

        for row in rows:
            folder = remote_by_id[row['provider_folder_id']]
            try:
                await self._sync_folder(account, provider, run_id, row, folder, lookup, progress)
            except FolderUnavailable as e:
                logger.warning(f"Skipping folder {row['name']} on {account_id}: {e}")
                self.storage.set_folder_error(row['id'], e.safe_message)

    async def _sync_folder(
        self,
        account: Dict[str, Any],
        provider: EmailProvider,
        run_id: str,
        row: Dict[str, Any],
        folder: EmailFolder,
        lookup,
        progress: RunProgress
    ) -> None:
        account_id = account['id']
        cursor = row['cursor']
        self.storage.record_progress(
            account_id, run_id, progress.processed, progress.total, row['name'], now=self._now()
        )

        while True:
            page = await self._call(
                provider,
                account,
                lambda c=cursor: provider.fetch_delta(folder, c, self.settings.page_size)
            )

            for msg in page.messages:
                msg.category = categorize(msg, lookup).value

            # Cursor moves only after the page is durable
            self.storage.upsert_messages(account_id, row['id'], page.messages)
            self.storage.soft_delete_messages(account_id, page.removed_ids)
            if page.next_cursor is not None and page.next_cursor != cursor:
                self.storage.advance_folder_cursor(row['id'], page.next_cursor)
            stalled = page.has_more and page.next_cursor == cursor and not page.messages
            cursor = page.next_cursor or cursor

            progress.processed += len(page.messages)
            progress.total = max(progress.total, progress.processed)
            self.storage.record_progress(
                account_id, run_id, progress.processed, progress.total, row['name'], now=self._now()
            )

            if stalled:
                logger.warning(f"Folder {row['name']} on {account_id} returned no progress, stopping")
                break
            if not page.has_more:
                break

        self.storage.mark_folder_synced(row['id'], now=self._now())
        logger.info(f"Folder {row['name']} on {account_id} synced ({progress.processed} processed so far)")
