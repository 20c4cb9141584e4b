"""
SQLite storage for the sync core.
Handles persistence of accounts, folders, messages, sender trust and sync runs.
"""

import json
import logging
import secrets
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Any, Optional, Iterable

from .errors import StorageError
from .models import Category, MappingSource, RunStatus
from .providers.base import EmailFolder, EmailMessage, ProviderCredentials

logger = logging.getLogger(__name__)

MAX_PROGRESS_SAMPLES = 120

ACCOUNT_FIELDS = {
    'email_address', 'config', 'access_token', 'refresh_token', 'token_expires_at',
    'client_state', 'sync_state', 'enabled', 'auto_sync_blocked', 'last_sync_at',
    'last_error_code', 'last_error_message', 'consecutive_failures', 'next_retry_at',
    'sync_started_at', 'current_run_id', 'current_folder', 'processed_count', 'total_count',
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as UTC ISO-8601 so stored values compare lexically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SyncStorage:
    """
    SQLite-based storage for synced mail and sync bookkeeping.
    """

    def __init__(self, db_path: str = "mail_sync.db"):
        """
        Initialize storage.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._init_database()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with context management."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=10)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    provider TEXT NOT NULL CHECK (provider IN ('microsoft', 'gmail', 'imap')),
                    email_address TEXT NOT NULL,
                    config_json TEXT,
                    access_token TEXT,
                    refresh_token TEXT,
                    token_expires_at TEXT,
                    client_state TEXT UNIQUE,
                    sync_state TEXT NOT NULL DEFAULT 'pending_setup'
                        CHECK (sync_state IN ('idle', 'syncing', 'error', 'pending_setup')),
                    enabled INTEGER DEFAULT 1,
                    auto_sync_blocked INTEGER DEFAULT 0,
                    last_sync_at TEXT,
                    last_error_code TEXT,
                    last_error_message TEXT,
                    consecutive_failures INTEGER DEFAULT 0,
                    next_retry_at TEXT,
                    sync_started_at TEXT,
                    current_run_id TEXT,
                    current_folder TEXT,
                    processed_count INTEGER DEFAULT 0,
                    total_count INTEGER DEFAULT 0,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS folders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    provider_folder_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    attributes TEXT,
                    canonical_type TEXT NOT NULL DEFAULT 'custom',
                    mapping_confidence REAL DEFAULT 0,
                    mapping_source TEXT DEFAULT 'auto' CHECK (mapping_source IN ('auto', 'manual')),
                    sync_enabled INTEGER DEFAULT 0,
                    cursor TEXT,
                    message_count INTEGER DEFAULT 0,
                    unread_count INTEGER DEFAULT 0,
                    last_synced_at TEXT,
                    last_error TEXT,
                    FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE,
                    UNIQUE(account_id, provider_folder_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    folder_id INTEGER,
                    provider_message_id TEXT NOT NULL,
                    thread_id TEXT,
                    from_address TEXT NOT NULL,
                    from_name TEXT,
                    to_addresses TEXT,
                    cc_addresses TEXT,
                    bcc_addresses TEXT,
                    subject TEXT,
                    body_preview TEXT,
                    body_html TEXT,
                    body_text TEXT,
                    received_at TEXT,
                    sent_at TEXT,
                    is_read INTEGER DEFAULT 0,
                    is_starred INTEGER DEFAULT 0,
                    is_trashed INTEGER DEFAULT 0,
                    is_draft INTEGER DEFAULT 0,
                    category TEXT,
                    category_source TEXT DEFAULT 'auto' CHECK (category_source IN ('auto', 'manual')),
                    has_attachments INTEGER DEFAULT 0,
                    attachments TEXT,
                    raw_headers TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE,
                    FOREIGN KEY (folder_id) REFERENCES folders(id),
                    UNIQUE(account_id, provider_message_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sender_trust (
                    user_id TEXT NOT NULL,
                    sender_email TEXT NOT NULL,
                    verdict TEXT NOT NULL CHECK (verdict IN ('trusted', 'unknown', 'spam')),
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, sender_email)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sync_runs (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    trigger_reason TEXT NOT NULL CHECK (trigger_reason IN ('manual', 'scheduled', 'webhook')),
                    status TEXT NOT NULL CHECK (status IN ('running', 'success', 'failed')),
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    processed_count INTEGER DEFAULT 0,
                    total_count INTEGER DEFAULT 0,
                    current_folder TEXT,
                    error_code TEXT,
                    error_message TEXT,
                    progress_samples TEXT,
                    FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_accounts_user ON accounts(user_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_accounts_state ON accounts(sync_state, enabled)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_messages_from ON messages(from_address)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_messages_folder ON messages(folder_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_messages_category ON messages(category)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_sync_runs_account ON sync_runs(account_id, started_at DESC)")

            logger.info(f"Mail sync database initialized at {self.db_path}")

    # ==================== Account Methods ====================

    def _account_from_row(self, row) -> Dict[str, Any]:
        result = dict(row)
        result['config'] = json.loads(result.pop('config_json') or '{}')
        return result

    def add_account(
        self,
        user_id: str,
        provider: str,
        email_address: str,
        config: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
        account_id: Optional[str] = None,
        client_state: Optional[str] = None
    ) -> str:
        """Register a connected account. New accounts await folder setup."""
        account_id = account_id or uuid.uuid4().hex
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO accounts (
                    id, user_id, provider, email_address, config_json,
                    access_token, refresh_token, token_expires_at, client_state, sync_state
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending_setup')
            """, (
                account_id,
                user_id,
                provider,
                email_address,
                json.dumps(config or {}),
                access_token,
                refresh_token,
                to_iso(token_expires_at),
                client_state or secrets.token_hex(16),
            ))
        logger.info(f"Added {provider} account {account_id} for {email_address}")
        return account_id

    def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Get account by ID."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
            return self._account_from_row(row) if row else None

    def find_account_by_client_state(self, client_state: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE client_state = ?", (client_state,)
            ).fetchone()
            return self._account_from_row(row) if row else None

    def find_accounts_by_email(self, email_address: str, provider: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM accounts WHERE lower(email_address) = lower(?)"
        params: List[Any] = [email_address]
        if provider:
            query += " AND provider = ?"
            params.append(provider)
        with self._get_connection() as conn:
            return [self._account_from_row(r) for r in conn.execute(query, params).fetchall()]

    def update_account(self, account_id: str, **kwargs) -> bool:
        """Update account columns."""
        updates = {k: v for k, v in kwargs.items() if k in ACCOUNT_FIELDS}
        if not updates:
            return False

        if 'config' in updates:
            updates['config_json'] = json.dumps(updates.pop('config') or {})
        for key, value in list(updates.items()):
            if isinstance(value, datetime):
                updates[key] = to_iso(value)
            elif hasattr(value, 'value'):
                updates[key] = value.value

        set_clause = ', '.join(f"{k} = ?" for k in updates.keys())
        values = list(updates.values()) + [account_id]

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE accounts SET {set_clause}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                values
            )
            return cursor.rowcount > 0

    def store_credentials(self, account_id: str, credentials: ProviderCredentials) -> None:
        """Persist renewed token material."""
        updates: Dict[str, Any] = {'token_expires_at': credentials.expires_at}
        if credentials.access_token is not None:
            updates['access_token'] = credentials.access_token
        if credentials.refresh_token is not None:
            updates['refresh_token'] = credentials.refresh_token
        self.update_account(account_id, **updates)

    def disable_account(self, account_id: str) -> bool:
        """Soft-disable an account; synced data is retained."""
        return self.update_account(account_id, enabled=0)

    def complete_setup(self, account_id: str) -> bool:
        """Move an account out of pending_setup. No-op for any other state."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE accounts SET sync_state = 'idle', updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND sync_state = 'pending_setup'
            """, (account_id,))
            return cursor.rowcount > 0

    # ==================== Run Lifecycle ====================

    def begin_sync(
        self,
        account_id: str,
        trigger_reason: str,
        clear_block: bool = False,
        history_limit: int = 50,
        now: Optional[datetime] = None
    ) -> Optional[str]:
        """
        Atomically move an account to syncing and open a Sync Run.

        Returns:
            New run ID, or None if the account was not idle/error (lost the race)
        """
        run_id = uuid.uuid4().hex
        started = to_iso(now or utcnow())
        block_clause = ", auto_sync_blocked = 0" if clear_block else ""

        with self._get_connection() as conn:
            cursor = conn.execute(f"""
                UPDATE accounts
                SET sync_state = 'syncing', sync_started_at = ?, current_run_id = ?,
                    current_folder = NULL, processed_count = 0, total_count = 0{block_clause},
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND enabled = 1 AND sync_state IN ('idle', 'error')
            """, (started, run_id, account_id))
            if cursor.rowcount == 0:
                return None

            conn.execute("""
                INSERT INTO sync_runs (id, account_id, trigger_reason, status, started_at, progress_samples)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (run_id, account_id, trigger_reason, RunStatus.RUNNING.value, started, json.dumps([[started, 0]])))

            # Keep history bounded per account
            conn.execute("""
                DELETE FROM sync_runs
                WHERE account_id = ? AND id NOT IN (
                    SELECT id FROM sync_runs WHERE account_id = ?
                    ORDER BY started_at DESC LIMIT ?
                )
            """, (account_id, account_id, history_limit))

        return run_id

    def record_progress(
        self,
        account_id: str,
        run_id: str,
        processed: int,
        total: int,
        current_folder: Optional[str],
        now: Optional[datetime] = None
    ) -> None:
        """Persist counters and append a progress sample."""
        stamp = to_iso(now or utcnow())
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE accounts SET processed_count = ?, total_count = ?, current_folder = ?
                WHERE id = ? AND current_run_id = ?
            """, (processed, total, current_folder, account_id, run_id))

            row = conn.execute("SELECT progress_samples FROM sync_runs WHERE id = ?", (run_id,)).fetchone()
            samples = json.loads(row['progress_samples'] or '[]') if row else []
            samples.append([stamp, processed])
            samples = samples[-MAX_PROGRESS_SAMPLES:]
            conn.execute("""
                UPDATE sync_runs
                SET processed_count = ?, total_count = ?, current_folder = ?, progress_samples = ?
                WHERE id = ?
            """, (processed, total, current_folder, json.dumps(samples), run_id))

    def finish_run_success(self, account_id: str, run_id: str, now: Optional[datetime] = None) -> None:
        stamp = to_iso(now or utcnow())
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE sync_runs
                SET status = ?, completed_at = ?, current_folder = NULL, total_count = processed_count
                WHERE id = ?
            """, (RunStatus.SUCCESS.value, stamp, run_id))
            conn.execute("""
                UPDATE accounts
                SET sync_state = 'idle', last_sync_at = ?, last_error_code = NULL,
                    last_error_message = NULL, consecutive_failures = 0, next_retry_at = NULL,
                    current_folder = NULL, total_count = processed_count, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND current_run_id = ?
            """, (stamp, account_id, run_id))

    def finish_run_failure(
        self,
        account_id: str,
        run_id: str,
        error_code: str,
        error_message: str,
        next_retry_at: Optional[datetime],
        block_auto_sync: bool = False,
        now: Optional[datetime] = None
    ) -> None:
        """Fail a run. Synced data and counters are left as they are."""
        stamp = to_iso(now or utcnow())
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE sync_runs SET status = ?, completed_at = ?, error_code = ?, error_message = ?
                WHERE id = ? AND status = ?
            """, (RunStatus.FAILED.value, stamp, error_code, error_message, run_id, RunStatus.RUNNING.value))
            conn.execute(f"""
                UPDATE accounts
                SET sync_state = 'error', last_error_code = ?, last_error_message = ?,
                    consecutive_failures = consecutive_failures + 1, next_retry_at = ?,
                    auto_sync_blocked = {'1' if block_auto_sync else 'auto_sync_blocked'},
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND current_run_id IS ? AND sync_state = 'syncing'
            """, (error_code, error_message, to_iso(next_retry_at), account_id, run_id))

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,)).fetchone()
            if not row:
                return None
            result = dict(row)
            result['progress_samples'] = json.loads(result['progress_samples'] or '[]')
            return result

    def get_runs(self, account_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Get sync history, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT id, account_id, trigger_reason, status, started_at, completed_at,
                       processed_count, total_count, current_folder, error_code, error_message
                FROM sync_runs WHERE account_id = ?
                ORDER BY started_at DESC LIMIT ?
            """, (account_id, limit)).fetchall()
            return [dict(r) for r in rows]

    def get_stale_syncing(self, cutoff: datetime) -> List[Dict[str, Any]]:
        """Accounts stuck in syncing since before cutoff."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM accounts
                WHERE sync_state = 'syncing' AND (sync_started_at IS NULL OR sync_started_at < ?)
            """, (to_iso(cutoff),)).fetchall()
            return [self._account_from_row(r) for r in rows]

    def get_due_for_poll(self, cutoff: datetime) -> List[Dict[str, Any]]:
        """Enabled idle accounts not synced since cutoff."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM accounts
                WHERE enabled = 1 AND auto_sync_blocked = 0 AND sync_state = 'idle'
                  AND (last_sync_at IS NULL OR last_sync_at < ?)
            """, (to_iso(cutoff),)).fetchall()
            return [self._account_from_row(r) for r in rows]

    def get_due_for_retry(self, now: datetime, max_failures: int) -> List[Dict[str, Any]]:
        """Failed accounts whose retry time has come."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM accounts
                WHERE enabled = 1 AND auto_sync_blocked = 0 AND sync_state = 'error'
                  AND next_retry_at IS NOT NULL AND next_retry_at <= ?
                  AND consecutive_failures < ?
            """, (to_iso(now), max_failures)).fetchall()
            return [self._account_from_row(r) for r in rows]

    # ==================== Folder Methods ====================

    def _folder_from_row(self, row) -> Dict[str, Any]:
        result = dict(row)
        result['attributes'] = json.loads(result['attributes'] or '[]')
        return result

    def upsert_folder(
        self,
        account_id: str,
        folder: EmailFolder,
        canonical_type: str,
        confidence: float,
        sync_enabled: bool
    ) -> Dict[str, Any]:
        """
        Insert a newly discovered folder, or refresh name and counts of a known one.

        Mapping and enablement of known folders are left untouched.
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO folders (
                    account_id, provider_folder_id, name, attributes, canonical_type,
                    mapping_confidence, mapping_source, sync_enabled, message_count, unread_count
                ) VALUES (?, ?, ?, ?, ?, ?, 'auto', ?, ?, ?)
                ON CONFLICT(account_id, provider_folder_id) DO UPDATE SET
                    name = excluded.name,
                    attributes = excluded.attributes,
                    message_count = excluded.message_count,
                    unread_count = excluded.unread_count
            """, (
                account_id,
                folder.folder_id,
                folder.name,
                json.dumps(folder.attributes),
                canonical_type,
                confidence,
                int(sync_enabled),
                folder.total_count,
                folder.unread_count,
            ))
            row = conn.execute("""
                SELECT * FROM folders WHERE account_id = ? AND provider_folder_id = ?
            """, (account_id, folder.folder_id)).fetchone()
            return self._folder_from_row(row)

    def get_folders(self, account_id: str, enabled_only: bool = False) -> List[Dict[str, Any]]:
        """Get folders for an account."""
        query = "SELECT * FROM folders WHERE account_id = ?"
        if enabled_only:
            query += " AND sync_enabled = 1"
        with self._get_connection() as conn:
            return [self._folder_from_row(r) for r in conn.execute(query, (account_id,)).fetchall()]

    def get_folder(self, account_id: str, provider_folder_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT * FROM folders WHERE account_id = ? AND provider_folder_id = ?
            """, (account_id, provider_folder_id)).fetchone()
            return self._folder_from_row(row) if row else None

    def confirm_folder(
        self,
        account_id: str,
        provider_folder_id: str,
        canonical_type: str,
        mapping_source: str
    ) -> bool:
        """Persist a confirmed mapping and enable the folder for sync."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE folders
                SET canonical_type = ?, mapping_source = ?, sync_enabled = 1,
                    mapping_confidence = CASE WHEN ? = 'manual' THEN 1.0 ELSE mapping_confidence END
                WHERE account_id = ? AND provider_folder_id = ?
            """, (canonical_type, mapping_source, mapping_source, account_id, provider_folder_id))
            return cursor.rowcount > 0

    def advance_folder_cursor(self, folder_row_id: int, cursor_value: Optional[str]) -> None:
        """Store the position after a committed page."""
        with self._get_connection() as conn:
            conn.execute("UPDATE folders SET cursor = ? WHERE id = ?", (cursor_value, folder_row_id))

    def mark_folder_synced(self, folder_row_id: int, now: Optional[datetime] = None) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE folders SET last_synced_at = ?, last_error = NULL WHERE id = ?",
                (to_iso(now or utcnow()), folder_row_id)
            )

    def set_folder_error(self, folder_row_id: int, message: str) -> None:
        with self._get_connection() as conn:
            conn.execute("UPDATE folders SET last_error = ? WHERE id = ?", (message, folder_row_id))

    # ==================== Message Methods ====================

    def upsert_messages(self, account_id: str, folder_row_id: int, messages: Iterable[EmailMessage]) -> int:
        """
        Upsert a page of messages in one transaction.

        A local soft-delete survives re-sync and a manual category is never overwritten.

        Returns:
            Number of messages written
        """
        count = 0
        with self._get_connection() as conn:
            for msg in messages:
                conn.execute("""
                    INSERT INTO messages (
                        account_id, folder_id, provider_message_id, thread_id,
                        from_address, from_name, to_addresses, cc_addresses, bcc_addresses,
                        subject, body_preview, body_html, body_text, received_at, sent_at,
                        is_read, is_starred, is_trashed, is_draft, category, category_source,
                        has_attachments, attachments, raw_headers
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'auto', ?, ?, ?)
                    ON CONFLICT(account_id, provider_message_id) DO UPDATE SET
                        folder_id = excluded.folder_id,
                        thread_id = excluded.thread_id,
                        from_address = excluded.from_address,
                        from_name = excluded.from_name,
                        to_addresses = excluded.to_addresses,
                        cc_addresses = excluded.cc_addresses,
                        bcc_addresses = excluded.bcc_addresses,
                        subject = excluded.subject,
                        body_preview = excluded.body_preview,
                        body_html = COALESCE(excluded.body_html, messages.body_html),
                        body_text = COALESCE(excluded.body_text, messages.body_text),
                        received_at = excluded.received_at,
                        sent_at = excluded.sent_at,
                        is_read = excluded.is_read,
                        is_starred = excluded.is_starred,
                        is_trashed = MAX(messages.is_trashed, excluded.is_trashed),
                        is_draft = excluded.is_draft,
                        category = CASE WHEN messages.category_source = 'manual'
                                        THEN messages.category ELSE excluded.category END,
                        has_attachments = excluded.has_attachments,
                        attachments = excluded.attachments,
                        raw_headers = excluded.raw_headers,
                        updated_at = CURRENT_TIMESTAMP
                """, (
                    account_id,
                    folder_row_id,
                    msg.message_id,
                    msg.thread_id,
                    msg.from_address or '',
                    msg.from_name,
                    json.dumps(msg.to_addresses),
                    json.dumps(msg.cc_addresses),
                    json.dumps(msg.bcc_addresses),
                    msg.subject,
                    msg.body_preview[:500] if msg.body_preview else None,
                    msg.body_html,
                    msg.body_text,
                    to_iso(msg.received_at),
                    to_iso(msg.sent_at),
                    int(msg.is_read),
                    int(msg.is_flagged),
                    int(msg.is_trashed),
                    int(msg.is_draft),
                    msg.category or Category.UNSCREENED.value,
                    int(msg.has_attachments),
                    json.dumps([a.to_dict() for a in msg.attachments]),
                    json.dumps(msg.raw_headers) if msg.raw_headers else None,
                ))
                count += 1
        return count

    def soft_delete_messages(self, account_id: str, provider_message_ids: List[str]) -> int:
        """Mark messages removed at the provider as trashed."""
        if not provider_message_ids:
            return 0
        placeholders = ','.join('?' for _ in provider_message_ids)
        with self._get_connection() as conn:
            cursor = conn.execute(f"""
                UPDATE messages SET is_trashed = 1, updated_at = CURRENT_TIMESTAMP
                WHERE account_id = ? AND provider_message_id IN ({placeholders})
            """, [account_id] + list(provider_message_ids))
            return cursor.rowcount

    def _message_from_row(self, row) -> Dict[str, Any]:
        result = dict(row)
        for key in ('to_addresses', 'cc_addresses', 'bcc_addresses', 'attachments'):
            result[key] = json.loads(result[key] or '[]')
        result['raw_headers'] = json.loads(result['raw_headers'] or '{}')
        return result

    def get_message(self, account_id: str, provider_message_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT * FROM messages WHERE account_id = ? AND provider_message_id = ?
            """, (account_id, provider_message_id)).fetchone()
            return self._message_from_row(row) if row else None

    def count_messages(self, account_id: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM messages WHERE account_id = ?", (account_id,)
            ).fetchone()
            return row['n']

    def get_sender_messages(self, user_id: str, sender_email: str) -> List[Dict[str, Any]]:
        """Auto-categorized messages from one sender across the user's accounts."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT m.* FROM messages m
                JOIN accounts a ON a.id = m.account_id
                WHERE a.user_id = ? AND lower(m.from_address) = lower(?)
                  AND m.category_source = 'auto'
            """, (user_id, sender_email)).fetchall()
            return [self._message_from_row(r) for r in rows]

    def set_message_category(self, message_row_id: int, category: str, source: str = MappingSource.AUTO.value) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE messages SET category = ?, category_source = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (category, source, message_row_id))

    def update_message_bodies(self, account_id: str, msg: EmailMessage) -> bool:
        """Store hydrated content for an already synced message."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE messages
                SET body_html = ?, body_text = ?, attachments = ?, has_attachments = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE account_id = ? AND provider_message_id = ?
            """, (
                msg.body_html,
                msg.body_text,
                json.dumps([a.to_dict() for a in msg.attachments]),
                int(msg.has_attachments),
                account_id,
                msg.message_id,
            ))
            return cursor.rowcount > 0

    # ==================== Sender Trust ====================

    def get_sender_trust(self, user_id: str, sender_email: str) -> Optional[str]:
        """Return the verdict for a sender, or None if never screened."""
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT verdict FROM sender_trust WHERE user_id = ? AND sender_email = ?
            """, (user_id, sender_email.lower())).fetchone()
            return row['verdict'] if row else None

    def set_sender_trust(self, user_id: str, sender_email: str, verdict: str, now: Optional[datetime] = None) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO sender_trust (user_id, sender_email, verdict, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, sender_email) DO UPDATE SET
                    verdict = excluded.verdict, updated_at = excluded.updated_at
            """, (user_id, sender_email.lower(), verdict, to_iso(now or utcnow())))

