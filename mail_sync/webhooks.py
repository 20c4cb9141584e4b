"""
Provider change-notification handling.
Resolves Microsoft Graph and Gmail Pub/Sub notifications to accounts and
enqueues debounced sync requests. Callers always acknowledge the provider.
"""

import base64
import binascii
import json
import logging
from typing import Any, Dict, List

from .models import SyncState, TriggerReason
from .triggers import TriggerQueue

logger = logging.getLogger(__name__)


class WebhookIngress:
    """
    Turns provider notifications into trigger-queue entries.
    """

    def __init__(self, storage, queue: TriggerQueue, debounce_seconds: float = 10.0):
        self.storage = storage
        self.queue = queue
        self.debounce_seconds = debounce_seconds

    def _enqueue(self, account: Dict[str, Any]) -> bool:
        if not account['enabled'] or account['sync_state'] == SyncState.PENDING_SETUP.value:
            logger.info(f"Ignoring notification for inactive account {account['id']}")
            return False
        return self.queue.enqueue(account['id'], TriggerReason.WEBHOOK, delay=self.debounce_seconds)

    def handle_microsoft(self, payload: Dict[str, Any]) -> List[str]:
        """
        Handle a Graph change-notification batch.

        Returns:
            IDs of accounts a sync was requested for
        """
        queued: List[str] = []
        try:
            for notification in payload.get('value', []):
                client_state = notification.get('clientState')
                if not client_state:
                    logger.warning("Graph notification without clientState ignored")
                    continue
                account = self.storage.find_account_by_client_state(client_state)
                if account is None or account['provider'] != 'microsoft':
                    logger.warning("Graph notification with unknown clientState ignored")
                    continue
                if self._enqueue(account):
                    queued.append(account['id'])
        except Exception:
            logger.exception("Failed to process Microsoft notification")
        return queued

    def handle_google(self, envelope: Dict[str, Any]) -> List[str]:
        """
        Handle a Gmail Pub/Sub push envelope.

        Returns:
            IDs of accounts a sync was requested for
        """
        queued: List[str] = []
        try:
            data = (envelope.get('message') or {}).get('data')
            if not data:
                logger.warning("Pub/Sub push without message data ignored")
                return queued
            try:
                notification = json.loads(base64.b64decode(data).decode('utf-8'))
            except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning(f"Undecodable Pub/Sub message ignored: {e}")
                return queued

            email_address = notification.get('emailAddress')
            if not email_address:
                logger.warning("Gmail notification without emailAddress ignored")
                return queued
            accounts = self.storage.find_accounts_by_email(email_address, provider='gmail')
            if not accounts:
                logger.warning(f"Gmail notification for unknown mailbox {email_address}")
            for account in accounts:
                if self._enqueue(account):
                    queued.append(account['id'])
        except Exception:
            logger.exception("Failed to process Gmail notification")
        return queued
