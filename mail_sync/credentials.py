"""
OAuth credential renewal for connected accounts.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .errors import CredentialExpired, ProviderTransientError
from .providers.base import EmailProvider, ProviderCredentials
from .storage import from_iso, utcnow

logger = logging.getLogger(__name__)


class CredentialRefresher:
    """
    Keeps an account's access token usable for the duration of a run.
    """

    def __init__(self, storage, expiry_skew_seconds: int = 300, refresh_attempts: int = 2):
        self.storage = storage
        self.expiry_skew = timedelta(seconds=expiry_skew_seconds)
        self.refresh_attempts = max(1, refresh_attempts)

    def needs_refresh(self, account: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        """True when the stored token expires within the skew window."""
        expires_at = from_iso(account.get('token_expires_at'))
        if expires_at is None:
            return False
        return expires_at - (now or utcnow()) <= self.expiry_skew

    async def ensure_fresh(self, account: Dict[str, Any], provider: EmailProvider) -> Optional[ProviderCredentials]:
        """Refresh before a run if the token is about to expire."""
        if not self.needs_refresh(account):
            return None
        logger.info(f"Token for account {account['id']} expires soon, refreshing")
        return await self.refresh(account, provider)

    async def refresh(self, account: Dict[str, Any], provider: EmailProvider) -> ProviderCredentials:
        """
        Renew and persist the account's credentials.

        Raises:
            CredentialExpired: every attempt was rejected or failed
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.refresh_attempts + 1):
            try:
                credentials = await provider.refresh_credential()
            except (CredentialExpired, ProviderTransientError) as e:
                last_error = e
                logger.warning(
                    f"Credential refresh attempt {attempt}/{self.refresh_attempts} "
                    f"failed for account {account['id']}: {e}"
                )
                continue

            self.storage.store_credentials(account['id'], credentials)
            logger.info(f"Credentials refreshed for account {account['id']}")
            return credentials

        raise CredentialExpired(f"Credential refresh failed after {self.refresh_attempts} attempts: {last_error}")
