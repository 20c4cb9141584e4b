"""
Email providers for different email services.
"""

from typing import Any, Dict

from .base import (
    DeltaPage,
    EmailFolder,
    EmailMessage,
    EmailProvider,
    ProviderCredentials,
    ProviderType,
)
from .gmail import GmailProvider
from .imap import IMAPProvider
from .microsoft import MicrosoftProvider


def create_provider(account: Dict[str, Any], settings) -> EmailProvider:
    """
    Build a provider bound to one stored account.

    Args:
        account: Account row as returned by SyncStorage.get_account
        settings: SyncSettings carrying the OAuth client registrations

    Returns:
        EmailProvider instance for the account's provider type
    """
    provider_type = ProviderType(account['provider'])
    config = dict(account.get('config') or {})
    config.setdefault('access_token', account.get('access_token'))
    config.setdefault('refresh_token', account.get('refresh_token'))

    if provider_type == ProviderType.MICROSOFT:
        config.setdefault('client_id', settings.microsoft_client_id)
        config.setdefault('client_secret', settings.microsoft_client_secret)
        config.setdefault('tenant_id', settings.microsoft_tenant)
        return MicrosoftProvider(config)
    if provider_type == ProviderType.GMAIL:
        config.setdefault('client_id', settings.google_client_id)
        config.setdefault('client_secret', settings.google_client_secret)
        config.setdefault('token_uri', settings.google_token_uri)
        return GmailProvider(config)

    config.setdefault('username', account.get('email_address'))
    return IMAPProvider(config)


__all__ = [
    'DeltaPage',
    'EmailFolder',
    'EmailMessage',
    'EmailProvider',
    'ProviderCredentials',
    'ProviderType',
    'GmailProvider',
    'IMAPProvider',
    'MicrosoftProvider',
    'create_provider',
]
