"""
Mail sync core: pulls mail from Microsoft 365, Gmail and IMAP accounts into
one local store with folder mapping, categorization and progress reporting.
"""

from .config import SyncSettings, load_settings
from .providers.base import EmailProvider, EmailMessage, EmailFolder
from .storage import SyncStorage
from .sync import SyncOrchestrator
from .triggers import TriggerQueue
from .webhooks import WebhookIngress
from .dispatch import DispatchJob

__all__ = [
    'SyncSettings',
    'load_settings',
    'EmailProvider',
    'EmailMessage',
    'EmailFolder',
    'SyncStorage',
    'SyncOrchestrator',
    'TriggerQueue',
    'WebhookIngress',
    'DispatchJob',
]
