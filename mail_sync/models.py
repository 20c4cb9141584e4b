"""
Enumerations shared across the sync core.
"""

from enum import Enum


class SyncState(str, Enum):
    """Per-account synchronization state."""
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    PENDING_SETUP = "pending_setup"


class TriggerReason(str, Enum):
    """Why a sync run was started."""
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


class RunStatus(str, Enum):
    """Lifecycle of a Sync Run."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class CanonicalFolder(str, Enum):
    """Logical mailbox roles all provider folders are mapped onto."""
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"
    CUSTOM = "custom"


class MappingSource(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class Category(str, Enum):
    """Delivery category assigned to each message."""
    INBOX = "inbox"
    FEED = "feed"
    RECEIPTS = "receipts"
    SPAM = "spam"
    UNSCREENED = "unscreened"


class TrustVerdict(str, Enum):
    TRUSTED = "trusted"
    UNKNOWN = "unknown"
    SPAM = "spam"
