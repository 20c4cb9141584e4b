"""
Abstract base class for email providers.
Defines the interface that all email providers must implement.
"""

from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ProviderType(str, Enum):
    """Supported email provider types."""
    MICROSOFT = "microsoft"
    GMAIL = "gmail"
    IMAP = "imap"


@dataclass
class EmailAttachment:
    """Represents an email attachment."""
    attachment_id: str
    filename: str
    content_type: str
    size_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attachment_id': self.attachment_id,
            'filename': self.filename,
            'content_type': self.content_type,
            'size_bytes': self.size_bytes
        }


@dataclass
class EmailMessage:
    """Standardized email message structure across all providers."""
    message_id: str
    folder_id: str
    from_address: str
    subject: str
    received_at: datetime

    # Optional fields
    thread_id: Optional[str] = None
    from_name: Optional[str] = None
    to_addresses: List[str] = field(default_factory=list)
    cc_addresses: List[str] = field(default_factory=list)
    bcc_addresses: List[str] = field(default_factory=list)
    body_preview: str = ""
    body_html: Optional[str] = None
    body_text: Optional[str] = None
    sent_at: Optional[datetime] = None
    is_read: bool = False
    is_flagged: bool = False
    is_draft: bool = False
    is_trashed: bool = False
    has_attachments: bool = False
    attachments: List[EmailAttachment] = field(default_factory=list)
    raw_headers: Dict[str, str] = field(default_factory=dict)

    # Assigned by the categorizer during sync
    category: Optional[str] = None

    def header(self, name: str) -> str:
        """Case-insensitive header lookup."""
        for key, value in self.raw_headers.items():
            if key.lower() == name.lower():
                return value or ""
        return ""


@dataclass
class EmailFolder:
    """Represents an email folder/label."""
    folder_id: str
    name: str
    unread_count: int = 0
    total_count: int = 0
    # Special-use flags, well-known names or system label ids
    attributes: List[str] = field(default_factory=list)


@dataclass
class DeltaPage:
    """One page of changes for a folder since a cursor."""
    messages: List[EmailMessage] = field(default_factory=list)
    removed_ids: List[str] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


@dataclass
class ProviderCredentials:
    """Renewed credential material returned by a refresh."""
    access_token: Optional[str]
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


class EmailProvider(ABC):
    """
    Abstract base class for email providers.

    All email providers (Microsoft 365, Gmail, IMAP) must implement this interface.
    An instance is bound to one account's credentials and configuration.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the email provider.

        Args:
            config: Provider-specific configuration dictionary
        """
        self.config = config

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Return the provider type identifier."""
        pass

    @abstractmethod
    async def list_folders(self) -> List[EmailFolder]:
        """
        Get all available folders/labels.

        Returns:
            List of EmailFolder objects
        """
        pass

    @abstractmethod
    async def fetch_delta(
        self,
        folder: EmailFolder,
        cursor: Optional[str] = None,
        limit: int = 100
    ) -> DeltaPage:
        """
        Fetch one page of changes in a folder since a cursor.

        Args:
            folder: The folder to read
            cursor: Opaque position returned by a previous page, None for a full backfill
            limit: Maximum number of messages in the page

        Returns:
            DeltaPage; calling again with the same cursor returns the same page
        """
        pass

    @abstractmethod
    async def fetch_full(self, message_id: str, folder_id: Optional[str] = None) -> Optional[EmailMessage]:
        """
        Get full email content including body.

        Args:
            message_id: The provider message ID to fetch
            folder_id: Provider folder the message was synced from, if known

        Returns:
            EmailMessage with full content, or None if not found
        """
        pass

    @abstractmethod
    async def refresh_credential(self) -> ProviderCredentials:
        """
        Renew the account's credentials.

        Returns:
            ProviderCredentials with the new token material

        Raises:
            CredentialExpired if the provider rejects the refresh
        """
        pass

    async def disconnect(self) -> None:
        """Disconnect from the email provider."""
        pass
