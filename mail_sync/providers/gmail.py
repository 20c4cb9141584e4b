"""
Gmail email provider implementation.
Uses Google Gmail API history records for incremental sync.
"""

import asyncio
import base64
import json
import logging
from typing import List, Dict, Any, Optional, Tuple
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..errors import (
    CredentialExpired,
    ProviderPermanentError,
    ProviderRateLimited,
    ProviderTransientError,
    classify_http_status,
    parse_retry_after,
)
from .base import (
    DeltaPage,
    EmailAttachment,
    EmailFolder,
    EmailMessage,
    EmailProvider,
    ProviderCredentials,
    ProviderType,
)

logger = logging.getLogger(__name__)

HISTORY_TYPES = ['messageAdded', 'messageDeleted', 'labelAdded']

# Quota errors Gmail reports as 403 rather than 429
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


def parse_cursor(cursor: Optional[str]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """
    Split a Gmail cursor.

    Returns:
        (mode, history_id, page_token) where mode is 'page', 'history' or None
    """
    if not cursor:
        return None, None, None
    parts = cursor.split(':', 2)
    mode = parts[0]
    history_id = parts[1] if len(parts) > 1 else None
    page_token = parts[2] if len(parts) > 2 and parts[2] else None
    if mode not in ('page', 'history') or not history_id:
        logger.warning(f"Ignoring malformed Gmail cursor {cursor!r}")
        return None, None, None
    return mode, history_id, page_token


def _error_reasons(error: HttpError) -> List[str]:
    """Reason codes from a Gmail error body ({"error": {"errors": [{"reason": ...}]}})."""
    try:
        body = json.loads(error.content)
    except (TypeError, ValueError):
        return []
    details = body.get('error', {}) if isinstance(body, dict) else {}
    if not isinstance(details, dict):
        return []
    return [item.get('reason', '') for item in details.get('errors', []) if isinstance(item, dict)]


class GmailProvider(EmailProvider):
    """
    Gmail email provider using Google API with stored OAuth tokens.
    """

    SCOPES = ['https://www.googleapis.com/auth/gmail.readonly']

    def __init__(self, config: Dict[str, Any], service=None):
        """
        Initialize Gmail provider.

        Config keys:
            access_token: Current OAuth access token
            refresh_token: OAuth refresh token
            client_id: OAuth client ID
            client_secret: OAuth client secret
            token_uri: Token endpoint (default Google's)
        """
        super().__init__(config)
        self._credentials = Credentials(
            token=config.get('access_token'),
            refresh_token=config.get('refresh_token'),
            token_uri=config.get('token_uri', 'https://oauth2.googleapis.com/token'),
            client_id=config.get('client_id'),
            client_secret=config.get('client_secret'),
            scopes=self.SCOPES
        )
        self._service = service

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GMAIL

    def _get_service(self):
        """Get or create Gmail API service."""
        if self._service is None:
            self._service = build('gmail', 'v1', credentials=self._credentials, cache_discovery=False)
        return self._service

    async def _execute(self, build_request, folder_scoped: bool = False) -> Dict[str, Any]:
        """Execute a Gmail API request in the thread pool, classifying failures."""
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(
                None, lambda: build_request(self._get_service()).execute()
            )
        except HttpError as e:
            if e.resp.status == 403 and RATE_LIMIT_REASONS.intersection(_error_reasons(e)):
                raise ProviderRateLimited(
                    f"Gmail quota exceeded: {e}",
                    retry_after=parse_retry_after(e.resp.get('retry-after'))
                ) from e
            raise classify_http_status(
                e.resp.status,
                str(e),
                retry_after=e.resp.get('retry-after'),
                folder_scoped=folder_scoped
            ) from e
        except RefreshError as e:
            raise CredentialExpired(f"Gmail token rejected: {e}") from e
        except (TransportError, OSError) as e:
            raise ProviderTransientError(f"Gmail request failed: {e}") from e

    def _decode_base64(self, data: str) -> str:
        """Decode base64url encoded data."""
        try:
            padding = 4 - len(data) % 4
            if padding != 4:
                data += '=' * padding
            return base64.urlsafe_b64decode(data).decode('utf-8', errors='replace')
        except (ValueError, TypeError):
            return ""

    def _get_header(self, headers: List[Dict], name: str) -> str:
        """Get header value by name."""
        for header in headers:
            if header.get('name', '').lower() == name.lower():
                return header.get('value', '')
        return ""

    def _split_addresses(self, header_value: str) -> List[str]:
        addresses = []
        if header_value:
            for addr in header_value.split(','):
                addr = addr.strip()
                if '<' in addr:
                    addr = addr.split('<')[1].split('>')[0]
                if addr:
                    addresses.append(addr)
        return addresses

    def _parse_email(self, msg: Dict[str, Any], folder_id: str) -> EmailMessage:
        """Parse Gmail API message to EmailMessage."""
        headers = msg.get('payload', {}).get('headers', [])

        from_header = self._get_header(headers, 'From')
        from_name = None
        if '<' in from_header and '>' in from_header:
            from_name = from_header.split('<')[0].strip().strip('"') or None
            from_address = from_header.split('<')[1].split('>')[0]
        else:
            from_address = from_header.strip()

        received_at = None
        if msg.get('internalDate'):
            received_at = datetime.fromtimestamp(int(msg['internalDate']) / 1000, tz=timezone.utc)
        date_header = self._get_header(headers, 'Date')
        sent_at = None
        if date_header:
            try:
                sent_at = parsedate_to_datetime(date_header)
            except (TypeError, ValueError):
                pass
        received_at = received_at or sent_at or datetime.now(timezone.utc)

        payload = msg.get('payload', {})

        def extract_body(part: Dict) -> tuple:
            text = ""
            html = None
            if part.get('mimeType') == 'text/plain':
                data = part.get('body', {}).get('data', '')
                if data:
                    text = self._decode_base64(data)
            elif part.get('mimeType') == 'text/html':
                data = part.get('body', {}).get('data', '')
                if data:
                    html = self._decode_base64(data)
            elif 'parts' in part:
                for subpart in part['parts']:
                    sub_text, sub_html = extract_body(subpart)
                    if sub_text:
                        text = sub_text
                    if sub_html:
                        html = sub_html
            return text, html

        body_text, body_html = extract_body(payload)

        attachments = []

        def extract_attachments(part: Dict):
            filename = part.get('filename', '')
            if filename:
                attachments.append(EmailAttachment(
                    attachment_id=part.get('body', {}).get('attachmentId', ''),
                    filename=filename,
                    content_type=part.get('mimeType', 'application/octet-stream'),
                    size_bytes=part.get('body', {}).get('size', 0)
                ))
            for subpart in part.get('parts', []):
                extract_attachments(subpart)

        extract_attachments(payload)

        labels = msg.get('labelIds', [])

        return EmailMessage(
            message_id=msg.get('id', ''),
            thread_id=msg.get('threadId'),
            folder_id=folder_id,
            from_address=from_address,
            from_name=from_name,
            to_addresses=self._split_addresses(self._get_header(headers, 'To')),
            cc_addresses=self._split_addresses(self._get_header(headers, 'Cc')),
            subject=self._get_header(headers, 'Subject'),
            body_preview=msg.get('snippet', '')[:500],
            body_html=body_html,
            body_text=body_text or None,
            received_at=received_at,
            sent_at=sent_at,
            is_read='UNREAD' not in labels,
            is_flagged='STARRED' in labels,
            is_draft='DRAFT' in labels,
            is_trashed='TRASH' in labels,
            has_attachments=len(attachments) > 0,
            attachments=attachments,
            raw_headers={h['name']: h['value'] for h in headers}
        )

    async def list_folders(self) -> List[EmailFolder]:
        """Get all Gmail labels (folders)."""
        results = await self._execute(lambda s: s.users().labels().list(userId='me'))

        folders = []
        for label in results.get('labels', []):
            folder = EmailFolder(folder_id=label['id'], name=label['name'])
            if label.get('type') == 'system':
                folder.attributes.append(label['id'])
            try:
                details = await self._execute(
                    lambda s, lid=label['id']: s.users().labels().get(userId='me', id=lid)
                )
                folder.unread_count = details.get('messagesUnread', 0)
                folder.total_count = details.get('messagesTotal', 0)
            except ProviderPermanentError as e:
                logger.warning(f"Could not get counts for label {label['name']}: {e}")
            folders.append(folder)

        return folders

    async def _fetch_messages(self, ids: List[str], folder_id: str) -> List[EmailMessage]:
        messages = []
        for message_id in ids:
            try:
                msg = await self._execute(
                    lambda s, mid=message_id: s.users().messages().get(userId='me', id=mid, format='full')
                )
            except ProviderPermanentError:
                # Deleted between listing and fetching
                logger.debug(f"Gmail message {message_id} vanished before fetch")
                continue
            messages.append(self._parse_email(msg, folder_id))
        return messages

    async def _backfill_page(
        self,
        folder: EmailFolder,
        history_id: Optional[str],
        page_token: Optional[str],
        limit: int
    ) -> DeltaPage:
        if history_id is None:
            profile = await self._execute(lambda s: s.users().getProfile(userId='me'))
            history_id = str(profile.get('historyId'))

        params = {'userId': 'me', 'labelIds': [folder.folder_id], 'maxResults': limit}
        if page_token:
            params['pageToken'] = page_token
        result = await self._execute(
            lambda s: s.users().messages().list(**params), folder_scoped=True
        )

        ids = [m['id'] for m in result.get('messages', [])]
        messages = await self._fetch_messages(ids, folder.folder_id)
        next_token = result.get('nextPageToken')
        if next_token:
            return DeltaPage(messages=messages, next_cursor=f"page:{history_id}:{next_token}", has_more=True)
        return DeltaPage(messages=messages, next_cursor=f"history:{history_id}", has_more=False)

    async def fetch_delta(
        self,
        folder: EmailFolder,
        cursor: Optional[str] = None,
        limit: int = 100
    ) -> DeltaPage:
        """
        Fetch one page of changes for a label.

        Cursors are 'page:<historyId>:<pageToken>' while backfilling and
        'history:<historyId>[:<pageToken>]' once caught up.
        """
        mode, history_id, page_token = parse_cursor(cursor)
        if mode is None:
            return await self._backfill_page(folder, None, None, limit)
        if mode == 'page':
            return await self._backfill_page(folder, history_id, page_token, limit)

        params = {
            'userId': 'me',
            'startHistoryId': history_id,
            'labelId': folder.folder_id,
            'historyTypes': HISTORY_TYPES,
            'maxResults': limit,
        }
        if page_token:
            params['pageToken'] = page_token
        try:
            result = await self._execute(lambda s: s.users().history().list(**params))
        except ProviderPermanentError as e:
            if "HTTP 404" not in str(e):
                raise
            logger.info(f"Gmail history {history_id} expired for {folder.name}, restarting backfill")
            return await self._backfill_page(folder, None, None, limit)

        added: List[str] = []
        removed: List[str] = []
        for record in result.get('history', []):
            for entry in record.get('messagesAdded', []) + record.get('labelsAdded', []):
                message = entry.get('message', {})
                if folder.folder_id in message.get('labelIds', [folder.folder_id]):
                    if message.get('id') and message['id'] not in added:
                        added.append(message['id'])
            for entry in record.get('messagesDeleted', []):
                message_id = entry.get('message', {}).get('id')
                if message_id:
                    removed.append(message_id)

        added = [m for m in added if m not in removed]
        messages = await self._fetch_messages(added, folder.folder_id)

        next_token = result.get('nextPageToken')
        if next_token:
            next_cursor = f"history:{history_id}:{next_token}"
        else:
            next_cursor = f"history:{result.get('historyId') or history_id}"
        return DeltaPage(
            messages=messages,
            removed_ids=removed,
            next_cursor=next_cursor,
            has_more=bool(next_token)
        )

    async def fetch_full(self, message_id: str, folder_id: Optional[str] = None) -> Optional[EmailMessage]:
        """Get full email content."""
        try:
            msg = await self._execute(
                lambda s: s.users().messages().get(userId='me', id=message_id, format='full')
            )
        except ProviderPermanentError as e:
            logger.warning(f"Message {message_id} not retrievable: {e}")
            return None
        labels = msg.get('labelIds', [])
        return self._parse_email(msg, folder_id or (labels[0] if labels else 'INBOX'))

    async def refresh_credential(self) -> ProviderCredentials:
        """Refresh the OAuth access token with google-auth."""
        if not self._credentials.refresh_token:
            raise CredentialExpired("No refresh token stored for Gmail account")

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, lambda: self._credentials.refresh(Request()))
        except RefreshError as e:
            raise CredentialExpired(f"Gmail token refresh rejected: {e}") from e
        except TransportError as e:
            raise ProviderTransientError(f"Gmail token endpoint unreachable: {e}") from e

        expiry = self._credentials.expiry
        if expiry is not None and expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        logger.info("Gmail token refreshed")
        return ProviderCredentials(
            access_token=self._credentials.token,
            refresh_token=self._credentials.refresh_token,
            expires_at=expiry
        )

    async def disconnect(self) -> None:
        """Disconnect from Gmail API."""
        self._service = None
