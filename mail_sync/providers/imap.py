"""
IMAP email provider implementation.
Supports generic IMAP servers with SSL/TLS and username/password or app-password auth.
"""

import asyncio
import email
import imaplib
import logging
import re
from datetime import datetime, timezone
from email.header import decode_header
from email.utils import parseaddr, parsedate_to_datetime
from typing import List, Dict, Any, Optional, Tuple

from ..errors import (
    CredentialExpired,
    FolderUnavailable,
    ProviderPermanentError,
    ProviderTransientError,
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

# (\HasNoChildren \Sent) "/" "Sent"
LIST_LINE_RE = re.compile(r'\(([^)]*)\)\s+(?:"([^"]*)"|NIL)\s+(.+)')
UID_RE = re.compile(rb'UID (\d+)')
FLAGS_RE = re.compile(rb'FLAGS \(([^)]*)\)')


def parse_list_line(line) -> Optional[Tuple[str, List[str], str]]:
    """
    Parse a LIST response line.

    Returns:
        (name, attributes, delimiter) or None if the line is not parseable
    """
    if isinstance(line, bytes):
        line = line.decode('utf-8', errors='replace')
    if not line:
        return None

    match = LIST_LINE_RE.match(line.strip())
    if not match:
        logger.warning(f"Could not parse folder line: {line}")
        return None

    flags_str, delimiter, name = match.groups()
    name = name.strip()
    if name.startswith('"') and name.endswith('"'):
        name = name[1:-1]
    attributes = flags_str.split() if flags_str else []
    return name, attributes, delimiter or ''


def parse_cursor(cursor: Optional[str]) -> Tuple[Optional[int], int]:
    """Split a '<uidvalidity>:<last_uid>' cursor."""
    if not cursor or ':' not in cursor:
        return None, 0
    validity, last_uid = cursor.split(':', 1)
    try:
        return int(validity), int(last_uid)
    except ValueError:
        logger.warning(f"Ignoring malformed IMAP cursor {cursor!r}")
        return None, 0


def _quote(name: str) -> str:
    return '"' + name.replace('\\', '\\\\').replace('"', '\\"') + '"'


class IMAPProvider(EmailProvider):
    """
    IMAP email provider for generic email servers.
    """

    def __init__(self, config: Dict[str, Any], connection_factory=None):
        """
        Initialize IMAP provider.

        Config keys:
            server: IMAP server hostname
            port: IMAP port (default 993 for SSL)
            username: Email username
            password: Email password or app password
            use_ssl: Use SSL/TLS connection (default True)
        """
        super().__init__(config)
        self.server = config.get('server')
        self.port = int(config.get('port', 993))
        self.username = config.get('username')
        self.password = config.get('password')
        self.use_ssl = config.get('use_ssl', True)
        self._connection_factory = connection_factory
        self._connection: Optional[imaplib.IMAP4] = None

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.IMAP

    # ==================== Connection ====================

    def _connect(self):
        """Synchronous connection method."""
        try:
            if self._connection_factory is not None:
                connection = self._connection_factory()
            elif self.use_ssl:
                connection = imaplib.IMAP4_SSL(self.server, self.port)
            else:
                connection = imaplib.IMAP4(self.server, self.port)
        except OSError as e:
            raise ProviderTransientError(f"IMAP connect to {self.server} failed: {e}") from e

        try:
            connection.login(self.username, self.password)
        except imaplib.IMAP4.error as e:
            raise CredentialExpired(f"IMAP login rejected for {self.username}: {e}") from e

        self._connection = connection
        logger.info(f"IMAP authenticated to {self.server}")

    async def _run(self, func, *args):
        """Run a blocking IMAP call in the thread pool, classifying failures."""
        loop = asyncio.get_event_loop()
        try:
            if self._connection is None:
                await loop.run_in_executor(None, self._connect)
            return await loop.run_in_executor(None, lambda: func(*args))
        except (CredentialExpired, ProviderTransientError, ProviderPermanentError):
            raise
        except imaplib.IMAP4.abort as e:
            self._connection = None
            raise ProviderTransientError(f"IMAP connection dropped: {e}") from e
        except imaplib.IMAP4.error as e:
            raise ProviderPermanentError(f"IMAP command failed: {e}") from e
        except OSError as e:
            self._connection = None
            raise ProviderTransientError(f"IMAP network error: {e}") from e

    # ==================== Parsing ====================

    def _decode_header_value(self, value: str) -> str:
        """Decode email header value."""
        if not value:
            return ""
        decoded_parts = decode_header(value)
        result = []
        for content, charset in decoded_parts:
            if isinstance(content, bytes):
                try:
                    result.append(content.decode(charset or 'utf-8', errors='replace'))
                except (LookupError, UnicodeDecodeError):
                    result.append(content.decode('utf-8', errors='replace'))
            else:
                result.append(content)
        return ''.join(result)

    def _parse_email_address(self, header_value: str) -> Tuple[str, str]:
        """Parse email address from header, returns (name, address)."""
        if not header_value:
            return ("", "")
        name, address = parseaddr(header_value)
        name = self._decode_header_value(name)
        return (name, address)

    def _parse_address_list(self, header_value: str) -> List[str]:
        """Parse multiple email addresses from header."""
        if not header_value:
            return []
        addresses = []
        for addr in header_value.split(','):
            _, email_addr = parseaddr(addr.strip())
            if email_addr:
                addresses.append(email_addr)
        return addresses

    def _get_body_content(self, msg: email.message.Message) -> Tuple[str, str, str]:
        """Extract body content from email message. Returns (preview, html, text)."""
        body_text = ""
        body_html = ""

        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part.is_multipart():
                continue
            content_type = part.get_content_type()
            content_disposition = str(part.get("Content-Disposition", ""))
            if "attachment" in content_disposition:
                continue

            try:
                payload = part.get_payload(decode=True)
                if not payload:
                    continue
                charset = part.get_content_charset() or 'utf-8'
                try:
                    text = payload.decode(charset, errors='replace')
                except LookupError:
                    text = payload.decode('utf-8', errors='replace')

                if content_type == "text/plain" and not body_text:
                    body_text = text
                elif content_type == "text/html" and not body_html:
                    body_html = text
            except Exception as e:
                logger.warning(f"Error decoding email part: {e}")

        # Generate preview from text or stripped HTML
        preview = body_text[:500] if body_text else ""
        if not preview and body_html:
            preview = re.sub(r'<[^>]+>', ' ', body_html)
            preview = ' '.join(preview.split())[:500]

        return preview, body_html, body_text

    def _get_attachments(self, msg: email.message.Message) -> List[EmailAttachment]:
        """Extract attachment metadata from email."""
        attachments = []

        if msg.is_multipart():
            for i, part in enumerate(msg.walk()):
                content_disposition = str(part.get("Content-Disposition", ""))

                if "attachment" in content_disposition or part.get_filename():
                    filename = part.get_filename()
                    if filename:
                        filename = self._decode_header_value(filename)

                    payload = part.get_payload(decode=True)
                    size = len(payload) if payload else 0

                    attachments.append(EmailAttachment(
                        attachment_id=str(i),
                        filename=filename or f"attachment_{i}",
                        content_type=part.get_content_type(),
                        size_bytes=size
                    ))

        return attachments

    def _parse_message(
        self,
        msg_data: bytes,
        folder_id: str,
        fallback_id: str,
        flags: str = ""
    ) -> Optional[EmailMessage]:
        """Parse raw email data into EmailMessage."""
        try:
            msg = email.message_from_bytes(msg_data)

            message_id = (msg.get('Message-ID') or '').strip().strip('<>')
            if not message_id:
                # Stable across re-fetches of the same UID
                message_id = fallback_id

            from_name, from_address = self._parse_email_address(msg.get('From', ''))

            date_str = msg.get('Date')
            received_at = datetime.now(timezone.utc)
            if date_str:
                try:
                    received_at = parsedate_to_datetime(date_str)
                except (TypeError, ValueError):
                    pass

            preview, body_html, body_text = self._get_body_content(msg)
            attachments = self._get_attachments(msg)

            return EmailMessage(
                message_id=message_id,
                folder_id=folder_id,
                from_address=from_address,
                from_name=from_name,
                to_addresses=self._parse_address_list(msg.get('To', '')),
                cc_addresses=self._parse_address_list(msg.get('Cc', '')),
                bcc_addresses=self._parse_address_list(msg.get('Bcc', '')),
                subject=self._decode_header_value(msg.get('Subject', '')),
                body_preview=preview,
                body_html=body_html or None,
                body_text=body_text or None,
                received_at=received_at,
                sent_at=received_at,
                is_read='\\Seen' in flags,
                is_flagged='\\Flagged' in flags,
                is_draft='\\Draft' in flags,
                is_trashed='\\Deleted' in flags,
                has_attachments=len(attachments) > 0,
                attachments=attachments,
                raw_headers={
                    'From': msg.get('From', ''),
                    'To': msg.get('To', ''),
                    'Subject': msg.get('Subject', ''),
                    'Date': msg.get('Date', ''),
                    'Message-ID': msg.get('Message-ID', ''),
                    'List-Unsubscribe': msg.get('List-Unsubscribe', ''),
                    'Precedence': msg.get('Precedence', ''),
                }
            )
        except Exception as e:
            logger.error(f"Error parsing email in {folder_id}: {e}")
            return None

    # ==================== Interface ====================

    async def list_folders(self) -> List[EmailFolder]:
        """Get all IMAP folders with special-use attributes."""
        status, folder_list = await self._run(lambda: self._connection.list())
        if status != 'OK':
            raise ProviderPermanentError(f"IMAP LIST failed: {status}")

        folders = []
        for folder_data in folder_list or []:
            parsed = parse_list_line(folder_data)
            if not parsed:
                continue
            name, attributes, _ = parsed
            if any(a.lower() == '\\noselect' for a in attributes):
                continue

            folder = EmailFolder(folder_id=name, name=name, attributes=attributes)
            try:
                status, data = await self._run(
                    lambda n=name: self._connection.status(_quote(n), '(MESSAGES UNSEEN)')
                )
                if status == 'OK' and data and data[0]:
                    raw = data[0].decode() if isinstance(data[0], bytes) else str(data[0])
                    messages = re.search(r'MESSAGES (\d+)', raw)
                    unseen = re.search(r'UNSEEN (\d+)', raw)
                    folder.total_count = int(messages.group(1)) if messages else 0
                    folder.unread_count = int(unseen.group(1)) if unseen else 0
            except ProviderPermanentError as e:
                logger.warning(f"Could not get status for folder {name}: {e}")
            folders.append(folder)

        return folders

    def _select(self, folder_name: str) -> int:
        """Select a folder read-only and return its UIDVALIDITY."""
        status, _ = self._connection.select(_quote(folder_name), readonly=True)
        if status != 'OK':
            raise FolderUnavailable(f"IMAP folder {folder_name} cannot be selected")
        _, data = self._connection.response('UIDVALIDITY')
        if data and data[0]:
            return int(data[0])
        return 0

    async def fetch_delta(
        self,
        folder: EmailFolder,
        cursor: Optional[str] = None,
        limit: int = 100
    ) -> DeltaPage:
        """Fetch messages with UIDs above the cursor."""
        validity = await self._run(self._select, folder.folder_id)
        cursor_validity, last_uid = parse_cursor(cursor)
        if cursor_validity is not None and cursor_validity != validity:
            logger.info(f"UIDVALIDITY changed for {folder.name}, resyncing folder")
            last_uid = 0

        status, data = await self._run(
            lambda: self._connection.uid('SEARCH', None, f'UID {last_uid + 1}:*')
        )
        if status != 'OK':
            raise ProviderPermanentError(f"IMAP UID SEARCH failed in {folder.name}")

        # "n:*" always matches the highest UID, even when it is below n
        uids = sorted(int(u) for u in (data[0] or b'').split() if int(u) > last_uid)
        page_uids = uids[:limit]

        messages = []
        for uid in page_uids:
            status, msg_data = await self._run(
                lambda u=uid: self._connection.uid('FETCH', str(u), '(UID FLAGS RFC822)')
            )
            if status != 'OK' or not msg_data or not isinstance(msg_data[0], tuple):
                logger.warning(f"Could not fetch UID {uid} in {folder.name}")
                continue

            meta, raw_email = msg_data[0][0], msg_data[0][1]
            flags_match = FLAGS_RE.search(meta or b'')
            flags = flags_match.group(1).decode() if flags_match else ""
            email_msg = self._parse_message(
                raw_email,
                folder.folder_id,
                fallback_id=f"imap:{folder.folder_id}:{validity}:{uid}",
                flags=flags
            )
            if email_msg:
                messages.append(email_msg)

        high_uid = page_uids[-1] if page_uids else last_uid
        return DeltaPage(
            messages=messages,
            next_cursor=f"{validity}:{high_uid}",
            has_more=len(uids) > len(page_uids)
        )

    async def _fetch_uid(self, folder_id: str, uid: str, message_id: str) -> Optional[EmailMessage]:
        status, msg_data = await self._run(
            lambda: self._connection.uid('FETCH', uid, '(UID FLAGS RFC822)')
        )
        if status == 'OK' and msg_data and isinstance(msg_data[0], tuple):
            flags_match = FLAGS_RE.search(msg_data[0][0] or b'')
            flags = flags_match.group(1).decode() if flags_match else ""
            return self._parse_message(msg_data[0][1], folder_id, fallback_id=message_id, flags=flags)
        return None

    async def _search_folder(self, folder_id: str, message_id: str) -> Optional[EmailMessage]:
        try:
            await self._run(self._select, folder_id)
        except FolderUnavailable:
            return None

        search_criteria = f'(HEADER Message-ID "<{message_id}>")'
        status, data = await self._run(
            lambda: self._connection.uid('SEARCH', None, search_criteria)
        )
        if status != 'OK' or not data or not data[0]:
            return None
        uid = data[0].split()[0].decode()
        return await self._fetch_uid(folder_id, uid, message_id)

    async def fetch_full(self, message_id: str, folder_id: Optional[str] = None) -> Optional[EmailMessage]:
        """
        Get full email content.

        Synthesized ids carry their folder and UID. Otherwise the Message-ID
        header is searched in folder_id first, then in every other folder.
        """
        if message_id.startswith('imap:'):
            try:
                folder_name, validity, uid = message_id[len('imap:'):].rsplit(':', 2)
                current_validity = await self._run(self._select, folder_name)
            except (ValueError, FolderUnavailable):
                return None
            if str(current_validity) != validity:
                # UIDs from an older UIDVALIDITY no longer address anything
                return None
            return await self._fetch_uid(folder_name, uid, message_id)

        if folder_id:
            found = await self._search_folder(folder_id, message_id)
            if found is not None:
                return found

        for folder in await self.list_folders():
            if folder.folder_id == folder_id:
                continue
            found = await self._search_folder(folder.folder_id, message_id)
            if found is not None:
                return found
        return None

    async def refresh_credential(self) -> ProviderCredentials:
        """Re-authenticate with the stored password; IMAP has no token to renew."""
        await self.disconnect()
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, self._connect)
        except ProviderTransientError as e:
            raise CredentialExpired(f"IMAP re-authentication failed: {e}") from e
        return ProviderCredentials(access_token=None)

    async def disconnect(self) -> None:
        """Disconnect from IMAP server."""
        if self._connection:
            try:
                self._connection.logout()
            except (imaplib.IMAP4.error, OSError):
                pass
            self._connection = None
