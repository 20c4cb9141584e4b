"""
Microsoft 365 / Outlook email provider implementation.
Uses Microsoft Graph API delta queries for incremental mail sync.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Dict, Any, Optional

import httpx
import msal
import requests

from ..errors import (
    CredentialExpired,
    ProviderPermanentError,
    ProviderTransientError,
    classify_http_status,
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

# Graph well-known folder aliases -> attribute recorded on the folder
WELL_KNOWN_FOLDERS = {
    "inbox": "inbox",
    "sentitems": "sentitems",
    "drafts": "drafts",
    "deleteditems": "deleteditems",
    "junkemail": "junkemail",
    "archive": "archive",
}

MESSAGE_SELECT = (
    "id,conversationId,parentFolderId,from,toRecipients,ccRecipients,subject,"
    "bodyPreview,body,receivedDateTime,sentDateTime,isRead,isDraft,flag,"
    "hasAttachments,internetMessageHeaders"
)


def _parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


class MicrosoftProvider(EmailProvider):
    """
    Microsoft 365 / Outlook email provider using Graph API with delegated tokens.
    """

    GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
    SCOPES = ["https://graph.microsoft.com/Mail.Read"]

    def __init__(self, config: Dict[str, Any], transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize Microsoft provider.

        Config keys:
            access_token: Current delegated access token
            refresh_token: Refresh token for renewing access
            tenant_id: Azure AD tenant ID (default "common")
            client_id: Application (client) ID
            client_secret: Client secret value
        """
        super().__init__(config)
        self.tenant_id = config.get('tenant_id') or 'common'
        self.client_id = config.get('client_id')
        self.client_secret = config.get('client_secret')
        self._access_token: Optional[str] = config.get('access_token')
        self._refresh_token: Optional[str] = config.get('refresh_token')
        self._transport = transport
        self._msal_app: Optional[msal.ConfidentialClientApplication] = None

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.MICROSOFT

    def _get_msal_app(self) -> msal.ConfidentialClientApplication:
        """Get or create MSAL application instance."""
        if self._msal_app is None:
            authority = f"https://login.microsoftonline.com/{self.tenant_id}"
            self._msal_app = msal.ConfidentialClientApplication(
                self.client_id,
                authority=authority,
                client_credential=self.client_secret
            )
        return self._msal_app

    async def _make_request(
        self,
        method: str,
        url: str,
        params: Optional[Dict] = None,
        headers: Optional[Dict] = None,
        folder_scoped: bool = False
    ) -> Dict[str, Any]:
        """Make authenticated request to Graph API, classifying failures."""
        if not url.startswith("http"):
            url = f"{self.GRAPH_BASE_URL}{url}"
        request_headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json"
        }
        if headers:
            request_headers.update(headers)

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=request_headers,
                    params=params,
                    timeout=30.0
                )
        except httpx.HTTPError as e:
            raise ProviderTransientError(f"Graph request failed: {e}") from e

        if response.status_code >= 400:
            detail = ""
            try:
                detail = response.json().get("error", {}).get("message", "")
            except ValueError:
                detail = response.text[:200]
            raise classify_http_status(
                response.status_code,
                detail,
                retry_after=response.headers.get("Retry-After"),
                folder_scoped=folder_scoped
            )

        return response.json() if response.content else {}

    def _parse_email(self, msg: Dict[str, Any]) -> EmailMessage:
        """Parse Graph API email message to EmailMessage."""
        from_data = msg.get('from', {}).get('emailAddress', {})
        from_address = from_data.get('address', '')
        from_name = from_data.get('name')

        to_recipients = msg.get('toRecipients', [])
        to_addresses = [r.get('emailAddress', {}).get('address', '') for r in to_recipients]

        cc_recipients = msg.get('ccRecipients', [])
        cc_addresses = [r.get('emailAddress', {}).get('address', '') for r in cc_recipients]

        received_at = _parse_graph_datetime(msg.get('receivedDateTime')) or datetime.now(timezone.utc)
        sent_at = _parse_graph_datetime(msg.get('sentDateTime'))

        body = msg.get('body', {})
        body_content = body.get('content', '')
        if body.get('contentType', 'text') == 'html':
            body_html = body_content
            body_text = msg.get('bodyPreview', '')
        else:
            body_html = None
            body_text = body_content

        attachments = []
        if msg.get('hasAttachments'):
            for att in msg.get('attachments', []):
                attachments.append(EmailAttachment(
                    attachment_id=att.get('id', ''),
                    filename=att.get('name', 'attachment'),
                    content_type=att.get('contentType', 'application/octet-stream'),
                    size_bytes=att.get('size', 0)
                ))

        headers = {
            h.get('name', ''): h.get('value', '')
            for h in msg.get('internetMessageHeaders') or []
        }

        return EmailMessage(
            message_id=msg.get('id', ''),
            thread_id=msg.get('conversationId'),
            folder_id=msg.get('parentFolderId', ''),
            from_address=from_address,
            from_name=from_name,
            to_addresses=to_addresses,
            cc_addresses=cc_addresses,
            subject=msg.get('subject') or '',
            body_preview=(msg.get('bodyPreview') or '')[:500],
            body_html=body_html,
            body_text=body_text,
            received_at=received_at,
            sent_at=sent_at,
            is_read=msg.get('isRead', False),
            is_draft=msg.get('isDraft', False),
            is_flagged=msg.get('flag', {}).get('flagStatus') == 'flagged',
            has_attachments=msg.get('hasAttachments', False),
            attachments=attachments,
            raw_headers=headers
        )

    async def _collect_folders(self, url: str, prefix: str, folders: List[EmailFolder]) -> None:
        """Page through a mailFolders collection, descending into child folders."""
        params: Optional[Dict] = {"$top": 100}
        while url:
            result = await self._make_request("GET", url, params=params)
            for folder in result.get('value', []):
                name = folder.get('displayName', '')
                if prefix:
                    name = f"{prefix}/{name}"
                folders.append(EmailFolder(
                    folder_id=folder.get('id', ''),
                    name=name,
                    unread_count=folder.get('unreadItemCount', 0),
                    total_count=folder.get('totalItemCount', 0)
                ))
                if folder.get('childFolderCount'):
                    await self._collect_folders(
                        f"/me/mailFolders/{folder.get('id')}/childFolders", name, folders
                    )
            # nextLink already carries the query
            url = result.get('@odata.nextLink')
            params = None

    async def list_folders(self) -> List[EmailFolder]:
        """Get all mail folders including nested ones, tagging the well-known ones."""
        folders: List[EmailFolder] = []
        await self._collect_folders("/me/mailFolders", "", folders)

        by_id = {f.folder_id: f for f in folders}
        for alias, attribute in WELL_KNOWN_FOLDERS.items():
            try:
                known = await self._make_request("GET", f"/me/mailFolders/{alias}", folder_scoped=True)
            except ProviderPermanentError:
                continue
            folder = by_id.get(known.get('id'))
            if folder is not None:
                folder.attributes.append(attribute)

        return folders

    async def fetch_delta(
        self,
        folder: EmailFolder,
        cursor: Optional[str] = None,
        limit: int = 100
    ) -> DeltaPage:
        """
        Fetch one page of a Graph delta query.

        The cursor is the nextLink (mid-backfill) or deltaLink (caught up)
        returned by the previous page.
        """
        prefer = {"Prefer": f"odata.maxpagesize={limit}"}
        if cursor:
            try:
                result = await self._make_request("GET", cursor, headers=prefer, folder_scoped=True)
            except ProviderPermanentError as e:
                if "HTTP 410" not in str(e):
                    raise
                logger.info(f"Delta token expired for folder {folder.name}, restarting delta")
                return await self.fetch_delta(folder, None, limit)
        else:
            result = await self._make_request(
                "GET",
                f"/me/mailFolders/{folder.folder_id}/messages/delta",
                params={"$select": MESSAGE_SELECT},
                headers=prefer,
                folder_scoped=True
            )

        page = DeltaPage()
        for item in result.get('value', []):
            if '@removed' in item:
                page.removed_ids.append(item.get('id', ''))
                continue
            try:
                msg = self._parse_email(item)
                msg.folder_id = msg.folder_id or folder.folder_id
                page.messages.append(msg)
            except (KeyError, ValueError) as e:
                logger.warning(f"Error parsing email {item.get('id')}: {e}")

        next_link = result.get('@odata.nextLink')
        delta_link = result.get('@odata.deltaLink')
        page.next_cursor = next_link or delta_link or cursor
        page.has_more = bool(next_link)
        return page

    async def fetch_full(self, message_id: str, folder_id: Optional[str] = None) -> Optional[EmailMessage]:
        """Get full email content. Graph message ids are mailbox-wide, so folder_id is unused."""
        try:
            result = await self._make_request(
                "GET",
                f"/me/messages/{message_id}",
                params={"$expand": "attachments", "$select": MESSAGE_SELECT + ",attachments"}
            )
        except ProviderPermanentError as e:
            logger.warning(f"Message {message_id} not retrievable: {e}")
            return None
        return self._parse_email(result)

    async def refresh_credential(self) -> ProviderCredentials:
        """Redeem the refresh token for a new access token via MSAL."""
        if not self._refresh_token:
            raise CredentialExpired("No refresh token stored for Microsoft account")

        loop = asyncio.get_event_loop()
        try:
            # Building the app may hit the authority discovery endpoint too
            result = await loop.run_in_executor(
                None,
                lambda: self._get_msal_app().acquire_token_by_refresh_token(self._refresh_token, scopes=self.SCOPES)
            )
        except requests.exceptions.RequestException as e:
            raise ProviderTransientError(f"Microsoft token endpoint unreachable: {e}") from e

        if "access_token" not in result:
            error = result.get("error_description", result.get("error", "Unknown error"))
            raise CredentialExpired(f"Failed to refresh token: {error}")

        self._access_token = result["access_token"]
        self._refresh_token = result.get("refresh_token", self._refresh_token)
        expires_in = int(result.get("expires_in", 3600))
        logger.info("Microsoft Graph token refreshed")
        return ProviderCredentials(
            access_token=self._access_token,
            refresh_token=self._refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        )

    async def disconnect(self) -> None:
        """Disconnect from Microsoft Graph API."""
        self._access_token = None
