"""Tests for the IMAP provider against a scripted imaplib connection."""

import asyncio
import imaplib
import re

import pytest

from mail_sync.errors import CredentialExpired, FolderUnavailable, ProviderTransientError
from mail_sync.providers.base import EmailFolder
from mail_sync.providers.imap import IMAPProvider, parse_cursor, parse_list_line


def raw_email(message_id, subject, sender="bob@example.com", extra=""):
    headers = (
        f"From: Bob Sender <{sender}>\r\n"
        "To: me@example.com, other@example.com\r\n"
        f"Subject: {subject}\r\n"
        "Date: Wed, 01 May 2024 12:00:00 +0000\r\n"
    )
    if message_id:
        headers += f"Message-ID: <{message_id}>\r\n"
    return (headers + extra + "\r\nHello from the body\r\n").encode()


class FakeIMAP:
    """Just enough of imaplib.IMAP4 for the provider."""

    LIST = [
        b'(\\HasNoChildren) "/" "INBOX"',
        b'(\\HasNoChildren \\Sent) "/" "Sent Items"',
        b'(\\Noselect \\HasChildren) "/" "[Gmail]"',
    ]

    def __init__(self, mailboxes, validity=7, reject_login=False):
        self.mailboxes = mailboxes
        self.validity = validity
        self.reject_login = reject_login
        self.flags = {}
        self.selected = None
        self.logged_out = False
        self.abort_on_fetch = False

    def login(self, user, password):
        if self.reject_login:
            raise imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid credentials")
        return 'OK', [b'Logged in']

    def list(self):
        return 'OK', list(self.LIST)

    def status(self, name, items):
        mailbox = self.mailboxes.get(name.strip('"'), {})
        return 'OK', [f'{name} (MESSAGES {len(mailbox)} UNSEEN 1)'.encode()]

    def select(self, name, readonly=False):
        name = name.strip('"')
        if name not in self.mailboxes:
            return 'NO', [b'Mailbox does not exist']
        self.selected = name
        return 'OK', [str(len(self.mailboxes[name])).encode()]

    def response(self, code):
        return code, [str(self.validity).encode()]

    def uid(self, command, *args):
        mailbox = self.mailboxes[self.selected]
        if command == 'SEARCH':
            criteria = args[-1]
            header = re.search(r'Message-ID "<([^>]+)>"', criteria)
            if header:
                found = [u for u, raw in mailbox.items() if f"<{header.group(1)}>".encode() in raw]
                return 'OK', [b' '.join(str(u).encode() for u in found)]
            start = int(re.search(r'UID (\d+):\*', criteria).group(1))
            uids = sorted(u for u in mailbox if u >= start)
            if not uids and mailbox:
                uids = [max(mailbox)]
            return 'OK', [b' '.join(str(u).encode() for u in uids)]
        if command == 'FETCH':
            if self.abort_on_fetch:
                raise imaplib.IMAP4.abort("socket error: EOF")
            uid = int(args[0])
            flags = self.flags.get(uid, '')
            meta = f'1 (UID {uid} FLAGS ({flags}) RFC822 {{{len(mailbox[uid])}}}'.encode()
            return 'OK', [(meta, mailbox[uid]), b')']
        raise AssertionError(f"unexpected UID command {command}")

    def logout(self):
        self.logged_out = True
        return 'BYE', [b'']


@pytest.fixture
def server():
    return FakeIMAP({
        "INBOX": {
            1: raw_email("a@mail", "First"),
            2: raw_email("b@mail", "Second", extra="List-Unsubscribe: <mailto:unsub@list.example>\r\n"),
            5: raw_email(None, "No id"),
        },
        "Sent Items": {},
    })


@pytest.fixture
def provider(server):
    return IMAPProvider(
        {"server": "imap.example.com", "username": "me@example.com", "password": "pw"},
        connection_factory=lambda: server,
    )


INBOX = EmailFolder(folder_id="INBOX", name="INBOX")


class TestParsing:
    def test_parse_list_line(self):
        assert parse_list_line(b'(\\HasNoChildren \\Sent) "/" "Sent"') == ("Sent", ["\\HasNoChildren", "\\Sent"], "/")
        assert parse_list_line('() "." INBOX') == ("INBOX", [], ".")
        assert parse_list_line('(\\Noselect) NIL "Shared"') == ("Shared", ["\\Noselect"], "")
        assert parse_list_line(b'garbage') is None

    def test_parse_cursor(self):
        assert parse_cursor("7:42") == (7, 42)
        assert parse_cursor(None) == (None, 0)
        assert parse_cursor("x:y") == (None, 0)


class TestIMAPProvider:
    def test_list_folders_skips_noselect(self, provider):
        folders = asyncio.run(provider.list_folders())
        assert [f.name for f in folders] == ["INBOX", "Sent Items"]
        assert folders[0].total_count == 3
        assert folders[0].unread_count == 1
        assert "\\Sent" in folders[1].attributes

    def test_paged_delta(self, provider):
        async def scenario():
            first = await provider.fetch_delta(INBOX, None, limit=2)
            second = await provider.fetch_delta(INBOX, first.next_cursor, limit=2)
            third = await provider.fetch_delta(INBOX, second.next_cursor, limit=2)
            return first, second, third

        first, second, third = asyncio.run(scenario())
        assert [m.message_id for m in first.messages] == ["a@mail", "b@mail"]
        assert first.next_cursor == "7:2"
        assert first.has_more is True
        assert [m.subject for m in second.messages] == ["No id"]
        assert second.next_cursor == "7:5"
        assert second.has_more is False
        assert third.messages == []
        assert third.next_cursor == "7:5"

    def test_same_cursor_same_page(self, provider):
        async def scenario():
            return [await provider.fetch_delta(INBOX, "7:1", limit=5) for _ in range(2)]

        a, b = asyncio.run(scenario())
        assert [m.message_id for m in a.messages] == [m.message_id for m in b.messages]
        assert a.next_cursor == b.next_cursor

    def test_uidvalidity_change_restarts_folder(self, provider):
        page = asyncio.run(provider.fetch_delta(INBOX, "3:5", limit=10))
        assert len(page.messages) == 3
        assert page.next_cursor == "7:5"

    def test_message_fields(self, provider, server):
        server.flags[2] = "\\Seen \\Flagged"
        page = asyncio.run(provider.fetch_delta(INBOX, None, limit=10))
        second = page.messages[1]

        assert second.from_name == "Bob Sender"
        assert second.from_address == "bob@example.com"
        assert second.to_addresses == ["me@example.com", "other@example.com"]
        assert second.is_read and second.is_flagged
        assert second.header("list-unsubscribe") == "<mailto:unsub@list.example>"
        assert second.body_text.strip() == "Hello from the body"
        assert page.messages[2].message_id == "imap:INBOX:7:5"

    def test_rejected_login(self, server):
        server.reject_login = True
        provider = IMAPProvider({"username": "me", "password": "bad"}, connection_factory=lambda: server)
        with pytest.raises(CredentialExpired):
            asyncio.run(provider.list_folders())

    def test_missing_folder(self, provider):
        with pytest.raises(FolderUnavailable):
            asyncio.run(provider.fetch_delta(EmailFolder(folder_id="Gone", name="Gone")))

    def test_dropped_connection_is_transient(self, provider, server):
        server.abort_on_fetch = True
        with pytest.raises(ProviderTransientError):
            asyncio.run(provider.fetch_delta(INBOX))

    def test_fetch_full_by_message_id(self, provider):
        message = asyncio.run(provider.fetch_full("b@mail"))
        assert message.subject == "Second"
        assert asyncio.run(provider.fetch_full("unknown@mail")) is None

    def test_fetch_full_outside_inbox(self, provider, server):
        server.mailboxes["Sent Items"][3] = raw_email("s@mail", "Quarterly report")
        hinted = asyncio.run(provider.fetch_full("s@mail", "Sent Items"))
        assert hinted.subject == "Quarterly report"
        assert hinted.folder_id == "Sent Items"
        assert asyncio.run(provider.fetch_full("s@mail")).subject == "Quarterly report"

    def test_fetch_full_by_synthesized_id(self, provider):
        message = asyncio.run(provider.fetch_full("imap:INBOX:7:5"))
        assert message.subject == "No id"
        assert message.message_id == "imap:INBOX:7:5"
        assert asyncio.run(provider.fetch_full("imap:INBOX:6:5")) is None
        assert asyncio.run(provider.fetch_full("imap:Archive:7:5")) is None

    def test_disconnect_logs_out(self, provider, server):
        async def scenario():
            await provider.list_folders()
            await provider.disconnect()

        asyncio.run(scenario())
        assert server.logged_out
