"""Tests for provider notification handling."""

import base64
import json

import pytest

from mail_sync.webhooks import WebhookIngress

from conftest import RecordingQueue


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def ingress(storage, queue):
    return WebhookIngress(storage, queue, debounce_seconds=7)


@pytest.fixture
def graph_account(storage):
    account_id = storage.add_account("user-1", "microsoft", "me@contoso.com", client_state="graph-secret")
    storage.complete_setup(account_id)
    return account_id


@pytest.fixture
def gmail_account(storage):
    account_id = storage.add_account("user-1", "gmail", "me@gmail.com")
    storage.complete_setup(account_id)
    return account_id


def _pubsub(payload):
    data = base64.b64encode(json.dumps(payload).encode()).decode()
    return {"message": {"data": data, "messageId": "1"}, "subscription": "projects/x/subscriptions/y"}


class TestMicrosoft:
    def test_known_client_state_enqueues_debounced_sync(self, ingress, queue, graph_account):
        payload = {"value": [{"clientState": "graph-secret", "resource": "me/messages/1"}]}
        assert ingress.handle_microsoft(payload) == [graph_account]
        assert queue.calls == [(graph_account, "webhook", 7)]

    def test_unknown_client_state_ignored(self, ingress, queue, graph_account):
        assert ingress.handle_microsoft({"value": [{"clientState": "forged"}, {}]}) == []
        assert queue.calls == []

    def test_inactive_accounts_ignored(self, ingress, queue, storage, graph_account):
        storage.disable_account(graph_account)
        assert ingress.handle_microsoft({"value": [{"clientState": "graph-secret"}]}) == []

    def test_pending_setup_ignored(self, ingress, storage):
        storage.add_account("user-1", "microsoft", "new@contoso.com", client_state="fresh")
        assert ingress.handle_microsoft({"value": [{"clientState": "fresh"}]}) == []

    def test_malformed_payload_does_not_raise(self, ingress):
        assert ingress.handle_microsoft({"value": "not-a-list"}) == []


class TestGoogle:
    def test_mailbox_resolves_to_gmail_account(self, ingress, queue, gmail_account):
        envelope = _pubsub({"emailAddress": "Me@Gmail.com", "historyId": "9876"})
        assert ingress.handle_google(envelope) == [gmail_account]
        assert queue.calls[0][:2] == (gmail_account, "webhook")

    def test_unknown_mailbox(self, ingress, queue, gmail_account):
        assert ingress.handle_google(_pubsub({"emailAddress": "other@gmail.com"})) == []
        assert queue.calls == []

    def test_undecodable_data(self, ingress):
        assert ingress.handle_google({"message": {"data": "%%%not-base64"}}) == []
        assert ingress.handle_google({}) == []
