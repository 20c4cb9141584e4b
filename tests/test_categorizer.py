"""Tests for rule-based categorization and sender screening."""

from mail_sync.categorizer import SenderScreening, categorize, has_bulk_signals, is_receipt
from mail_sync.models import Category
from mail_sync.providers.base import EmailFolder

from conftest import make_message


def no_verdicts(_sender):
    return None


def verdicts(mapping):
    return lambda sender: mapping.get(sender)


class TestCategorize:
    def test_invoice_from_unknown_sender_is_receipt(self):
        msg = make_message("m1", from_address="billing@vendor.com", subject="Invoice #4471")
        assert categorize(msg, no_verdicts) == Category.RECEIPTS

    def test_receipt_wins_over_spam_verdict(self):
        msg = make_message("m1", from_address="shop@vendor.com", subject="Your receipt from Vendor")
        assert categorize(msg, verdicts({"shop@vendor.com": "spam"})) == Category.RECEIPTS

    def test_unscreened_without_verdict(self):
        msg = make_message("m1", subject="Lunch?")
        assert categorize(msg, no_verdicts) == Category.UNSCREENED

    def test_trusted_sender_goes_to_inbox(self):
        msg = make_message("m1", subject="Weekly newsletter", headers={"List-Unsubscribe": "<mailto:x>"})
        assert categorize(msg, verdicts({"alice@example.com": "trusted"})) == Category.INBOX

    def test_spam_verdict(self):
        msg = make_message("m1", subject="Lunch?")
        assert categorize(msg, verdicts({"alice@example.com": "spam"})) == Category.SPAM

    def test_known_but_unjudged_bulk_sender_is_feed(self):
        msg = make_message("m1", from_address="news@shop.com", subject="Spring sale",
                           headers={"Precedence": "bulk"})
        assert categorize(msg, verdicts({"news@shop.com": "unknown"})) == Category.FEED

    def test_spammy_content_stays_unscreened(self):
        msg = make_message("m1", subject="You have won!!!")
        assert categorize(msg, verdicts({"alice@example.com": "unknown"})) == Category.UNSCREENED

    def test_lookup_uses_lowercased_sender(self):
        seen = []
        msg = make_message("m1", from_address="Alice@Example.COM")
        categorize(msg, lambda s: seen.append(s))
        assert seen == ["alice@example.com"]

    def test_deterministic(self):
        msg = make_message("m1", subject="Order confirmation 5512")
        results = {categorize(msg, no_verdicts) for _ in range(5)}
        assert results == {Category.RECEIPTS}


class TestSignals:
    def test_receipt_wording(self):
        assert is_receipt(make_message("m", subject="Payment received - thank you"))
        assert is_receipt(make_message("m", subject="Order #A-1234 shipped"))
        assert not is_receipt(make_message("m", subject="Invoices are due next week", body="reminder"))

    def test_bulk_headers(self):
        assert has_bulk_signals(make_message("m", headers={"list-unsubscribe": "<https://x/u>"}))
        assert has_bulk_signals(make_message("m", headers={"Precedence": "List"}))
        assert has_bulk_signals(make_message("m", from_address="digest@site.com"))
        assert not has_bulk_signals(make_message("m"))


class TestSenderScreening:
    def _store(self, storage, account_id, messages):
        folder = storage.upsert_folder(account_id, EmailFolder("INBOX", "INBOX"), "inbox", 0.9, True)
        for msg in messages:
            msg.category = categorize(msg, no_verdicts).value
        storage.upsert_messages(account_id, folder["id"], messages)

    def test_decision_does_not_touch_stored_mail(self, storage, account_id):
        self._store(storage, account_id, [make_message("m1", from_address="bob@x.com")])
        screening = SenderScreening(storage)
        screening.record_screening_decision("Bob@X.com", "user-1", "trusted")

        assert storage.get_sender_trust("user-1", "bob@x.com") == "trusted"
        assert storage.get_message(account_id, "m1")["category"] == "unscreened"

    def test_recategorize_skips_manual(self, storage, account_id):
        self._store(storage, account_id, [
            make_message("m1", from_address="bob@x.com"),
            make_message("m2", from_address="bob@x.com"),
            make_message("m3", from_address="carol@x.com"),
        ])
        manual = storage.get_message(account_id, "m2")
        storage.set_message_category(manual["id"], "feed", source="manual")

        screening = SenderScreening(storage)
        screening.record_screening_decision("bob@x.com", "user-1", "trusted")
        changed = screening.recategorize_sender("user-1", "bob@x.com")

        assert changed == 1
        assert storage.get_message(account_id, "m1")["category"] == "inbox"
        assert storage.get_message(account_id, "m2")["category"] == "feed"
        assert storage.get_message(account_id, "m3")["category"] == "unscreened"

    def test_recategorize_is_idempotent(self, storage, account_id):
        self._store(storage, account_id, [make_message("m1", from_address="bob@x.com")])
        screening = SenderScreening(storage)
        screening.record_screening_decision("bob@x.com", "user-1", "spam")
        assert screening.recategorize_sender("user-1", "bob@x.com") == 1
        assert screening.recategorize_sender("user-1", "bob@x.com") == 0
