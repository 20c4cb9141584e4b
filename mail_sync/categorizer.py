"""
Rule-based email categorization.
Assigns each synced message a delivery category from header and content
heuristics combined with the owner's sender screening decisions.
"""

import logging
import re
from typing import Callable, Dict, Any, List, Optional, Union

from .models import Category, TrustVerdict
from .providers.base import EmailMessage

logger = logging.getLogger(__name__)

TrustLookup = Callable[[str], Optional[str]]

RECEIPT_PATTERNS = [
    re.compile(r'\binvoice\s*(?:#|no\.?|number)?\s*:?\s*[A-Z0-9-]*\d', re.IGNORECASE),
    re.compile(r'\breceipt\s+(?:#|no\.?|number|for)', re.IGNORECASE),
    re.compile(r'\byour\s+(?:receipt|invoice)\b', re.IGNORECASE),
    re.compile(r'\border\s+(?:#|no\.?|number)\s*:?\s*[A-Z0-9-]*\d', re.IGNORECASE),
    re.compile(r'\border\s+confirm(?:ation|ed)\b', re.IGNORECASE),
    re.compile(r'\bpayment\s+(?:received|confirmation|successful)\b', re.IGNORECASE),
    re.compile(r'\bpurchase\s+confirmation\b', re.IGNORECASE),
    re.compile(r'\bbilling\s+statement\b', re.IGNORECASE),
]

SPAM_PATTERNS = [
    re.compile(r'\byou(?:\'ve| have)\s+won\b', re.IGNORECASE),
    re.compile(r'\bclaim\s+your\s+(?:prize|reward)\b', re.IGNORECASE),
    re.compile(r'\blottery\b', re.IGNORECASE),
    re.compile(r'\bwire\s+transfer\b.*\burgent\b', re.IGNORECASE | re.DOTALL),
    re.compile(r'\bverify\s+your\s+account\s+immediately\b', re.IGNORECASE),
    re.compile(r'\b100%\s+free\b', re.IGNORECASE),
    re.compile(r'!{3,}'),
]

NEWSLETTER_PATTERNS = [
    re.compile(r'\bnewsletter\b', re.IGNORECASE),
    re.compile(r'\bweekly\s+digest\b', re.IGNORECASE),
    re.compile(r'\bview\s+(?:this\s+email\s+)?in\s+(?:your\s+)?browser\b', re.IGNORECASE),
]

NEWSLETTER_SENDER_PREFIXES = ('newsletter@', 'newsletters@', 'news@', 'digest@', 'updates@')


def _text_of(message: EmailMessage) -> str:
    parts = [message.subject or '', message.body_preview or '', message.body_text or '']
    return '\n'.join(parts)


def is_receipt(message: EmailMessage) -> bool:
    """Invoice, receipt and order-confirmation wording in subject or body."""
    text = _text_of(message)
    return any(p.search(text) for p in RECEIPT_PATTERNS)


def looks_like_spam(message: EmailMessage) -> bool:
    text = _text_of(message)
    return any(p.search(text) for p in SPAM_PATTERNS)


def has_bulk_signals(message: EmailMessage) -> bool:
    """List-Unsubscribe, Precedence bulk/list or newsletter wording."""
    if message.header('List-Unsubscribe'):
        return True
    if message.header('Precedence').strip().lower() in ('bulk', 'list'):
        return True
    sender = (message.from_address or '').lower()
    if sender.startswith(NEWSLETTER_SENDER_PREFIXES):
        return True
    text = _text_of(message)
    return any(p.search(text) for p in NEWSLETTER_PATTERNS)


def categorize(message: EmailMessage, sender_trust_lookup: TrustLookup) -> Category:
    """
    Assign a delivery category. Same input always gives the same category.

    Args:
        message: Normalized message
        sender_trust_lookup: Returns the owner's verdict for a sender address, or None

    Returns:
        Category
    """
    if is_receipt(message):
        return Category.RECEIPTS

    verdict = sender_trust_lookup((message.from_address or '').lower())
    if verdict == TrustVerdict.TRUSTED.value:
        return Category.INBOX
    if verdict == TrustVerdict.SPAM.value:
        return Category.SPAM
    if verdict is None or looks_like_spam(message):
        return Category.UNSCREENED
    if has_bulk_signals(message):
        return Category.FEED
    return Category.INBOX


def message_from_row(row: Dict[str, Any]) -> EmailMessage:
    """Rebuild the fields categorize() reads from a stored message row."""
    return EmailMessage(
        message_id=row['provider_message_id'],
        folder_id=str(row.get('folder_id') or ''),
        from_address=row.get('from_address') or '',
        subject=row.get('subject') or '',
        received_at=None,
        body_preview=row.get('body_preview') or '',
        body_text=row.get('body_text'),
        raw_headers=row.get('raw_headers') or {},
    )


class SenderScreening:
    """
    Records per-owner sender verdicts and re-applies them on request.
    """

    def __init__(self, storage):
        self.storage = storage

    def lookup_for(self, user_id: str) -> TrustLookup:
        """Trust lookup bound to one owner, cached for the life of a run."""
        cache: Dict[str, Optional[str]] = {}

        def lookup(sender: str) -> Optional[str]:
            if sender not in cache:
                cache[sender] = self.storage.get_sender_trust(user_id, sender)
            return cache[sender]

        return lookup

    def record_screening_decision(
        self,
        sender_address: str,
        account_owner: str,
        verdict: Union[TrustVerdict, str]
    ) -> None:
        """Create or overwrite the owner's verdict. Stored messages are not touched."""
        verdict = TrustVerdict(verdict)
        self.storage.set_sender_trust(account_owner, sender_address, verdict.value)
        logger.info(f"Sender {sender_address} marked {verdict.value} for user {account_owner}")

    def recategorize_sender(self, account_owner: str, sender_address: str) -> int:
        """
        Re-run categorization over stored mail from one sender.

        Messages whose category was set manually are skipped.

        Returns:
            Number of messages whose category changed
        """
        lookup = self.lookup_for(account_owner)
        changed = 0
        rows: List[Dict[str, Any]] = self.storage.get_sender_messages(account_owner, sender_address)
        for row in rows:
            category = categorize(message_from_row(row), lookup).value
            if category != row.get('category'):
                self.storage.set_message_category(row['id'], category)
                changed += 1
        logger.info(f"Recategorized {changed} of {len(rows)} messages from {sender_address}")
        return changed
