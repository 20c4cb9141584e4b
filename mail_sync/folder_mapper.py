"""
Folder type detection.

Maps provider folder names and attributes onto canonical mailbox roles
(inbox, sent, drafts, trash, spam, archive, custom) with a confidence score.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from .models import CanonicalFolder
from .providers.base import EmailFolder

logger = logging.getLogger(__name__)

REVIEW_THRESHOLD = 0.7

CONFIDENCE_ATTRIBUTE = 1.0
CONFIDENCE_EXACT = 0.9
CONFIDENCE_PATH = 0.75
CONFIDENCE_FUZZY = 0.6
CONFIDENCE_CUSTOM = 0.3

# IMAP special-use flags (RFC 6154), Graph well-known names and Gmail system labels
ATTRIBUTE_MAPPINGS: Dict[str, CanonicalFolder] = {
    'inbox': CanonicalFolder.INBOX,
    'sent': CanonicalFolder.SENT,
    'sentitems': CanonicalFolder.SENT,
    'drafts': CanonicalFolder.DRAFTS,
    'draft': CanonicalFolder.DRAFTS,
    'trash': CanonicalFolder.TRASH,
    'deleteditems': CanonicalFolder.TRASH,
    'junk': CanonicalFolder.SPAM,
    'junkemail': CanonicalFolder.SPAM,
    'spam': CanonicalFolder.SPAM,
    'archive': CanonicalFolder.ARCHIVE,
    'all': CanonicalFolder.ARCHIVE,
}

FOLDER_NAME_MAPPINGS: Dict[CanonicalFolder, List[str]] = {
    CanonicalFolder.INBOX: [
        'inbox', 'bandeja de entrada', 'entrada', 'boîte de réception', 'réception',
        'posteingang', 'eingang', 'posta in arrivo', 'arrivo', 'caixa de entrada',
        'postvak in', 'входящие', '受信トレイ', '受信箱', '收件箱', '收件匣',
        '받은 편지함', 'صندوق الوارد',
    ],
    CanonicalFolder.SENT: [
        'sent', 'sent items', 'sent mail', 'sent messages', 'sent folder', 'sentitems',
        'sent email', 'enviados', 'elementos enviados', 'correo enviado', 'envoyés',
        'éléments envoyés', 'messages envoyés', 'gesendete elemente', 'gesendet',
        'posta inviata', 'inviati', 'elementi inviati', 'itens enviados', 'enviadas',
        'verzonden items', 'verzonden', 'отправленные', '送信済みアイテム', '送信済み',
        '已发送邮件', '寄件備份', '已发送', '보낸 편지함', 'العناصر المرسلة',
        'البريد المرسل', '[gmail]/sent mail',
    ],
    CanonicalFolder.DRAFTS: [
        'drafts', 'draft', 'draft messages', 'borradores', 'brouillons', 'entwürfe',
        'bozze', 'rascunhos', 'concepten', 'черновики', '下書き', '草稿', '草稿匣',
        '임시 보관함', 'المسودات', '[gmail]/drafts',
    ],
    CanonicalFolder.TRASH: [
        'trash', 'deleted items', 'deleted', 'bin', 'recycle bin', 'deleted messages',
        'deleted emails', 'deleteditems', 'rubbish', 'papelera', 'elementos eliminados',
        'eliminados', 'corbeille', 'éléments supprimés', 'supprimés', 'gelöschte elemente',
        'papierkorb', 'gelöscht', 'posta eliminata', 'cestino', 'eliminati',
        'itens excluídos', 'lixeira', 'excluídos', 'verwijderde items', 'prullenbak',
        'удаленные', 'корзина', '削除済みアイテム', 'ごみ箱', '已删除邮件', '垃圾桶',
        '已删除', '刪除的郵件', '지운 편지함', '휴지통', 'العناصر المحذوفة',
        'سلة المحذوفات', '[gmail]/trash',
    ],
    CanonicalFolder.SPAM: [
        'spam', 'junk', 'junk email', 'junk e-mail', 'junk mail', 'bulk mail', 'junkemail',
        'quarantine', 'correo no deseado', 'no deseado', 'courrier indésirable',
        'indésirables', 'junk-e-mail', 'posta indesiderata', 'lixo eletrônico',
        'ongewenste e-mail', 'спам', 'нежелательная почта', '迷惑メール', '垃圾邮件',
        '垃圾郵件', '정크 메일', 'البريد العشوائي', '[gmail]/spam',
    ],
    CanonicalFolder.ARCHIVE: [
        'archive', 'archives', 'all mail', '[gmail]/all mail', 'archiv', 'archivo',
        'archivio', 'arquivo', 'archief', 'архив', 'アーカイブ', '归档', '보관',
    ],
}

# Processing order within a run; custom folders sit between the system ones
SORT_ORDER: Dict[CanonicalFolder, int] = {
    CanonicalFolder.INBOX: 1,
    CanonicalFolder.SENT: 2,
    CanonicalFolder.DRAFTS: 3,
    CanonicalFolder.ARCHIVE: 4,
    CanonicalFolder.CUSTOM: 50,
    CanonicalFolder.SPAM: 98,
    CanonicalFolder.TRASH: 99,
}

DEFAULT_ENABLED = {
    CanonicalFolder.INBOX,
    CanonicalFolder.SENT,
    CanonicalFolder.DRAFTS,
    CanonicalFolder.TRASH,
    CanonicalFolder.SPAM,
}

PATH_SEPARATORS = re.compile(r'[/.\\]')
FUZZY_STRIP = re.compile(r'[\s\-_.\[\]/]')


@dataclass
class FolderMapping:
    """Result of mapping one provider folder."""
    canonical_type: CanonicalFolder
    confidence: float

    @property
    def needs_review(self) -> bool:
        return self.confidence < REVIEW_THRESHOLD


def _fuzzy(value: str) -> str:
    return FUZZY_STRIP.sub('', value.lower())


_NAME_INDEX: Dict[str, CanonicalFolder] = {}
_FUZZY_INDEX: Dict[str, CanonicalFolder] = {}
for _canonical, _names in FOLDER_NAME_MAPPINGS.items():
    for _name in _names:
        _NAME_INDEX.setdefault(_name.lower(), _canonical)
        _FUZZY_INDEX.setdefault(_fuzzy(_name), _canonical)


def _match_attributes(attributes: List[str]) -> Optional[CanonicalFolder]:
    for attribute in attributes:
        key = attribute.lstrip('\\').lower()
        if key in ATTRIBUTE_MAPPINGS:
            return ATTRIBUTE_MAPPINGS[key]
    return None


def map_folder(folder: EmailFolder) -> FolderMapping:
    """
    Detect the canonical type of a provider folder.

    Rules are applied in order and the first hit wins:
    special-use attribute, exact name, path segment, separator-insensitive name.
    """
    by_attribute = _match_attributes(folder.attributes)
    if by_attribute is not None:
        return FolderMapping(by_attribute, CONFIDENCE_ATTRIBUTE)

    name = (folder.name or '').strip().lower()
    if not name:
        return FolderMapping(CanonicalFolder.CUSTOM, CONFIDENCE_CUSTOM)

    if name in _NAME_INDEX:
        return FolderMapping(_NAME_INDEX[name], CONFIDENCE_EXACT)

    # INBOX.Sent, Archive/2023, [Gmail]/Papierkorb
    segments = [s.strip() for s in PATH_SEPARATORS.split(name) if s.strip()]
    if len(segments) > 1:
        if segments[-1] in _NAME_INDEX:
            return FolderMapping(_NAME_INDEX[segments[-1]], CONFIDENCE_PATH)
        # Children of INBOX are user folders
        if segments[0] != 'inbox' and segments[0] in _NAME_INDEX:
            return FolderMapping(_NAME_INDEX[segments[0]], CONFIDENCE_PATH)

    fuzzy_name = _fuzzy(name)
    if fuzzy_name in _FUZZY_INDEX:
        return FolderMapping(_FUZZY_INDEX[fuzzy_name], CONFIDENCE_FUZZY)

    return FolderMapping(CanonicalFolder.CUSTOM, CONFIDENCE_CUSTOM)


def default_sync_enabled(canonical_type: CanonicalFolder) -> bool:
    """Whether a newly discovered folder of this type is synced without confirmation."""
    return CanonicalFolder(canonical_type) in DEFAULT_ENABLED


def sort_key(canonical_type: str) -> int:
    try:
        return SORT_ORDER[CanonicalFolder(canonical_type)]
    except ValueError:
        return SORT_ORDER[CanonicalFolder.CUSTOM]


def is_system_folder(canonical_type: str) -> bool:
    return canonical_type != CanonicalFolder.CUSTOM.value
