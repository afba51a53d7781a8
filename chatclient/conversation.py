"""
Message history with a single peer.

Messages we send are encrypted to the peer, so we cannot read them back from
the server. Their plaintext is remembered in memory for as long as this
process runs; older sent messages show as the decrypt placeholder.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from chatcrypto import (
    PLACEHOLDER,
    AsymmetricKeyManager,
    DecryptedMessage,
    MessageCipher,
    PublicKeyHandle,
)

from .identity import MessageRecord, Session, UserRecord

logger = logging.getLogger(__name__)


@dataclass
class ChatLine:
    """One displayed message"""
    id: int
    sender_id: str
    text: str
    created_at: str
    ok: bool = True

    def is_from(self, user_id: str) -> bool:
        return self.sender_id == user_id


class Conversation:
    """The decrypted view of a conversation between the session user and a peer"""

    def __init__(self, session: Session, peer: UserRecord,
                 key_manager: Optional[AsymmetricKeyManager] = None,
                 cipher: Optional[MessageCipher] = None):
        self.session = session
        self.peer = peer
        self.cipher = cipher or MessageCipher()
        self.key_manager = key_manager or AsymmetricKeyManager()
        self.lines: List[ChatLine] = []
        self._sent: Dict[str, str] = {}
        self._peer_key: Optional[PublicKeyHandle] = None

    @property
    def peer_key(self) -> PublicKeyHandle:
        if self._peer_key is None:
            self._peer_key = self.key_manager.import_public(self.peer.public_key)
        return self._peer_key

    def visible(self, record: MessageRecord) -> bool:
        """True if the record belongs to this conversation"""
        me, peer = self.session.id, self.peer.id
        return (
            (record.sender_id == me and record.recipient_id == peer)
            or (record.sender_id == peer and record.recipient_id == me)
        )

    def prepare_outgoing(self, text: str) -> str:
        """
        Encrypt text for the peer.

        Raises:
            MessageTooLarge: If text does not fit in one message
        """
        ciphertext = self.cipher.encrypt(text, self.peer_key)
        self._sent[ciphertext] = text
        return ciphertext

    def _line(self, record: MessageRecord, result: DecryptedMessage) -> ChatLine:
        return ChatLine(
            id=record.id,
            sender_id=record.sender_id,
            text=result.text,
            created_at=record.created_at,
            ok=result.ok,
        )

    def _decrypt(self, record: MessageRecord) -> DecryptedMessage:
        if record.sender_id == self.session.id:
            text = self._sent.get(record.encrypted_content)
            if text is None:
                return DecryptedMessage(text=PLACEHOLDER, ok=False)
            return DecryptedMessage(text=text)
        return self.cipher.try_decrypt(
            record.encrypted_content, self.session.private_key, label=str(record.id)
        )

    def load(self, records: Iterable[MessageRecord]) -> List[ChatLine]:
        """Replace the history with the given records, oldest first"""
        records = [r for r in records if self.visible(r)]
        self.lines = [self._line(r, self._decrypt(r)) for r in records]
        return self.lines

    async def load_async(self, records: Iterable[MessageRecord]) -> List[ChatLine]:
        """load(), with each message decrypted concurrently in worker threads"""
        records = [r for r in records if self.visible(r)]
        results = await asyncio.gather(
            *(asyncio.to_thread(self._decrypt, r) for r in records)
        )
        self.lines = [self._line(r, result) for r, result in zip(records, results)]
        return self.lines

    def accept(self, record: MessageRecord) -> Optional[ChatLine]:
        """
        Append a pushed record if it belongs here.

        Returns the new line, or None if the record is for another
        conversation or is already shown.
        """
        if not self.visible(record):
            return None
        if any(line.id == record.id for line in self.lines):
            return None
        line = self._line(record, self._decrypt(record))
        self.lines.append(line)
        return line
