"""
Per-message public-key encryption

Every message is one independent RSA-OAEP operation under the recipient's
public key. There is no session key and no state carried between messages,
which caps a message at one OAEP block (190 bytes of UTF-8 for a 2048-bit
key).
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List

from .keys import PrivateKeyHandle, PublicKeyHandle
from .primitives import (
    DecodeError,
    DecryptionFailed,
    MessageTooLarge,
    b64decode,
    b64encode,
)

logger = logging.getLogger(__name__)

PLACEHOLDER = "[Failed to decrypt]"


@dataclass(frozen=True)
class DecryptedMessage:
    """
    Outcome of decrypting one entry of a message history.

    Attributes:
        text: Plaintext, or PLACEHOLDER when decryption failed
        ok: False when text is the placeholder
    """
    text: str
    ok: bool = True


class MessageCipher:
    """Encrypts and decrypts chat messages"""

    @staticmethod
    def max_plaintext_bytes(public_key: PublicKeyHandle) -> int:
        return public_key.max_plaintext_bytes

    @staticmethod
    def encrypt(plaintext: str, recipient_key: PublicKeyHandle) -> str:
        """
        Encrypt a message for one recipient.

        Args:
            plaintext: Message text
            recipient_key: Recipient's public key

        Returns:
            Base64 ciphertext

        Raises:
            MessageTooLarge: If the UTF-8 plaintext exceeds one OAEP block
        """
        data = plaintext.encode("utf-8")
        limit = recipient_key.max_plaintext_bytes
        if len(data) > limit:
            raise MessageTooLarge(len(data), limit)
        return b64encode(recipient_key.encrypt(data))

    @staticmethod
    def decrypt(ciphertext: str, own_key: PrivateKeyHandle) -> str:
        """
        Decrypt a message addressed to us.

        Raises:
            DecryptionFailed: If the ciphertext is malformed, corrupted or
                was encrypted to a different key
        """
        try:
            data = b64decode(ciphertext)
        except DecodeError as e:
            raise DecryptionFailed("Ciphertext is not valid base64") from e
        plaintext = own_key.decrypt(data)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionFailed("Plaintext is not valid UTF-8") from e

    @classmethod
    def decrypt_many(cls, ciphertexts: Iterable[str],
                     own_key: PrivateKeyHandle) -> List[DecryptedMessage]:
        """
        Decrypt a history, one message at a time.

        A message that fails to decrypt becomes a placeholder entry; it never
        prevents the remaining messages from being decrypted.
        """
        results = []
        for index, ciphertext in enumerate(ciphertexts):
            results.append(cls.try_decrypt(ciphertext, own_key, label=str(index)))
        return results

    @classmethod
    def try_decrypt(cls, ciphertext: str, own_key: PrivateKeyHandle,
                    label: str = "") -> DecryptedMessage:
        """Decrypt one message, degrading to the placeholder on failure"""
        try:
            return DecryptedMessage(text=cls.decrypt(ciphertext, own_key))
        except DecryptionFailed as e:
            logger.warning("Could not decrypt message %s: %s", label, e)
            return DecryptedMessage(text=PLACEHOLDER, ok=False)
