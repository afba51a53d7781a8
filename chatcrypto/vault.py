"""
Password-protected storage of secrets

Wraps an opaque secret (in practice the exported private key) under an
AES-256-GCM key derived from the user's password. The wrapped form is
self-describing: salt and nonce travel in front of the ciphertext, and the
whole blob is base64 text safe to store in a single column.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import CryptoSettings, get_settings
from .primitives import (
    NONCE_LENGTH,
    SALT_LENGTH,
    TAG_LENGTH,
    RandomSource,
    WrongPasswordOrCorrupt,
    aead_decrypt,
    aead_encrypt,
    b64decode,
    b64encode,
    derive_key,
    random_bytes,
)

logger = logging.getLogger(__name__)

HEADER_LENGTH = SALT_LENGTH + NONCE_LENGTH


@dataclass(frozen=True)
class WrappedSecret:
    """
    A secret encrypted under a password-derived key.

    Attributes:
        salt: PBKDF2 salt (16 bytes)
        nonce: AES-GCM nonce (12 bytes)
        ciphertext: Encrypted secret with the GCM tag appended
    """
    salt: bytes
    nonce: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        return self.salt + self.nonce + self.ciphertext

    def to_text(self) -> str:
        """Serialize as base64(salt || nonce || ciphertext)"""
        return b64encode(self.to_bytes())

    @classmethod
    def from_bytes(cls, data: bytes) -> 'WrappedSecret':
        if len(data) < HEADER_LENGTH + TAG_LENGTH:
            raise WrongPasswordOrCorrupt()
        return cls(
            salt=data[:SALT_LENGTH],
            nonce=data[SALT_LENGTH:HEADER_LENGTH],
            ciphertext=data[HEADER_LENGTH:],
        )

    @classmethod
    def from_text(cls, text: str) -> 'WrappedSecret':
        """Parse the text form; DecodeError if it is not base64"""
        return cls.from_bytes(b64decode(text))


class SymmetricVault:
    """
    Wraps and unwraps secrets with a password.

    Every wrap draws a fresh salt and nonce, so wrapping the same secret twice
    with the same password yields unrelated blobs.
    """

    def __init__(self, settings: Optional[CryptoSettings] = None,
                 random_source: RandomSource = random_bytes):
        """
        Args:
            settings: Crypto settings, defaults to the environment-loaded ones
            random_source: Callable returning n secure random bytes
        """
        self.settings = settings or get_settings()
        self.random_source = random_source

    def _derive(self, password: str, salt: bytes) -> bytes:
        return derive_key(password, salt, self.settings.pbkdf2_iterations)

    def wrap(self, secret: bytes, password: str) -> str:
        """
        Encrypt a secret under a password.

        Args:
            secret: Bytes to protect
            password: User's password

        Returns:
            Base64 text of salt + nonce + ciphertext
        """
        salt = self.random_source(SALT_LENGTH)
        nonce = self.random_source(NONCE_LENGTH)
        if len(salt) != SALT_LENGTH or len(nonce) != NONCE_LENGTH:
            raise ValueError("Random source returned the wrong number of bytes")

        key = self._derive(password, salt)
        ciphertext = aead_encrypt(key, nonce, secret)
        return WrappedSecret(salt=salt, nonce=nonce, ciphertext=ciphertext).to_text()

    def unwrap(self, wrapped: str, password: str) -> bytes:
        """
        Recover a secret wrapped by wrap().

        Args:
            wrapped: Text produced by wrap()
            password: User's password

        Returns:
            The original secret

        Raises:
            DecodeError: If the text is not base64
            WrongPasswordOrCorrupt: If the password is wrong or the blob was altered
        """
        blob = WrappedSecret.from_text(wrapped)
        key = self._derive(password, blob.salt)
        try:
            return aead_decrypt(key, blob.nonce, blob.ciphertext)
        except WrongPasswordOrCorrupt:
            logger.debug("Vault authentication tag did not verify")
            raise
