"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational operations shared by the vault, the key
manager and the message cipher: the error taxonomy, the base64 codec used to
carry byte blobs over text channels, password-based key derivation and
AES-256-GCM.
"""

import base64
import binascii
import hmac
import os
from typing import Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import get_settings


SALT_LENGTH = 16
NONCE_LENGTH = 12
KEY_LENGTH = 32
TAG_LENGTH = 16

# Callable returning n cryptographically secure random bytes
RandomSource = Callable[[int], bytes]


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class DecodeError(CryptoError):
    """Text is not valid base64"""
    pass


class MalformedKeyMaterial(CryptoError):
    """Key text could not be imported as an RSA key of an acceptable size"""
    pass


class WrongPasswordOrCorrupt(CryptoError):
    """
    Authenticated decryption of a wrapped secret failed.

    A wrong password and a tampered blob are deliberately indistinguishable.
    """

    def __init__(self, message: str = "Invalid password"):
        super().__init__(message)


class MessageTooLarge(CryptoError):
    """Plaintext does not fit in a single OAEP block"""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Message is {size} bytes, limit is {limit} bytes")
        self.size = size
        self.limit = limit


class DecryptionFailed(CryptoError):
    """Ciphertext was not produced for this key, or was corrupted"""
    pass


class KeyDestroyed(CryptoError):
    """A private key handle was used after it was destroyed"""
    pass


def b64encode(data: bytes) -> str:
    """Encode bytes as standard padded base64 text"""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """
    Decode standard base64 text.

    Args:
        text: Base64 text with padding

    Returns:
        Decoded bytes

    Raises:
        DecodeError: On characters outside the alphabet or bad padding
    """
    if not isinstance(text, str):
        raise DecodeError(f"Expected text, got {type(text).__name__}")
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise DecodeError(f"Invalid base64 encoding: {e}") from e


def derive_key(password: str, salt: bytes, iterations: Optional[int] = None) -> bytes:
    """
    Derive a 256-bit AES key from a password using PBKDF2-HMAC-SHA256.

    Args:
        password: User's password
        salt: 16 random bytes stored next to the ciphertext
        iterations: PBKDF2 rounds, defaults to the configured value

    Returns:
        32-byte encryption key
    """
    if len(salt) != SALT_LENGTH:
        raise ValueError(f"Salt must be {SALT_LENGTH} bytes")
    if iterations is None:
        iterations = get_settings().pbkdf2_iterations

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def random_bytes(length: int) -> bytes:
    """Default random source, backed by the OS CSPRNG"""
    return os.urandom(length)


def aead_encrypt(key: bytes, nonce: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt with AES-256-GCM and empty associated data.

    Returns:
        ciphertext + tag (16 bytes)
    """
    if len(nonce) != NONCE_LENGTH:
        raise ValueError(f"Nonce must be {NONCE_LENGTH} bytes")
    return AESGCM(key).encrypt(nonce, plaintext, None)


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt AES-256-GCM output produced by aead_encrypt.

    Raises:
        WrongPasswordOrCorrupt: If the tag does not verify
    """
    if len(nonce) != NONCE_LENGTH or len(ciphertext) < TAG_LENGTH:
        raise WrongPasswordOrCorrupt()
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise WrongPasswordOrCorrupt() from e


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
