"""
Cryptographic core for end-to-end encrypted chat.

- RSA-OAEP (SHA-256) identity keys, one independent encryption per message
- PBKDF2-HMAC-SHA256 + AES-256-GCM protection of the private key at rest
"""

from .config import CryptoSettings, get_settings
from .keys import AsymmetricKeyManager, KeyPair, PrivateKeyHandle, PublicKeyHandle
from .message_cipher import PLACEHOLDER, DecryptedMessage, MessageCipher
from .primitives import (
    CryptoError,
    DecodeError,
    DecryptionFailed,
    KeyDestroyed,
    MalformedKeyMaterial,
    MessageTooLarge,
    WrongPasswordOrCorrupt,
    b64decode,
    b64encode,
    derive_key,
)
from .vault import SymmetricVault, WrappedSecret

__all__ = [
    'AsymmetricKeyManager',
    'CryptoError',
    'CryptoSettings',
    'DecodeError',
    'DecryptedMessage',
    'DecryptionFailed',
    'KeyDestroyed',
    'KeyPair',
    'MalformedKeyMaterial',
    'MessageCipher',
    'MessageTooLarge',
    'PLACEHOLDER',
    'PrivateKeyHandle',
    'PublicKeyHandle',
    'SymmetricVault',
    'WrappedSecret',
    'WrongPasswordOrCorrupt',
    'b64decode',
    'b64encode',
    'derive_key',
    'get_settings',
]
