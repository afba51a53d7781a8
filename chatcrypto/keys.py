"""
Long-term RSA identity keys

Generates the per-user RSA-OAEP key pair and moves it in and out of the text
wire format (base64 of DER SubjectPublicKeyInfo / PKCS#8). Keys are handed
around as capability handles: a public handle can only encrypt, a private
handle can only decrypt.
"""

from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .config import CryptoSettings, get_settings
from .primitives import (
    DecodeError,
    DecryptionFailed,
    KeyDestroyed,
    MalformedKeyMaterial,
    b64decode,
    b64encode,
)

PUBLIC_EXPONENT = 65537
OAEP_HASH_LENGTH = hashes.SHA256.digest_size


def oaep_padding() -> padding.OAEP:
    """OAEP with MGF1-SHA256, SHA-256 and no label"""
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


class PublicKeyHandle:
    """Encrypt-only reference to an RSA public key"""

    __slots__ = ("_key",)

    def __init__(self, key: rsa.RSAPublicKey):
        if not isinstance(key, rsa.RSAPublicKey):
            raise TypeError("PublicKeyHandle requires an RSA public key")
        self._key = key

    @property
    def key_size(self) -> int:
        return self._key.key_size

    @property
    def max_plaintext_bytes(self) -> int:
        """Largest plaintext a single OAEP-SHA256 block can carry"""
        return self._key.key_size // 8 - 2 * OAEP_HASH_LENGTH - 2

    def encrypt(self, data: bytes) -> bytes:
        return self._key.encrypt(data, oaep_padding())

    def __repr__(self) -> str:
        return f"<PublicKeyHandle rsa-{self.key_size}>"


class PrivateKeyHandle:
    """
    Decrypt-only reference to an RSA private key.

    The handle has no way to produce the public half or raw bytes; exporting
    goes through AsymmetricKeyManager.export_private. destroy() drops the key
    so it cannot be used again from this handle.
    """

    __slots__ = ("_key",)

    def __init__(self, key: rsa.RSAPrivateKey):
        if not isinstance(key, rsa.RSAPrivateKey):
            raise TypeError("PrivateKeyHandle requires an RSA private key")
        self._key: Optional[rsa.RSAPrivateKey] = key

    def _require(self) -> rsa.RSAPrivateKey:
        if self._key is None:
            raise KeyDestroyed("Private key has been destroyed")
        return self._key

    @property
    def destroyed(self) -> bool:
        return self._key is None

    @property
    def key_size(self) -> int:
        return self._require().key_size

    def decrypt(self, data: bytes) -> bytes:
        """
        Raises:
            DecryptionFailed: If data was not encrypted to this key or was altered
            KeyDestroyed: If destroy() has been called
        """
        key = self._require()
        try:
            return key.decrypt(data, oaep_padding())
        except ValueError as e:
            raise DecryptionFailed("Decryption failed") from e

    def destroy(self):
        """Forget the underlying key object"""
        self._key = None

    def __repr__(self) -> str:
        state = "destroyed" if self._key is None else f"rsa-{self._key.key_size}"
        return f"<PrivateKeyHandle {state}>"


@dataclass(frozen=True)
class KeyPair:
    """A user's long-term identity key pair"""
    public_key: PublicKeyHandle
    private_key: PrivateKeyHandle


class AsymmetricKeyManager:
    """
    Generates, exports and imports RSA-OAEP identity keys.
    """

    def __init__(self, settings: Optional[CryptoSettings] = None):
        self.settings = settings or get_settings()

    def generate(self) -> KeyPair:
        """
        Generate a new RSA key pair.

        This is the slowest operation in the package; async callers should
        run it in a worker thread.
        """
        private_key = rsa.generate_private_key(
            public_exponent=PUBLIC_EXPONENT,
            key_size=self.settings.rsa_key_size,
        )
        return KeyPair(
            public_key=PublicKeyHandle(private_key.public_key()),
            private_key=PrivateKeyHandle(private_key),
        )

    def export_public(self, handle: PublicKeyHandle) -> str:
        """Serialize a public key as base64 DER SubjectPublicKeyInfo"""
        if not isinstance(handle, PublicKeyHandle):
            raise TypeError("export_public requires a PublicKeyHandle")
        der = handle._key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return b64encode(der)

    def export_private(self, handle: PrivateKeyHandle) -> str:
        """Serialize a private key as base64 DER PKCS#8, unencrypted"""
        if not isinstance(handle, PrivateKeyHandle):
            raise TypeError("export_private requires a PrivateKeyHandle")
        der = handle._require().private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return b64encode(der)

    def _check_size(self, key_size: int):
        if key_size < self.settings.min_rsa_key_size:
            raise MalformedKeyMaterial(
                f"RSA key is {key_size} bits, minimum is {self.settings.min_rsa_key_size}"
            )

    def import_public(self, text: str) -> PublicKeyHandle:
        """
        Load a public key exported by export_public.

        Raises:
            MalformedKeyMaterial: On bad encoding, non-RSA keys or undersized keys
        """
        try:
            key = serialization.load_der_public_key(b64decode(text))
        except (DecodeError, ValueError, UnsupportedAlgorithm) as e:
            raise MalformedKeyMaterial(f"Invalid public key: {e}") from e
        if not isinstance(key, rsa.RSAPublicKey):
            raise MalformedKeyMaterial("Public key is not an RSA key")
        self._check_size(key.key_size)
        return PublicKeyHandle(key)

    def import_private(self, text: str) -> PrivateKeyHandle:
        """
        Load a private key exported by export_private.

        Raises:
            MalformedKeyMaterial: On bad encoding, non-RSA keys or undersized keys
        """
        try:
            key = serialization.load_der_private_key(b64decode(text), password=None)
        except (DecodeError, ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise MalformedKeyMaterial(f"Invalid private key: {e}") from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise MalformedKeyMaterial("Private key is not an RSA key")
        self._check_size(key.key_size)
        return PrivateKeyHandle(key)
