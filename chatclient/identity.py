"""
Identity and session management for the chat client.

Ties the cryptographic core to the user directory: registration creates and
wraps the identity key pair, login unwraps it, and the active session keeps
the usable private key in memory until logout.

The unwrapped private key is never written to device storage. Only the
non-secret profile (id, username, display name) is persisted, so after a
restart the user has to enter their password again.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

from chatcrypto import (
    AsymmetricKeyManager,
    CryptoSettings,
    DecodeError,
    MalformedKeyMaterial,
    PrivateKeyHandle,
    SymmetricVault,
    WrongPasswordOrCorrupt,
)

from .storage import DeviceStore

logger = logging.getLogger(__name__)

AUTH_STORAGE_KEY = "cipher_chat_auth"
# Written by older clients that kept the unwrapped key on the device
LEGACY_PRIVATE_KEY = "cipher_private_key"


class IdentityError(Exception):
    """Base exception for user-facing identity errors"""
    pass


class UsernameTaken(IdentityError):
    def __init__(self, username: str = ""):
        super().__init__("Username already taken")
        self.username = username


class UserNotFound(IdentityError):
    def __init__(self, username: str = ""):
        super().__init__("User not found")
        self.username = username


class InvalidPassword(IdentityError):
    def __init__(self):
        super().__init__("Invalid password")


@dataclass
class UserRecord:
    """
    A user as stored by the directory.

    public_key and encrypted_private_key are opaque text produced by the
    crypto core; the directory stores them without interpreting them.
    """
    username: str
    display_name: str
    public_key: str
    encrypted_private_key: str
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'UserRecord':
        return cls(
            id=data.get('id'),
            username=data['username'],
            display_name=data['display_name'],
            public_key=data['public_key'],
            encrypted_private_key=data.get('encrypted_private_key', ''),
        )


@dataclass
class MessageRecord:
    """A stored message; encrypted_content is opaque base64 ciphertext"""
    id: int
    sender_id: str
    recipient_id: str
    encrypted_content: str
    created_at: str

    @classmethod
    def from_dict(cls, data: dict) -> 'MessageRecord':
        return cls(
            id=data['id'],
            sender_id=data['sender_id'],
            recipient_id=data['recipient_id'],
            encrypted_content=data['encrypted_content'],
            created_at=data['created_at'],
        )


class UserDirectory(Protocol):
    """Where user records live"""

    async def find_user_by_username(self, username: str) -> Optional[UserRecord]: ...

    async def insert_user(self, record: UserRecord) -> UserRecord: ...

    async def get_user_by_id(self, user_id: str) -> Optional[UserRecord]: ...


class MessageStore(Protocol):
    """Where ciphertext messages live"""

    async def insert_message(self, sender_id: str, recipient_id: str,
                             ciphertext: str) -> MessageRecord: ...

    async def list_messages(self, user_a: str, user_b: str) -> List[MessageRecord]: ...


@dataclass
class Session:
    """The signed-in user and their unwrapped private key"""
    id: str
    username: str
    display_name: str
    private_key: PrivateKeyHandle

    def profile(self) -> dict:
        return {
            'id': self.id,
            'username': self.username,
            'displayName': self.display_name,
        }


class IdentitySession:
    """
    Register, log in, and log out a single device identity.

    Key generation and password derivation are slow, so they run in worker
    threads; a caller that loses interest can simply cancel the awaiting task.
    """

    def __init__(self, directory: UserDirectory, device_store: DeviceStore,
                 vault: Optional[SymmetricVault] = None,
                 key_manager: Optional[AsymmetricKeyManager] = None,
                 settings: Optional[CryptoSettings] = None):
        self.directory = directory
        self.device_store = device_store
        self.vault = vault or SymmetricVault(settings)
        self.key_manager = key_manager or AsymmetricKeyManager(settings)
        self._session: Optional[Session] = None

    async def register(self, username: str, display_name: str, password: str) -> Session:
        """
        Create a new identity.

        Raises:
            UsernameTaken: If the directory already has this username
        """
        if await self.directory.find_user_by_username(username) is not None:
            raise UsernameTaken(username)

        key_pair = await asyncio.to_thread(self.key_manager.generate)
        public_key = self.key_manager.export_public(key_pair.public_key)
        private_key = self.key_manager.export_private(key_pair.private_key)
        wrapped = await asyncio.to_thread(
            self.vault.wrap, private_key.encode("utf-8"), password
        )
        del private_key

        try:
            record = await self.directory.insert_user(UserRecord(
                username=username,
                display_name=display_name,
                public_key=public_key,
                encrypted_private_key=wrapped,
            ))
        except UsernameTaken:
            key_pair.private_key.destroy()
            raise

        logger.info("Registered user %s", record.username)
        return self._activate(record, key_pair.private_key)

    async def login(self, username: str, password: str) -> Session:
        """
        Unlock an existing identity with its password.

        An unknown username leaves any current session alone; a wrong password
        or an unusable key ends it.

        Raises:
            UserNotFound: If no such user exists
            InvalidPassword: If the wrapped key does not open with this password
            MalformedKeyMaterial: If the unwrapped key cannot be imported
        """
        record = await self.directory.find_user_by_username(username)
        if record is None:
            raise UserNotFound(username)

        try:
            secret = await asyncio.to_thread(
                self.vault.unwrap, record.encrypted_private_key, password
            )
        except (WrongPasswordOrCorrupt, DecodeError) as e:
            logger.info("Login failed for %s", username)
            self._end_session()
            raise InvalidPassword() from e

        try:
            private_key = self.key_manager.import_private(secret.decode("utf-8"))
        except UnicodeDecodeError as e:
            self._end_session()
            raise MalformedKeyMaterial("Unwrapped key is not text") from e
        except MalformedKeyMaterial:
            self._end_session()
            raise

        logger.info("Logged in user %s", record.username)
        return self._activate(record, private_key)

    def current_session(self) -> Optional[Session]:
        """
        Return the active session, or None.

        Both the stored profile and the in-memory key must be present.
        """
        stored = self.device_store.get(AUTH_STORAGE_KEY)
        session = self._session
        if stored is None or session is None or session.private_key.destroyed:
            return None
        try:
            profile = json.loads(stored)
        except ValueError:
            return None
        if profile.get('id') != session.id:
            return None
        return session

    def _end_session(self):
        if self._session is not None:
            self._session.private_key.destroy()
            self._session = None
        self.device_store.delete(AUTH_STORAGE_KEY)

    def logout(self):
        """Forget the session and all device-local identity data"""
        self._end_session()
        self.device_store.delete(LEGACY_PRIVATE_KEY)

    def _activate(self, record: UserRecord, private_key: PrivateKeyHandle) -> Session:
        if self._session is not None:
            self._session.private_key.destroy()

        self._session = Session(
            id=record.id,
            username=record.username,
            display_name=record.display_name,
            private_key=private_key,
        )
        self.device_store.put(AUTH_STORAGE_KEY, json.dumps(self._session.profile()))
        return self._session
