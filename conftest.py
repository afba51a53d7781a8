"""Shared fixtures: fast crypto settings, pre-generated keys, in-memory collaborators."""

import itertools
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from chatclient.identity import IdentitySession, MessageRecord, UserRecord, UsernameTaken
from chatclient.storage import MemoryDeviceStore
from chatcrypto import AsymmetricKeyManager, CryptoSettings, KeyPair, SymmetricVault

FAST_ITERATIONS = 1_000


class InMemoryDirectory:
    """UserDirectory and MessageStore kept in dictionaries"""

    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.messages: List[MessageRecord] = []
        self._ids = itertools.count(1)

    async def find_user_by_username(self, username: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.username == username:
                return user
        return None

    async def insert_user(self, record: UserRecord) -> UserRecord:
        if any(user.username == record.username for user in self.users.values()):
            raise UsernameTaken(record.username)
        stored = UserRecord(
            id=str(uuid.uuid4()),
            username=record.username,
            display_name=record.display_name,
            public_key=record.public_key,
            encrypted_private_key=record.encrypted_private_key,
        )
        self.users[stored.id] = stored
        return stored

    async def get_user_by_id(self, user_id: str) -> Optional[UserRecord]:
        return self.users.get(user_id)

    async def insert_message(self, sender_id: str, recipient_id: str,
                             ciphertext: str) -> MessageRecord:
        record = MessageRecord(
            id=next(self._ids),
            sender_id=sender_id,
            recipient_id=recipient_id,
            encrypted_content=ciphertext,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self.messages.append(record)
        return record

    async def list_messages(self, user_a: str, user_b: str) -> List[MessageRecord]:
        pair = {user_a, user_b}
        return [m for m in self.messages if {m.sender_id, m.recipient_id} == pair]


@pytest.fixture(scope="session")
def crypto_settings() -> CryptoSettings:
    return CryptoSettings(pbkdf2_iterations=FAST_ITERATIONS)


@pytest.fixture(scope="session")
def key_manager(crypto_settings) -> AsymmetricKeyManager:
    return AsymmetricKeyManager(crypto_settings)


@pytest.fixture
def vault(crypto_settings) -> SymmetricVault:
    return SymmetricVault(crypto_settings)


@pytest.fixture(scope="session")
def alice_keys(key_manager) -> KeyPair:
    return key_manager.generate()


@pytest.fixture(scope="session")
def bob_keys(key_manager) -> KeyPair:
    return key_manager.generate()


@pytest.fixture
def directory() -> InMemoryDirectory:
    return InMemoryDirectory()


@pytest.fixture
def device_store() -> MemoryDeviceStore:
    return MemoryDeviceStore()


@pytest.fixture
def make_identity(directory, crypto_settings):
    """Factory for IdentitySessions sharing one directory, each on its own device"""

    def factory(device_store=None) -> IdentitySession:
        return IdentitySession(
            directory,
            device_store if device_store is not None else MemoryDeviceStore(),
            settings=crypto_settings,
        )

    return factory
