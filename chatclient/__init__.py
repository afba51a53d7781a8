"""
Chat client: identity session, device storage and server access.
"""

from .identity import (
    IdentityError,
    IdentitySession,
    InvalidPassword,
    MessageRecord,
    Session,
    UserNotFound,
    UserRecord,
    UsernameTaken,
)
from .storage import MemoryDeviceStore, SqliteDeviceStore

__all__ = [
    'IdentityError',
    'IdentitySession',
    'InvalidPassword',
    'MemoryDeviceStore',
    'MessageRecord',
    'Session',
    'SqliteDeviceStore',
    'UserNotFound',
    'UserRecord',
    'UsernameTaken',
]
