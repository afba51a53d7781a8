"""
Authentication module for JWT token management.

The server never learns a user's password. A client proves who it is by
decrypting a random challenge that the server encrypted to the user's stored
public key; a correct answer is exchanged for a JWT access token.
"""

import os
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from jose import JWTError, jwt
from pydantic import BaseModel

from chatcrypto import AsymmetricKeyManager, b64encode
from chatcrypto.primitives import constant_time_compare

from .config import ServerSettings

CHALLENGE_BYTES = 32


class Token(BaseModel):
    """Token response model"""
    access_token: str
    token_type: str
    user_id: str
    username: str


def create_access_token(data: dict, settings: ServerSettings,
                        expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data to encode in the token
        settings: Server settings holding the signing key
        expires_delta: Token expiration time

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def verify_token(token: Optional[str], settings: ServerSettings) -> Optional[str]:
    """
    Verify a JWT token and extract the user id.

    Returns:
        User id if the token is valid, None otherwise
    """
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    return payload.get("sub")


class ChallengeStore:
    """
    Outstanding login challenges, keyed by a random challenge id.

    A user may hold several challenges at once, so requesting a new one never
    invalidates a login already in flight. Each challenge is single-use and
    expires after ttl seconds.
    """

    def __init__(self, ttl_seconds: int, key_manager: Optional[AsymmetricKeyManager] = None):
        self.ttl_seconds = ttl_seconds
        self.key_manager = key_manager or AsymmetricKeyManager()
        self._pending: Dict[str, Tuple[str, bytes, float]] = {}

    def _prune(self, now: float):
        expired = [cid for cid, (_, _, expires_at) in self._pending.items() if now > expires_at]
        for challenge_id in expired:
            del self._pending[challenge_id]

    def issue(self, username: str, public_key: str) -> Tuple[str, str]:
        """
        Create a challenge for username, encrypted to its public key.

        Returns:
            (challenge id, base64 ciphertext of the challenge)
        """
        now = time.monotonic()
        self._prune(now)
        secret = os.urandom(CHALLENGE_BYTES)
        handle = self.key_manager.import_public(public_key)
        challenge_id = secrets.token_urlsafe(16)
        self._pending[challenge_id] = (username, secret, now + self.ttl_seconds)
        return challenge_id, b64encode(handle.encrypt(secret))

    def redeem(self, challenge_id: str, username: str, answer: bytes) -> bool:
        """Check an answer; the challenge is consumed either way"""
        pending = self._pending.pop(challenge_id, None)
        if pending is None:
            return False
        owner, secret, expires_at = pending
        if owner != username or time.monotonic() > expires_at:
            return False
        return constant_time_compare(secret, answer)

    def __len__(self) -> int:
        return len(self._pending)
