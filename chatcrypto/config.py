"""
Tunable parameters of the cryptographic core.

Values are read from environment variables prefixed with ``CIPHERCHAT_``.
The PBKDF2 iteration count is not stored in wrapped secrets, so changing it
makes previously wrapped keys unreadable.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CryptoSettings(BaseSettings):
    """Settings for key derivation and key generation"""

    pbkdf2_iterations: int = Field(default=100_000, ge=1)
    rsa_key_size: int = Field(default=2048, ge=1024)
    min_rsa_key_size: int = Field(default=2048, ge=1024)

    model_config = SettingsConfigDict(env_prefix="CIPHERCHAT_", extra="ignore")


@lru_cache
def get_settings() -> CryptoSettings:
    """Return the process-wide settings, loaded once"""
    return CryptoSettings()
