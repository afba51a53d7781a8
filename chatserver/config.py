"""Server settings, loaded from ``CIPHERCHAT_SERVER_*`` environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SECRET_KEY = "your-secret-key-change-this-in-production"


class ServerSettings(BaseSettings):
    """Settings for the relay server"""

    database_url: str = Field(default="sqlite+aiosqlite:///./chat.db")
    secret_key: str = Field(default=DEFAULT_SECRET_KEY)
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60 * 24, ge=1)
    challenge_ttl_seconds: int = Field(default=120, ge=1)
    max_ciphertext_length: int = Field(default=4096, ge=1)

    model_config = SettingsConfigDict(env_prefix="CIPHERCHAT_SERVER_", extra="ignore")
