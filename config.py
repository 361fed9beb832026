# config.py
import base64
import binascii
import os
import re
from dotenv import load_dotenv
from errors import ConfigurationError

load_dotenv()  # Loads from .env file

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


def _decode_key(value: str):
    """ENCRYPTION_KEY is 32 bytes given as 64 hex chars or base64."""
    if not value:
        return None
    value = value.strip()
    if _HEX_KEY.match(value):
        return bytes.fromhex(value)
    try:
        key = base64.b64decode(value.replace("-", "+").replace("_", "/"), validate=True)
    except (binascii.Error, ValueError):
        raise ConfigurationError("ENCRYPTION_KEY must be 32 bytes encoded as hex or base64")
    if len(key) != 32:
        raise ConfigurationError(f"ENCRYPTION_KEY must decode to 32 bytes, got {len(key)}")
    return key


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    def __init__(self):
        # JWT
        self.JWT_SECRET = os.getenv("JWT_SECRET", "")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRES_IN = os.getenv("JWT_EXPIRES_IN", "15m")
        self.REFRESH_TOKEN_EXPIRES_IN = os.getenv("REFRESH_TOKEN_EXPIRES_IN", "7d")
        # Encryption box (refresh envelopes + CSRF cookies)
        self.ENCRYPTION_KEY = _decode_key(os.getenv("ENCRYPTION_KEY", ""))
        # Keyed digest used to look refresh secrets up in the DB
        self.REFRESH_TOKEN_HASH_KEY = os.getenv("REFRESH_TOKEN_HASH_KEY", self.JWT_SECRET).encode("utf-8")
        # DB
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./data/auth.db")
        self.SKIP_DB_INIT = _flag("SKIP_DB_INIT")
        # Empty disables rate limiting
        self.REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
        self.APP_ENV = os.getenv("APP_ENV", "development").lower()
        # Empty keeps alerts in the log only
        self.SENTRY_DSN = os.getenv("SENTRY_DSN", "")

    @property
    def is_production(self) -> bool:
        return self.APP_ENV in ("prod", "production")
