"""Application configuration with environment variables."""

from dataclasses import dataclass

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # Database
    DATABASE_URL: str = "sqlite:///./aba_core.db"

    # Session Token (supports key rotation)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 8

    # PHI field encryption (64 hex chars = 32 bytes each)
    # Generate with: openssl rand -hex 32
    ENCRYPTION_KEY: str = ""
    HMAC_KEY: str = ""  # Falls back to ENCRYPTION_KEY if empty

    # Breach detection thresholds
    BREACH_FAILED_LOGIN_THRESHOLD: int = 5
    BREACH_UNUSUAL_ACCESS_THRESHOLD: int = 100
    BREACH_DATA_EXPORT_THRESHOLD: int = 50

    # Audit
    AUDIT_HASH_CHAIN_ENABLED: bool = True

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets

    @property
    def cookie_secure(self) -> bool:
        """Secure cookies only in production."""
        return self.ENV != "dev"


@dataclass(frozen=True)
class EncryptionConfig:
    """Key material for the PHI field cipher."""

    encryption_key: bytes
    hmac_key: bytes

    @classmethod
    def from_hex(cls, encryption_key: str, hmac_key: str = "") -> "EncryptionConfig":
        """
        Build from hex-encoded keys.

        The HMAC key falls back to the encryption key when not set.

        Raises:
            RuntimeError: If a key is missing or not 32 bytes of hex
        """
        if not encryption_key:
            raise RuntimeError(
                "ENCRYPTION_KEY not configured. Generate with: openssl rand -hex 32"
            )
        enc = _parse_key(encryption_key, "ENCRYPTION_KEY")
        mac = _parse_key(hmac_key, "HMAC_KEY") if hmac_key else enc
        return cls(encryption_key=enc, hmac_key=mac)

    @classmethod
    def from_settings(cls, settings: Settings) -> "EncryptionConfig":
        return cls.from_hex(settings.ENCRYPTION_KEY, settings.HMAC_KEY)


@dataclass(frozen=True)
class BreachThresholds:
    """Counts at or above which a breach is recorded."""

    failed_login_attempts: int = 5
    unusual_access_count: int = 100
    data_export_count: int = 50

    @classmethod
    def from_settings(cls, settings: Settings) -> "BreachThresholds":
        return cls(
            failed_login_attempts=settings.BREACH_FAILED_LOGIN_THRESHOLD,
            unusual_access_count=settings.BREACH_UNUSUAL_ACCESS_THRESHOLD,
            data_export_count=settings.BREACH_DATA_EXPORT_THRESHOLD,
        )


def _parse_key(value: str, name: str) -> bytes:
    try:
        key = bytes.fromhex(value)
    except ValueError:
        raise RuntimeError(f"{name} must be hex encoded")
    if len(key) != 32:
        raise RuntimeError(f"{name} must be 64 hex characters (32 bytes)")
    return key


settings = Settings()
