"""
Runtime configuration for the authorization server.

Values come from the environment (a local .env is merged first) and are
resolved once when AuthConfig is constructed. Keyword arguments win over the
environment so tests and the app factory can pin individual settings.
"""

import os
import secrets

import dotenv

dotenv.load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> list:
    return [item for item in os.getenv(name, default).split(" ") if item]


class AuthConfig:
    """Settings shared by every auth and oauth component"""

    def __init__(self, **overrides):
        # Storage
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///:memory:")
        self.pool_size = _env_int("DB_POOL_SIZE", 10)
        self.max_overflow = _env_int("DB_MAX_OVERFLOW", 20)
        self.pool_recycle = _env_int("DB_POOL_RECYCLE", 1500)
        self.echo = _env_bool("DB_ECHO", False)

        # Lifetimes (seconds)
        self.auth_code_lifetime = _env_int("AUTH_CODE_LIFETIME", 600)
        self.access_token_lifetime = _env_int("ACCESS_TOKEN_LIFETIME", 3600)
        self.reset_code_lifetime = _env_int("RESET_CODE_LIFETIME", 3600)
        self.transaction_lifetime = _env_int("TRANSACTION_LIFETIME", 600)

        # Lengths
        self.token_length = _env_int("TOKEN_LENGTH", 32)
        self.confirm_token_length = _env_int("CONFIRM_TOKEN_LENGTH", 32)
        self.client_secret_length = _env_int("CLIENT_SECRET_LENGTH", 48)
        self.salt_length = _env_int("SALT_LENGTH", 16)

        # Hashing
        self.hash_algorithm = os.getenv("HASH_ALGORITHM", "sha256")
        self.password_hash_algorithm = os.getenv("PASSWORD_HASH_ALGORITHM", "bcrypt")
        self.bcrypt_rounds = _env_int("BCRYPT_ROUNDS", 12)

        # Scopes
        self.default_scope = os.getenv("DEFAULT_SCOPE", "profile")
        self.allowed_scopes = _env_list(
            "OAUTH_ALLOWED_SCOPES", "profile profile.read.email profile.read.name"
        )

        # Consent transactions are signed, so every instance must share the key
        self.transaction_secret = os.getenv("TRANSACTION_SECRET") or secrets.token_urlsafe(48)

        self.sweep_expired_tokens = _env_bool("SWEEP_EXPIRED_TOKENS", True)

        self.locales = _env_list("LOCALES", "en-us de-de")
        self.default_locale = os.getenv("DEFAULT_LOCALE", "en-us")
        self.http_origin = os.getenv("HTTP_ORIGIN") or None

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise TypeError(f"Unknown setting: {key}")
            setattr(self, key, value)

        self._validate()

    def _validate(self):
        for name in (
            "auth_code_lifetime",
            "access_token_lifetime",
            "reset_code_lifetime",
            "transaction_lifetime",
            "token_length",
            "confirm_token_length",
            "client_secret_length",
            "salt_length",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31")

        if self.default_locale not in self.locales:
            raise ValueError(f"DEFAULT_LOCALE {self.default_locale!r} is not in LOCALES")
