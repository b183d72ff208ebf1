"""Runtime configuration, built once at startup and injected everywhere else.

Core modules never read os.environ; they receive a Settings instance.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from persona_veil.errors import ConfigError

MIN_SECRET_LENGTH = 32
MIN_RSA_KEY_SIZE = 2048
MAX_ANONYMOUS_TTL_HOURS = 24


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    anonymous_jwt_secret: str = field(repr=False)
    anonymous_session_secret: str = field(repr=False)
    professional_jwt_secret: str = field(repr=False)
    max_personas_per_user: int = 3
    anonymity_mix_factor: int = 5
    anonymous_token_ttl_hours: int = 24
    db_path: str = "persona_veil.db"
    upload_dir: Path = Path("uploads/anonymous")
    media_url_prefix: str = "/uploads/anonymous"
    max_upload_bytes: int = 10 * 1024 * 1024
    rsa_key_size: int = 2048
    crypto_timeout_seconds: float = 10.0
    storage_timeout_seconds: float = 5.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        secrets_by_name = {
            "ANONYMOUS_JWT_SECRET": self.anonymous_jwt_secret,
            "ANONYMOUS_SESSION_SECRET": self.anonymous_session_secret,
            "PROFESSIONAL_JWT_SECRET": self.professional_jwt_secret,
        }
        for name, value in secrets_by_name.items():
            if not value:
                raise ConfigError(f"{name} must be set")
            if len(value) < MIN_SECRET_LENGTH:
                raise ConfigError(f"{name} must be at least {MIN_SECRET_LENGTH} characters")
        if len(set(secrets_by_name.values())) != len(secrets_by_name):
            raise ConfigError(
                "ANONYMOUS_JWT_SECRET, ANONYMOUS_SESSION_SECRET and "
                "PROFESSIONAL_JWT_SECRET must all be different"
            )
        if self.max_personas_per_user < 1:
            raise ConfigError("MAX_PERSONAS_PER_USER must be at least 1")
        if not 1 <= self.anonymous_token_ttl_hours <= MAX_ANONYMOUS_TTL_HOURS:
            raise ConfigError(
                f"ANONYMOUS_TOKEN_TTL_HOURS must be between 1 and {MAX_ANONYMOUS_TTL_HOURS}"
            )
        if self.rsa_key_size < MIN_RSA_KEY_SIZE:
            raise ConfigError(f"RSA_KEY_SIZE must be at least {MIN_RSA_KEY_SIZE}")
        if self.crypto_timeout_seconds <= 0 or self.storage_timeout_seconds <= 0:
            raise ConfigError("Timeouts must be positive")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from environment variables (call load_dotenv() first)."""
        env = os.environ if environ is None else environ
        return cls(
            anonymous_jwt_secret=env.get("ANONYMOUS_JWT_SECRET", ""),
            anonymous_session_secret=env.get("ANONYMOUS_SESSION_SECRET", ""),
            professional_jwt_secret=env.get("PROFESSIONAL_JWT_SECRET", ""),
            max_personas_per_user=_int(env, "MAX_PERSONAS_PER_USER", 3),
            anonymity_mix_factor=_int(env, "ANONYMITY_MIX_FACTOR", 5),
            anonymous_token_ttl_hours=_int(env, "ANONYMOUS_TOKEN_TTL_HOURS", 24),
            db_path=env.get("PERSONA_VEIL_DB_PATH", "persona_veil.db"),
            upload_dir=Path(env.get("PERSONA_VEIL_UPLOAD_DIR", "uploads/anonymous")),
            max_upload_bytes=_int(env, "MAX_UPLOAD_BYTES", 10 * 1024 * 1024),
            rsa_key_size=_int(env, "RSA_KEY_SIZE", 2048),
            crypto_timeout_seconds=_float(env, "CRYPTO_TIMEOUT_SECONDS", 10.0),
            storage_timeout_seconds=_float(env, "STORAGE_TIMEOUT_SECONDS", 5.0),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
