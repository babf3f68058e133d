"""
Service Configuration

All settings come from environment variables and are read once at startup.

Environment Variables:
    PROVENANCE_SEALING_SECRET: HMAC key for credentials. If unset,
        authentication is disabled and every auth call fails closed.
    PROVENANCE_ISSUER: Issuer tag bound into credentials (default provenance-api)
    PROVENANCE_CREDENTIAL_TTL: Credential lifetime in seconds (default 3600)
    PROVENANCE_PRODUCTION: 1/true/yes enables production defaults
    PROVENANCE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default INFO)
    PROVENANCE_LOG_FORMAT: json or text (default json in production)
    PROVENANCE_ALLOWED_ORIGINS: Comma-separated CORS origins
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional


DEFAULT_ISSUER = "provenance-api"
DEFAULT_CREDENTIAL_TTL = 3600

_DEV_ORIGINS = (
    "http://localhost:8080",
    "http://localhost:5173",  # Vite dev server
    "http://127.0.0.1:5173",
)


def is_production() -> bool:
    return os.environ.get("PROVENANCE_PRODUCTION", "").lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class IdentityConfig:
    """Settings for the identity verifier. Set once, read-only afterwards."""
    sealing_secret: Optional[str] = None
    issuer: str = DEFAULT_ISSUER
    default_ttl: int = DEFAULT_CREDENTIAL_TTL

    def __post_init__(self):
        if self.default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {self.default_ttl}")
        if not self.issuer:
            raise ValueError("issuer must not be empty")

    @classmethod
    def from_env(cls) -> "IdentityConfig":
        return cls(
            sealing_secret=os.environ.get("PROVENANCE_SEALING_SECRET") or None,
            issuer=os.environ.get("PROVENANCE_ISSUER", DEFAULT_ISSUER),
            default_ttl=int(
                os.environ.get("PROVENANCE_CREDENTIAL_TTL", str(DEFAULT_CREDENTIAL_TTL))
            ),
        )

    def __repr__(self) -> str:
        # Never print the secret
        secret = "set" if self.sealing_secret else "unset"
        return (
            f"IdentityConfig(sealing_secret=<{secret}>, issuer={self.issuer!r}, "
            f"default_ttl={self.default_ttl})"
        )


@dataclass(frozen=True)
class LoggingConfig:
    level: int = logging.INFO
    json: bool = False

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        level_str = os.environ.get("PROVENANCE_LOG_LEVEL", "INFO").upper()
        levels = {
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
            "CRITICAL": logging.CRITICAL,
        }

        format_str = os.environ.get("PROVENANCE_LOG_FORMAT", "").lower()
        if format_str == "json":
            use_json = True
        elif format_str == "text":
            use_json = False
        else:
            use_json = is_production()

        return cls(level=levels.get(level_str, logging.INFO), json=use_json)


@dataclass(frozen=True)
class ServerConfig:
    allowed_origins: tuple = field(default=_DEV_ORIGINS)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        raw = os.environ.get("PROVENANCE_ALLOWED_ORIGINS", "")
        origins = tuple(o.strip() for o in raw.split(",") if o.strip())
        return cls(allowed_origins=origins or _DEV_ORIGINS)
