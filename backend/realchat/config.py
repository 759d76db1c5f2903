"""RealChat application configuration.

Loads settings from two YAML files:
  * realchat.settings.yaml  : non-secret configuration
  * realchat.secrets.yaml   : secrets (never committed)

Secrets can also come from the environment, which wins over the file:
  * REALCHAT_ACCESS_SECRET / REALCHAT_REFRESH_SECRET : JWT signing keys
  * BREVO_API_KEY                                  : transactional email key
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("realchat.settings.yaml")
SECRETS_FILE  = Path("realchat.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    access_secret:  str = "ACCESS_SECRET_CHANGE_ME"
    refresh_secret: str = "REFRESH_SECRET_CHANGE_ME"
    algorithm:      str = "HS256"


class MailSecrets(BaseModel):
    api_key: Optional[str] = None


class Secrets(BaseModel):
    jwt:  JWTSecrets  = Field(default_factory=JWTSecrets)
    mail: MailSecrets = Field(default_factory=MailSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 3001
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])
    # Production deployments sit behind TLS on another origin, which needs
    # Secure + SameSite=None cookies.
    cookie_secure:   bool = False


class AuthSettings(BaseModel):
    access_token_minutes:      int = 15
    refresh_token_days:        int = 7
    otp_ttl_seconds:           int = 300
    handshake_timeout_seconds: float = 30.0
    sweep_interval_seconds:    int = 600

    @field_validator("access_token_minutes", "refresh_token_days", "otp_ttl_seconds")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token and code lifetimes must be positive")
        return value


class ChatSettings(BaseModel):
    default_room:      str = "general"
    history_limit:     int = 50
    max_history_limit: int = 100


class StorageSettings(BaseModel):
    db_path: str = "realchat.duckdb"


class MailSettings(BaseModel):
    provider:        Literal["brevo", "log"] = "brevo"
    api_url:         str   = "https://api.brevo.com/v3/smtp/email"
    sender_name:     str   = "RealChat"
    sender_email:    str   = "no-reply@realchat.local"
    timeout_seconds: float = 10.0


class LoggingSettings(BaseModel):
    level: str = "info"


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    auth:    AuthSettings    = Field(default_factory=AuthSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    mail:    MailSettings    = Field(default_factory=MailSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

_ENV_OVERRIDES = {
    "REALCHAT_ACCESS_SECRET":  ("jwt", "access_secret"),
    "REALCHAT_REFRESH_SECRET": ("jwt", "refresh_secret"),
    "BREVO_API_KEY":           ("mail", "api_key"),
}


def _apply_env_overrides(secrets_data: Dict[str, Any]) -> Dict[str, Any]:
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            secrets_data.setdefault(section, {})[key] = value
            logger.debug("Secret %s.%s taken from $%s", section, key, env_name)
    return secrets_data


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name

    settings_data = _load_yaml(settings_path)
    secrets_data  = _apply_env_overrides(_load_yaml(Path(secrets_path)))

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    if config.secrets.jwt.access_secret == JWTSecrets().access_secret:
        logger.warning("Using the default JWT access secret; set REALCHAT_ACCESS_SECRET")
    logger.info(
        "Settings loaded (server=%s:%s, db=%s, mail=%s)",
        config.server.host,
        config.server.port,
        config.storage.db_path,
        config.mail.provider,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace the cached configuration (``None`` forces a reload)."""
    global _config
    _config = config
