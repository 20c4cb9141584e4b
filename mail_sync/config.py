"""
Configuration for the sync core.
Settings come from an INI file (config.ini) with .env / environment overrides
for OAuth client secrets.
"""

import configparser
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_PATH = os.environ.get("MAIL_SYNC_CONFIG", str(PROJECT_ROOT / "config.ini"))

env_path = PROJECT_ROOT / '.env'
if env_path.exists():
    load_dotenv(env_path, override=False)


def load_config(config_path: Optional[str] = None) -> configparser.ConfigParser:
    """Load configuration from file. Missing file yields an empty config."""
    if config_path is None:
        config_path = CONFIG_PATH
    cfg = configparser.ConfigParser()
    if os.path.exists(config_path):
        cfg.read(config_path)
        logger.info(f"Loaded configuration from {config_path}")
    else:
        logger.warning(f"Config file {config_path} not found, using defaults")
    return cfg


@dataclass
class SyncSettings:
    """Runtime settings for storage, orchestration and provider access."""

    db_path: str = str(PROJECT_ROOT / "mail_sync.db")

    # Orchestrator
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 60.0
    run_timeout_seconds: float = 1800.0
    page_size: int = 100
    run_history_limit: int = 50

    # Scheduled dispatch
    poll_interval_minutes: int = 15
    max_auto_retries: int = 5
    retry_base_seconds: float = 60.0
    retry_max_seconds: float = 3600.0
    dispatch_interval_seconds: int = 60
    dispatch_secret: str = ""

    # Credentials
    expiry_skew_seconds: int = 300
    refresh_attempts: int = 2

    # Webhooks
    debounce_seconds: float = 10.0

    # OAuth clients
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_tenant: str = "common"
    google_client_id: str = ""
    google_client_secret: str = ""
    google_token_uri: str = "https://oauth2.googleapis.com/token"

    # Bearer token -> user id
    api_tokens: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg: configparser.ConfigParser) -> "SyncSettings":
        """Build settings from a loaded ConfigParser, falling back to defaults."""
        defaults = cls()
        settings = cls(
            db_path=cfg.get("storage", "db_path", fallback=defaults.db_path),
            max_attempts=cfg.getint("sync", "max_attempts", fallback=defaults.max_attempts),
            backoff_base_seconds=cfg.getfloat("sync", "backoff_base_seconds", fallback=defaults.backoff_base_seconds),
            backoff_max_seconds=cfg.getfloat("sync", "backoff_max_seconds", fallback=defaults.backoff_max_seconds),
            run_timeout_seconds=cfg.getfloat("sync", "run_timeout_seconds", fallback=defaults.run_timeout_seconds),
            page_size=cfg.getint("sync", "page_size", fallback=defaults.page_size),
            run_history_limit=cfg.getint("sync", "run_history_limit", fallback=defaults.run_history_limit),
            poll_interval_minutes=cfg.getint("sync", "poll_interval_minutes", fallback=defaults.poll_interval_minutes),
            max_auto_retries=cfg.getint("sync", "max_auto_retries", fallback=defaults.max_auto_retries),
            retry_base_seconds=cfg.getfloat("sync", "retry_base_seconds", fallback=defaults.retry_base_seconds),
            retry_max_seconds=cfg.getfloat("sync", "retry_max_seconds", fallback=defaults.retry_max_seconds),
            dispatch_interval_seconds=cfg.getint("dispatch", "interval_seconds", fallback=defaults.dispatch_interval_seconds),
            dispatch_secret=os.environ.get(
                "MAIL_SYNC_DISPATCH_SECRET",
                cfg.get("dispatch", "secret", fallback=defaults.dispatch_secret)
            ),
            expiry_skew_seconds=cfg.getint("credentials", "expiry_skew_seconds", fallback=defaults.expiry_skew_seconds),
            refresh_attempts=cfg.getint("credentials", "refresh_attempts", fallback=defaults.refresh_attempts),
            debounce_seconds=cfg.getfloat("webhooks", "debounce_seconds", fallback=defaults.debounce_seconds),
            microsoft_client_id=os.environ.get(
                "MICROSOFT_CLIENT_ID", cfg.get("microsoft", "client_id", fallback="")
            ),
            microsoft_client_secret=os.environ.get(
                "MICROSOFT_CLIENT_SECRET", cfg.get("microsoft", "client_secret", fallback="")
            ),
            microsoft_tenant=cfg.get("microsoft", "tenant", fallback=defaults.microsoft_tenant),
            google_client_id=os.environ.get(
                "GOOGLE_CLIENT_ID", cfg.get("gmail", "client_id", fallback="")
            ),
            google_client_secret=os.environ.get(
                "GOOGLE_CLIENT_SECRET", cfg.get("gmail", "client_secret", fallback="")
            ),
            google_token_uri=cfg.get("gmail", "token_uri", fallback=defaults.google_token_uri),
        )

        # [auth] tokens = token1:user1, token2:user2
        raw_tokens = cfg.get("auth", "tokens", fallback="")
        for entry in raw_tokens.split(","):
            entry = entry.strip()
            if ":" not in entry:
                continue
            token, user_id = entry.split(":", 1)
            settings.api_tokens[token.strip()] = user_id.strip()

        return settings


def load_settings(config_path: Optional[str] = None) -> SyncSettings:
    """Load settings from the config file."""
    return SyncSettings.from_config(load_config(config_path))
