"""Runtime settings for the analytics dashboard."""

import logging
import os
from dataclasses import dataclass

import streamlit as st

from queries.tables import DEFAULT_PROJECT_ID
from utils.bigquery_client import DEFAULT_MAX_BYTES_BILLED

logger = logging.getLogger(__name__)


def get_secret(key):
    """Get secret from Streamlit secrets or environment variables.
    Cloud Run injects secrets from Secret Manager as env vars.
    """
    try:
        if hasattr(st, 'secrets') and key in st.secrets:
            return st.secrets[key]
    except Exception:
        # No secrets.toml outside Streamlit Cloud
        pass
    return os.environ.get(key)


def get_int_secret(key, default):
    """Integer secret; a missing or malformed value falls back to the default."""
    value = get_secret(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric %s=%r, using %s", key, value, default)
        return default


@dataclass(frozen=True)
class Settings:
    gcp_project_id: str = DEFAULT_PROJECT_ID
    max_bytes_billed: int = DEFAULT_MAX_BYTES_BILLED
    default_lookback_days: int = 30
    log_level: str = "INFO"
    user_ident: str = ""


def load_settings() -> Settings:
    """Read settings, keeping defaults for anything not configured."""
    return Settings(
        gcp_project_id=get_secret('GCP_PROJECT_ID') or DEFAULT_PROJECT_ID,
        max_bytes_billed=get_int_secret('MAX_BYTES_BILLED', DEFAULT_MAX_BYTES_BILLED),
        default_lookback_days=get_int_secret('DEFAULT_LOOKBACK_DAYS', 30),
        log_level=get_secret('LOG_LEVEL') or "INFO",
        user_ident=get_secret('USER_IDENT') or "",
    )
