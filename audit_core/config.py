# =============================================================================
# audit_core/config.py
# Runtime Settings for the 5S Audit Core
# =============================================================================
"""
Settings are read from environment variables first and fall back to the
Streamlit secrets file:

    [supabase]
    url = "https://your-project.supabase.co"
    key = "your-anon-key"
"""

from __future__ import annotations
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
import logging

import streamlit as st

from audit_core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("local_data") / "audit_offline.db"


@dataclass(frozen=True)
class Settings:
    """Resolved runtime configuration."""
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    local_db_path: Path = DEFAULT_DB_PATH
    remote_timeout_seconds: float = 10.0
    degraded_failure_threshold: int = 1
    sync_batch_size: int = 200
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @property
    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def _load_supabase_secrets() -> Dict[str, Any]:
    """Read the [supabase] table from Streamlit secrets, if any."""
    try:
        if hasattr(st, "secrets") and "supabase" in st.secrets:
            return dict(st.secrets["supabase"])
    except Exception as e:
        # No secrets.toml outside a Streamlit deployment
        logger.debug(f"Streamlit secrets not available: {e}")
    return {}


def _parse_number(env: Mapping[str, str], key: str, default, cast):
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid value for {key}: {raw!r}",
            config_key=key,
            expected_type=cast.__name__,
        ) from e
    if value <= 0:
        raise ConfigurationError(
            f"{key} must be positive, got {raw!r}",
            config_key=key,
            expected_type=cast.__name__,
        )
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from the environment and Streamlit secrets.

    Args:
        env: Mapping to read instead of os.environ (tests)

    Returns:
        Settings instance
    """
    env = os.environ if env is None else env
    secrets = _load_supabase_secrets() if (
        not env.get("SUPABASE_URL") or not env.get("SUPABASE_KEY")
    ) else {}

    return Settings(
        supabase_url=env.get("SUPABASE_URL") or secrets.get("url"),
        supabase_key=env.get("SUPABASE_KEY") or secrets.get("key"),
        local_db_path=Path(env.get("AUDIT_LOCAL_DB") or DEFAULT_DB_PATH),
        remote_timeout_seconds=_parse_number(env, "AUDIT_REMOTE_TIMEOUT", 10.0, float),
        degraded_failure_threshold=_parse_number(env, "AUDIT_DEGRADED_THRESHOLD", 1, int),
        sync_batch_size=_parse_number(env, "AUDIT_SYNC_BATCH_SIZE", 200, int),
        log_level=env.get("AUDIT_LOG_LEVEL", "INFO"),
        log_file=Path(env["AUDIT_LOG_FILE"]) if env.get("AUDIT_LOG_FILE") else None,
    )
