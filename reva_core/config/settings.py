# =============================================================================
# reva_core/config/settings.py
# Sync Core Settings (secrets.toml + environment)
# =============================================================================
"""
Settings for the sync core.

Values are resolved in this order (later wins):

1. Dataclass defaults
2. A TOML secrets file, by default ``.streamlit/secrets.toml``::

    [supabase]
    url = "https://your-project.supabase.co"
    key = "your-anon-key"

    [sync]
    db_path = "local_data/reva_cache.db"
    tables = ["tasks", "expenses", "reminders", "chat_messages"]
    outbox_max_attempts = 5
    max_concurrency = 4

3. Environment variables ``SUPABASE_URL``, ``SUPABASE_KEY`` and
   ``REVA_SYNC_DB_PATH``
"""

from __future__ import annotations
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import toml

from reva_core.errors import ConfigurationError
from reva_core.logging import get_logger

logger = get_logger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent.parent
DEFAULT_SECRETS_PATH = PROJECT_ROOT / ".streamlit" / "secrets.toml"
DEFAULT_DB_PATH = PROJECT_ROOT / "local_data" / "reva_cache.db"

DEFAULT_TABLES = ("tasks", "expenses", "reminders", "chat_messages")


@dataclass
class SyncSettings:
    """Validated configuration for every sync core component."""

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    schema: str = "public"

    # Local store
    db_path: Union[Path, str] = DEFAULT_DB_PATH
    tables: Tuple[str, ...] = DEFAULT_TABLES
    revision_field: str = "updated_at"
    idempotency_field: str = "client_mutation_id"

    # Subscription manager
    channel_backoff_base: float = 1.0
    channel_backoff_cap: float = 30.0
    channel_subscribe_timeout: float = 10.0

    # Outbox processor
    outbox_max_attempts: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    max_concurrency: int = 4

    # Connectivity monitor
    check_interval_online: float = 30.0
    check_interval_offline: float = 10.0
    connection_timeout: float = 5.0

    # Remote pull page size used by catch-up reconciliation
    catch_up_page_size: int = 500

    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def validate(self) -> SyncSettings:
        """Raise ConfigurationError on values no component can work with."""
        if not self.tables:
            raise ConfigurationError("At least one table must be synchronized", config_key="tables")

        for name in ("channel_backoff_base", "channel_backoff_cap", "retry_base_delay",
                     "retry_max_delay", "channel_subscribe_timeout", "connection_timeout",
                     "check_interval_online", "check_interval_offline"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value < 0:
                raise ConfigurationError(
                    f"{name} must be a non-negative number, got {value!r}",
                    config_key=name,
                    expected_type="float",
                )

        if self.channel_backoff_cap < self.channel_backoff_base:
            raise ConfigurationError(
                "channel_backoff_cap must be >= channel_backoff_base",
                config_key="channel_backoff_cap",
            )
        if self.retry_max_delay < self.retry_base_delay:
            raise ConfigurationError(
                "retry_max_delay must be >= retry_base_delay",
                config_key="retry_max_delay",
            )

        for name in ("outbox_max_attempts", "max_concurrency", "catch_up_page_size"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ConfigurationError(
                    f"{name} must be a positive integer, got {value!r}",
                    config_key=name,
                    expected_type="int",
                )

        if self.supabase_url and not self.supabase_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                "Supabase URL must start with http:// or https://",
                config_key="supabase.url",
            )

        return self


def _load_secrets_toml(path: Path) -> Dict[str, Any]:
    """Load the secrets file, returning an empty dict when it does not exist."""
    if not path.exists():
        return {}

    try:
        return toml.load(path)
    except (toml.TomlDecodeError, OSError) as e:
        raise ConfigurationError(
            f"Could not parse settings file {path}: {e}",
            config_key=str(path),
        ) from e


def load_settings(
    path: Optional[Union[Path, str]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> SyncSettings:
    """
    Build SyncSettings from the secrets file and the environment.

    Args:
        path: TOML file to read (default: .streamlit/secrets.toml)
        env: Environment mapping (default: os.environ)

    Returns:
        Validated SyncSettings
    """
    env = os.environ if env is None else env
    secrets = _load_secrets_toml(Path(path) if path else DEFAULT_SECRETS_PATH)

    values: Dict[str, Any] = {}

    supabase = secrets.get("supabase", {})
    if supabase.get("url"):
        values["supabase_url"] = supabase["url"]
    if supabase.get("key"):
        values["supabase_key"] = supabase["key"]

    known = {f.name for f in fields(SyncSettings)}
    extra: Dict[str, Any] = {}
    for key, value in secrets.get("sync", {}).items():
        if key in known:
            values[key] = value
        else:
            extra[key] = value

    if env.get("SUPABASE_URL"):
        values["supabase_url"] = env["SUPABASE_URL"]
    if env.get("SUPABASE_KEY"):
        values["supabase_key"] = env["SUPABASE_KEY"]
    if env.get("REVA_SYNC_DB_PATH"):
        values["db_path"] = env["REVA_SYNC_DB_PATH"]

    if "tables" in values:
        values["tables"] = tuple(values["tables"])
    if "db_path" in values and values["db_path"] != ":memory:":
        values["db_path"] = Path(values["db_path"])

    if extra:
        logger.warning(f"Ignoring unknown [sync] settings: {sorted(extra)}")

    settings = SyncSettings(**values, extra=extra).validate()

    if not settings.has_supabase:
        logger.info("Supabase credentials not configured; sync core runs local-only")

    return settings
