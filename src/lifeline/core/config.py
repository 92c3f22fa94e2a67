"""Core configuration - centralized config for the lifeline package.

All environment-based configuration should flow through this module.
This provides a single source of truth and consistent defaults.

Usage:
    from lifeline.core.config import get_config
    config = get_config()

    # Access settings
    state_dir = config.state_dir
    log_level = config.log_level
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoreSettings(BaseSettings):
    """Core configuration settings for Lifeline.

    Settings can be configured via environment variables with the
    LIFELINE_ prefix, or through a .env file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================================================
    # PATHS
    # ==========================================================================

    state_dir: str = Field(
        default=".lifeline",
        description="Directory holding restart ledgers, the emergency flag and the instance lock",
        validation_alias="LIFELINE_STATE_DIR",
    )
    credentials_dir: str = Field(
        default="auth_info",
        description="Directory holding protocol session/credential material",
        validation_alias="LIFELINE_CREDENTIALS_DIR",
    )

    # ==========================================================================
    # OPERATOR CHANNEL
    # ==========================================================================

    operator_recipient: str | None = Field(
        default=None,
        description="Address that receives crash-loop alerts and restart notices",
        validation_alias="LIFELINE_OPERATOR_RECIPIENT",
    )
    alert_webhook_url: str | None = Field(
        default=None,
        description="Optional HTTP endpoint that receives operator notifications",
        validation_alias="LIFELINE_ALERT_WEBHOOK_URL",
    )
    alert_webhook_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for a single webhook notification",
        validation_alias="LIFELINE_ALERT_WEBHOOK_TIMEOUT",
    )

    # ==========================================================================
    # DURABLE STORE
    # ==========================================================================

    store_timeout_seconds: float = Field(
        default=5.0,
        description="Upper bound for a single durable-store call before it is abandoned",
        validation_alias="LIFELINE_STORE_TIMEOUT",
    )

    # ==========================================================================
    # RECONNECTION
    # ==========================================================================

    max_reconnect_attempts: int = Field(
        default=10,
        description="Reconnects allowed without reaching OPEN before exiting with status 1",
        validation_alias="LIFELINE_MAX_RECONNECT_ATTEMPTS",
    )
    max_stream_resets: int = Field(
        default=3,
        description="Stream resets tolerated before credentials are wiped",
        validation_alias="LIFELINE_MAX_STREAM_RESETS",
    )
    credential_wipe_delay_ms: int = Field(
        default=30_000,
        description="Delay before reconnecting after a credential wipe",
        validation_alias="LIFELINE_CREDENTIAL_WIPE_DELAY_MS",
    )
    stability_threshold_seconds: float = Field(
        default=60.0,
        description="Connection age after which a connection counts as stable",
        validation_alias="LIFELINE_STABILITY_THRESHOLD",
    )

    # ==========================================================================
    # RESTART SUPERVISION
    # ==========================================================================

    crash_loop_window_seconds: float = Field(
        default=300.0,
        description="Sliding window for crash-loop detection",
        validation_alias="LIFELINE_CRASH_LOOP_WINDOW",
    )
    crash_loop_alert_threshold: int = Field(
        default=5,
        description="Restarts in window that trigger an operator alert",
        validation_alias="LIFELINE_CRASH_LOOP_ALERT_THRESHOLD",
    )
    crash_loop_emergency_threshold: int = Field(
        default=20,
        description="Restarts in window that trigger an emergency stop",
        validation_alias="LIFELINE_CRASH_LOOP_EMERGENCY_THRESHOLD",
    )
    emergency_flag_max_age_seconds: float = Field(
        default=600.0,
        description="Age after which an emergency stop flag is considered stale",
        validation_alias="LIFELINE_EMERGENCY_FLAG_MAX_AGE",
    )
    max_restarts_per_day: int = Field(
        default=10,
        description="Daily restart quota reported to the operator",
        validation_alias="LIFELINE_MAX_RESTARTS_PER_DAY",
    )
    enforce_daily_quota: bool = Field(
        default=True,
        description="Stop the process when the daily restart count passes the emergency margin",
        validation_alias="LIFELINE_ENFORCE_DAILY_QUOTA",
    )
    instance_lock_enabled: bool = Field(
        default=True,
        description="Refuse to start while another live instance holds the lock",
        validation_alias="LIFELINE_INSTANCE_LOCK",
    )

    # ==========================================================================
    # STARTUP HEURISTICS
    # ==========================================================================

    startup_window_seconds: float = Field(
        default=15.0,
        description="Duration of the startup fast-skip window",
        validation_alias="LIFELINE_STARTUP_WINDOW",
    )
    message_grace_period_seconds: float = Field(
        default=60.0,
        description="Messages older than boot time minus this period are discarded",
        validation_alias="LIFELINE_MESSAGE_GRACE_PERIOD",
    )

    # ==========================================================================
    # LOGGING SETTINGS
    # ==========================================================================

    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
        validation_alias="LIFELINE_LOG_LEVEL",
    )
    log_format: str = Field(
        default="",
        description="Log format: 'json', 'text', or '' (auto-detect)",
        validation_alias="LIFELINE_LOG_FORMAT",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (optional)",
        validation_alias="LIFELINE_LOG_FILE",
    )

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def state_path(self) -> Path:
        """State directory as a Path."""
        return Path(self.state_dir)

    @property
    def credentials_path(self) -> Path:
        """Credentials directory as a Path."""
        return Path(self.credentials_dir)


# ==========================================================================
# GLOBAL CONFIG INSTANCE (lazy loaded)
# ==========================================================================

_config: CoreSettings | None = None


def get_config() -> CoreSettings:
    """Get the global configuration instance.

    Returns:
        The singleton CoreSettings instance.
    """
    global _config
    if _config is None:
        _config = CoreSettings()
    return _config


def clear_config_cache() -> None:
    """Clear the config cache. Useful for testing."""
    global _config
    _config = None
