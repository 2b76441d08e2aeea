# dcaladder/core/config.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("dcaladder.config")


def _parse_list(v: Any) -> List[str]:
    """
    Accepts:
      - list: ["XBTUSD","ETHUSD"]
      - csv:  "XBTUSD,ETHUSD"
      - json: '["XBTUSD","ETHUSD"]'
    Returns trimmed, non-empty strings.
    """
    if v is None:
        return []
    if isinstance(v, list):
        return [str(x).strip() for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [str(x).strip() for x in arr if str(x).strip()]
        except ValueError:
            # fall back to csv parse
            pass
    return [p.strip() for p in s.split(",") if p.strip()]


@dataclass(frozen=True)
class QueueSettings:
    """Retry/backoff/liveness knobs shared by the order queue and the worker."""

    max_attempts: int = 5
    initial_retry_delay_seconds: float = 10.0
    max_retry_delay_seconds: float = 3600.0
    retry_backoff_multiplier: float = 2.0
    retry_jitter_ratio: float = 0.0
    stuck_order_timeout_seconds: float = 300.0
    batch_size: int = 10
    max_orders_per_second: float = 0.0
    fill_confirm_timeout_seconds: float = 0.0
    fill_confirm_poll_seconds: float = 0.5
    max_confirm_checks: int = 20


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Exchange / API ---
    KRAKEN_API_KEY: str = ""
    KRAKEN_API_SECRET: str = ""
    KRAKEN_BASE_URL: str = "https://api.kraken.com"
    KRAKEN_TIMEOUT_SECONDS: float = 15.0

    # --- Execution ---
    EXECUTION_MODE: str = "paper"  # paper/live
    DEFAULT_USER_ID: str = "default"

    # --- Persistence / audit ---
    DB_PATH: str = "data/dcaladder.db"
    AUDIT_JSONL_PATH: str = "logs/audit.jsonl"
    LOG_LEVEL: str = "INFO"

    # --- Scheduler ---
    SCHEDULER_ENABLED: bool = True
    EVALUATE_INTERVAL_SECONDS: int = 300
    QUEUE_INTERVAL_SECONDS: int = 60

    # --- Order queue ---
    ORDER_MAX_ATTEMPTS: int = 5
    RETRY_INITIAL_DELAY_SECONDS: float = 10.0
    RETRY_MAX_DELAY_SECONDS: float = 3600.0
    RETRY_BACKOFF_MULTIPLIER: float = 2.0
    RETRY_JITTER_RATIO: float = 0.2
    STUCK_ORDER_TIMEOUT_SECONDS: float = 300.0
    QUEUE_BATCH_SIZE: int = 10
    MAX_ORDERS_PER_SECOND: float = 2.0
    FILL_CONFIRM_TIMEOUT_SECONDS: float = 10.0
    FILL_CONFIRM_POLL_SECONDS: float = 0.5
    FILL_CONFIRM_MAX_CHECKS: int = 20
    ORDER_RETENTION_DAYS: int = 30

    # --- Bot lifecycle ---
    DUST_VOLUME_THRESHOLD: float = 1e-8
    EXIT_FAILED_POLICY: str = "manual"  # manual/auto
    EXIT_FAILED_AUTO_RETRY_MINUTES: int = 30

    # --- Symbols the price feed should warm up (optional) ---
    WATCH_SYMBOLS: List[str] = Field(default_factory=list)

    @field_validator("WATCH_SYMBOLS", mode="before")
    @classmethod
    def parse_watch_symbols(cls, v: Any) -> List[str]:
        return _parse_list(v)

    def model_post_init(self, __context: Any) -> None:
        self.EXECUTION_MODE = (self.EXECUTION_MODE or "paper").lower().strip()
        self.EXIT_FAILED_POLICY = (self.EXIT_FAILED_POLICY or "manual").lower().strip()
        self.LOG_LEVEL = (self.LOG_LEVEL or "INFO").upper().strip()

    def queue_settings(self) -> QueueSettings:
        return QueueSettings(
            max_attempts=int(self.ORDER_MAX_ATTEMPTS),
            initial_retry_delay_seconds=float(self.RETRY_INITIAL_DELAY_SECONDS),
            max_retry_delay_seconds=float(self.RETRY_MAX_DELAY_SECONDS),
            retry_backoff_multiplier=float(self.RETRY_BACKOFF_MULTIPLIER),
            retry_jitter_ratio=float(self.RETRY_JITTER_RATIO),
            stuck_order_timeout_seconds=float(self.STUCK_ORDER_TIMEOUT_SECONDS),
            batch_size=int(self.QUEUE_BATCH_SIZE),
            max_orders_per_second=float(self.MAX_ORDERS_PER_SECOND),
            fill_confirm_timeout_seconds=float(self.FILL_CONFIRM_TIMEOUT_SECONDS),
            fill_confirm_poll_seconds=float(self.FILL_CONFIRM_POLL_SECONDS),
            max_confirm_checks=int(self.FILL_CONFIRM_MAX_CHECKS),
        )

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ConfigurationError for fatal misconfiguration.
        """
        from dcaladder.core.errors import ConfigurationError

        errors: List[str] = []
        warnings: List[str] = []

        if self.EXECUTION_MODE not in {"paper", "live"}:
            errors.append("EXECUTION_MODE must be 'paper' or 'live'.")

        if self.EXIT_FAILED_POLICY not in {"manual", "auto"}:
            errors.append("EXIT_FAILED_POLICY must be 'manual' or 'auto'.")

        if self.ORDER_MAX_ATTEMPTS < 1:
            errors.append("ORDER_MAX_ATTEMPTS must be >= 1.")

        if self.RETRY_INITIAL_DELAY_SECONDS <= 0:
            errors.append("RETRY_INITIAL_DELAY_SECONDS must be > 0.")
        if self.RETRY_MAX_DELAY_SECONDS < self.RETRY_INITIAL_DELAY_SECONDS:
            errors.append(
                "RETRY_MAX_DELAY_SECONDS must be >= RETRY_INITIAL_DELAY_SECONDS."
            )
        if self.RETRY_BACKOFF_MULTIPLIER < 1:
            errors.append("RETRY_BACKOFF_MULTIPLIER must be >= 1.")
        if not (0 <= self.RETRY_JITTER_RATIO < 1):
            errors.append("RETRY_JITTER_RATIO must be in [0, 1).")

        if self.STUCK_ORDER_TIMEOUT_SECONDS <= 0:
            errors.append("STUCK_ORDER_TIMEOUT_SECONDS must be > 0.")
        elif self.STUCK_ORDER_TIMEOUT_SECONDS <= self.FILL_CONFIRM_TIMEOUT_SECONDS:
            warnings.append(
                "STUCK_ORDER_TIMEOUT_SECONDS is not longer than FILL_CONFIRM_TIMEOUT_SECONDS; "
                "orders still waiting for a fill may be reset as stuck."
            )

        if self.FILL_CONFIRM_MAX_CHECKS < 1:
            errors.append("FILL_CONFIRM_MAX_CHECKS must be >= 1.")

        if self.QUEUE_BATCH_SIZE <= 0:
            errors.append("QUEUE_BATCH_SIZE must be > 0.")

        if self.EVALUATE_INTERVAL_SECONDS <= 0 or self.QUEUE_INTERVAL_SECONDS <= 0:
            errors.append("Scheduler intervals must be > 0.")

        if self.DUST_VOLUME_THRESHOLD < 0:
            errors.append("DUST_VOLUME_THRESHOLD must be >= 0.")

        if self.EXECUTION_MODE == "live":
            if not self.KRAKEN_API_KEY or not self.KRAKEN_API_SECRET:
                warnings.append(
                    "EXECUTION_MODE=live without KRAKEN_API_KEY/KRAKEN_API_SECRET; "
                    "orders will only use credentials stored in the database."
                )
            warnings.append("EXECUTION_MODE=live will trade REAL money.")

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ConfigurationError(msg)

        return warnings


Settings.model_rebuild()
settings = Settings()
