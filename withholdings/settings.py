from __future__ import annotations

import logging
import os
from decimal import Decimal

from pydantic import BaseModel

DEFAULT_DATABASE_URL = "sqlite:///./withholdings.db"


class Settings(BaseModel):
    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"
    gross_net_tolerance: Decimal = Decimal("0.05")
    retention_drift_tolerance: Decimal = Decimal("0.02")
    explicit_rate_drift: Decimal = Decimal("0.01")
    queue_concurrency: int = 5
    queue_max_attempts: int = 3
    queue_high_confidence: float = 0.85
    dedup_day_window: int = 7
    dedup_amount_tolerance: Decimal = Decimal("0.01")


def get_settings() -> Settings:
    """Collect settings from the environment, falling back to the defaults above."""
    return Settings(
        database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        gross_net_tolerance=Decimal(os.getenv("RECONCILE_GROSS_NET_TOLERANCE", "0.05")),
        retention_drift_tolerance=Decimal(os.getenv("RECONCILE_RETENTION_DRIFT_TOLERANCE", "0.02")),
        explicit_rate_drift=Decimal(os.getenv("RECONCILE_EXPLICIT_RATE_DRIFT", "0.01")),
        queue_concurrency=int(os.getenv("QUEUE_CONCURRENCY", "5")),
        queue_max_attempts=int(os.getenv("QUEUE_MAX_ATTEMPTS", "3")),
        queue_high_confidence=float(os.getenv("QUEUE_HIGH_CONFIDENCE", "0.85")),
        dedup_day_window=int(os.getenv("DEDUP_DAY_WINDOW", "7")),
        dedup_amount_tolerance=Decimal(os.getenv("DEDUP_AMOUNT_TOLERANCE", "0.01")),
    )


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(level=(level or get_settings().log_level).upper())
