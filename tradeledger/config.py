# tradeledger/config.py
"""Environment-driven settings and logging setup."""

import logging
import os
import sys
from dataclasses import dataclass, field
from functools import lru_cache
from typing import FrozenSet

import pytz

# Confirmed-bad trade ids that must never be matched
KNOWN_BAD_TRADES = {
    "2cf7f32b-e99f-4313-a955-a0ffcfe6b865": "RKLB orphaned short sale on 2025-01-27, no opening trade exists",
}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./trading_journal.db"
    report_timezone: str = "UTC"
    log_level: str = "INFO"
    trade_blocklist: FrozenSet[str] = field(default_factory=lambda: frozenset(KNOWN_BAD_TRADES))


def _split_ids(raw: str) -> FrozenSet[str]:
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


@lru_cache()
def get_settings() -> Settings:
    """Read settings from the environment once per process."""
    report_timezone = os.getenv("REPORT_TIMEZONE", "UTC")
    try:
        pytz.timezone(report_timezone)
    except pytz.UnknownTimeZoneError:
        raise ValueError(f"REPORT_TIMEZONE is not a known timezone: {report_timezone}")

    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./trading_journal.db"),
        report_timezone=report_timezone,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        trade_blocklist=frozenset(KNOWN_BAD_TRADES) | _split_ids(os.getenv("TRADE_BLOCKLIST", "")),
    )


def setup_logging(level: str = None) -> None:
    """Configure logging to output to stdout with proper formatting."""
    root_logger = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(level or get_settings().log_level)

    # Set lower log levels for some noisy libraries
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
