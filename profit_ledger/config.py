import logging
import os
from typing import Optional


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Runtime settings read from the environment."""

    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./profit_ledger.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # A run still "running" after this long is treated as crashed
    PROFIT_RUN_STALE_AFTER_MINUTES = int(os.getenv("PROFIT_RUN_STALE_AFTER_MINUTES", "120"))

    DEFAULT_HISTORY_LIMIT = int(os.getenv("DEFAULT_HISTORY_LIMIT", "50"))
    DEFAULT_RUN_HISTORY_LIMIT = int(os.getenv("DEFAULT_RUN_HISTORY_LIMIT", "30"))

    CURRENCY = os.getenv("CURRENCY", "USDT")


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=level or Config.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
