import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from shoplytics.adapters.clock import SystemClock
from shoplytics.adapters.sqlite_db import SQLiteAnalyticsStore
from shoplytics.components.analytics import AnalyticsStoreError, AnalyticsStorePort, TimePort
from shoplytics.rules.loader import load_rules
from shoplytics.rules.models import AnalyticsRules, Rules

logger = logging.getLogger(__name__)


# --- Settings ---
class Settings:
    def __init__(self) -> None:
        self.base_dir = Path(os.getcwd())
        self.data_dir = Path(os.environ.get("SHOPLYTICS_DATA_DIR", "./data"))
        self.db_path = str(self.data_dir / "shoplytics.db")
        self.rules_path = Path(
            os.environ.get("SHOPLYTICS_RULES_PATH", str(self.base_dir / "rules.yaml"))
        )
        self.migrations_dir = str(self.base_dir / "migrations")


@lru_cache
def get_settings() -> Settings:
    return Settings()


# --- Rules ---
@lru_cache
def get_rules() -> Rules:
    return load_rules(get_settings().rules_path)


def get_analytics_rules(rules: Rules = Depends(get_rules)) -> AnalyticsRules:
    return rules.analytics


# --- Store / Clock ---
def get_store(
    settings: Settings = Depends(get_settings),
    rules: AnalyticsRules = Depends(get_analytics_rules),
) -> AnalyticsStorePort:
    return SQLiteAnalyticsStore(settings.db_path, busy_timeout_ms=rules.storage.busy_timeout_ms)


def get_time_port() -> TimePort:
    return SystemClock()


# --- Identity ---
def get_current_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str | None:
    """Authenticated user id, as forwarded by the auth gateway. None when anonymous."""
    if x_user_id is None or not x_user_id.strip():
        return None
    return x_user_id.strip()


# --- Errors ---
@contextmanager
def storage_guard() -> Iterator[None]:
    """Report storage failures as 503 instead of empty or partial data."""
    try:
        yield
    except AnalyticsStoreError as e:
        logger.warning("Analytics storage unavailable: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "ok": False,
                "errors": [
                    {"code": "storage_unavailable", "message": "data temporarily unavailable"}
                ],
            },
        ) from e
