import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        snowball_horizon_months: int,
        expansion_lookback_months: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.snowball_horizon_months = snowball_horizon_months
        self.expansion_lookback_months = expansion_lookback_months
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("CASHFLOW_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "cashflow.db"
    database_url = os.getenv("CASHFLOW_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("CASHFLOW_TIMEZONE", "Europe/Berlin")
    horizon = int(os.getenv("CASHFLOW_SNOWBALL_HORIZON_MONTHS", "600"))
    lookback = int(os.getenv("CASHFLOW_EXPANSION_LOOKBACK_MONTHS", "24"))
    scheduler_enabled = os.getenv("CASHFLOW_SCHEDULER_ENABLED", "1") not in (
        "0",
        "false",
        "no",
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        snowball_horizon_months=max(horizon, 1),
        expansion_lookback_months=max(lookback, 0),
        scheduler_enabled=scheduler_enabled,
    )
