import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        renewal_lookahead_days: int,
        upcoming_window_days: int,
        unusual_spend_multiplier: float,
        unusual_spend_baseline_days: int,
        unusual_spend_recent_days: int,
        unusual_spend_min_samples: int,
        alert_list_limit: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.renewal_lookahead_days = renewal_lookahead_days
        self.upcoming_window_days = upcoming_window_days
        self.unusual_spend_multiplier = unusual_spend_multiplier
        self.unusual_spend_baseline_days = unusual_spend_baseline_days
        self.unusual_spend_recent_days = unusual_spend_recent_days
        self.unusual_spend_min_samples = unusual_spend_min_samples
        self.alert_list_limit = alert_list_limit


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("RECURWATCH_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "recurwatch.db"
    return Settings(
        database_url=os.getenv("RECURWATCH_DATABASE_URL", f"sqlite:///{default_db}"),
        timezone=os.getenv("RECURWATCH_TIMEZONE", "Europe/Berlin"),
        csrf_secret=os.getenv(
            "RECURWATCH_CSRF_SECRET",
            "3f9c1e0b7a4d42c58e61b2f0d9a7c3e45b18f6a2c0d4e7b9a1f3c5e7d9b2a4c6",
        ),
        renewal_lookahead_days=int(
            os.getenv("RECURWATCH_RENEWAL_LOOKAHEAD_DAYS", "7")
        ),
        upcoming_window_days=int(os.getenv("RECURWATCH_UPCOMING_WINDOW_DAYS", "30")),
        unusual_spend_multiplier=float(
            os.getenv("RECURWATCH_UNUSUAL_SPEND_MULTIPLIER", "2.0")
        ),
        unusual_spend_baseline_days=int(
            os.getenv("RECURWATCH_UNUSUAL_SPEND_BASELINE_DAYS", "90")
        ),
        unusual_spend_recent_days=int(
            os.getenv("RECURWATCH_UNUSUAL_SPEND_RECENT_DAYS", "30")
        ),
        unusual_spend_min_samples=int(
            os.getenv("RECURWATCH_UNUSUAL_SPEND_MIN_SAMPLES", "2")
        ),
        alert_list_limit=int(os.getenv("RECURWATCH_ALERT_LIST_LIMIT", "50")),
    )
