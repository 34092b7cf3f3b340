# medcycle/config/settings.py
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # extra="ignore": unrelated keys in .env are skipped
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # database_url wins; otherwise the MySQL parts below are used
    database_url: Optional[str] = None
    db_user: Optional[str] = None
    db_pass: Optional[str] = None
    db_host: Optional[str] = None
    db_port: Optional[int] = None
    db_name: Optional[str] = None

    timezone: str = "Asia/Seoul"

    jwt_secret: str = "change-me-to-a-long-random-secret-value"
    jwt_algorithm: str = "HS256"
    jwt_audience: Optional[str] = None

    firebase_key_path: str = "firebase-key.json"

    scheduler_enabled: bool = True
    detector_interval_minutes: int = 15
    detector_lookback_hours: int = 72
    detector_batch_size: int = 50
    detector_max_candidates_per_run: int = 2000
    detector_time_budget_seconds: float = 240.0

    horizon_days: int = 30
    cascade_chunk_size: int = 500
    conflict_retry_attempts: int = 3
    conflict_retry_backoff_seconds: float = 0.05

    dispatch_workers: int = 4


settings = Settings()
