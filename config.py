# School Records Access Control - configuration
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PATH = Path(__file__).resolve().parent / "school_security.db"


class Settings(BaseSettings):
    """Runtime settings; every field can be overridden with SCHOOLSEC_<NAME>."""

    model_config = SettingsConfigDict(env_prefix="SCHOOLSEC_", env_file=".env", extra="ignore")

    database_url: str = f"sqlite:///{DEFAULT_DB_PATH}"
    log_level: str = "INFO"

    # Identity
    session_ttl_minutes: int = 480

    # Audit append retries (exponential backoff)
    audit_retry_limit: int = 3
    audit_retry_base_delay: float = 0.05
    audit_retention_days: int = 90

    # Anomaly monitor
    scan_window_minutes: int = 60
    scan_interval_seconds: float = 300.0
    failed_login_threshold: int = 5
    off_hours_threshold: int = 10
    grade_change_threshold: int = 20
    sensitive_read_threshold: int = 50
    allowed_hours_start: int = 7
    allowed_hours_end: int = 18
    grade_resource: str = "ENROLLMENTS"
    sensitive_resource: str = "STUDENTS"
    deduplicate_alerts: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()
