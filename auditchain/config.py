from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite+aiosqlite:///./auditchain.db"

    # App
    debug: bool = False

    # Chain
    audit_chain_key: str = "default"
    audit_hash_key: str | None = None
    audit_append_max_attempts: int = 5
    audit_append_base_delay: float = 0.01
    audit_append_max_delay: float = 0.5
    audit_local_lock: bool = True

    # Anomaly detection
    brute_force_threshold: int = 5
    brute_force_window_minutes: int = 15
    distinct_ip_threshold: int = 5
    distinct_ip_window_minutes: int = 60
    severity_burst_threshold: int = 6
    severity_burst_window_minutes: int = 60
    anomaly_queue_size: int = 10000
    anomaly_workers: int = 2

    # Retention and scheduled verification
    retention_days: int = 90
    retention_compact_details: bool = True
    retention_cron_hour: int = 3
    verify_interval_minutes: int = 60

    class Config:
        env_file = ".env"


settings = Settings()
