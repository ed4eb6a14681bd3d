import os
from pydantic_settings import BaseSettings
from typing import Dict, List


class Settings(BaseSettings):
    port: int = 8000
    environment: str = "development"
    service_name: str = "exam-integrity-api"

    postgres_user: str = os.getenv("POSTGRES_USER", "user")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "password")
    postgres_db: str = os.getenv("POSTGRES_DB", "exam_integrity_db")
    postgres_host: str = os.getenv("POSTGRES_HOST", "db")
    postgres_port: int = 5432

    @property
    def database_url(self) -> str:
        return f"postgresql://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    @property
    def async_database_url(self) -> str:
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    # bounded wait for every durable-store call made on the request path
    storage_timeout_seconds: float = 5.0

    cors_origins_str: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins_str.split(",")]

    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")

    # exam timing
    default_exam_duration_seconds: int = 3600
    time_consistency_buffer_seconds: int = 5

    # heartbeat / presence
    heartbeat_interval_seconds: int = 5
    heartbeat_grace_seconds: int = 15
    max_missed_heartbeats: int = 3
    heartbeat_gap_dedup_seconds: int = 60
    suspicious_heartbeat_gap_seconds: int = 30
    presence_stale_seconds: int = 60
    presence_flush_interval_seconds: int = 20
    heartbeat_retention_hours: int = 24
    max_client_drift_seconds: int = 10

    # replay protection
    nonce_ttl_seconds: int = 600
    min_answer_seconds: int = 5
    max_answer_seconds: int = 600

    # rate limiting: endpoint class -> {max_requests, window_seconds}
    rate_limit_backend: str = "memory"
    rate_limits: Dict[str, Dict[str, int]] = {
        "answer": {"max_requests": 10, "window_seconds": 60},
        "skip": {"max_requests": 5, "window_seconds": 60},
        "heartbeat": {"max_requests": 5, "window_seconds": 10},
        "websocket": {"max_requests": 10, "window_seconds": 10},
    }
    rate_limit_sweep_probability: float = 0.01
    rate_limit_sweep_interval_seconds: int = 300

    # scoring
    violation_weight_overrides: Dict[str, int] = {}
    default_violation_weight: int = 5
    trust_invalid_threshold: float = 30
    trust_suspicious_threshold: float = 60

    # termination
    max_violations: int = 5
    high_severity_violations: List[str] = [
        "PROCTORING_VIOLATION",
        "FRONT_CAMERA_REVOKED",
        "SCREEN_SHARE_REVOKED",
        "DISPLAY_SURFACE_INVALID",
        "VM_DETECTED",
    ]

    vm_detection_blocking: bool = False
    admin_role: str = "admin"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
