"""
Centralized Configuration System
Environment-aware settings for the webhook job pipeline.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal, Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow"
    )
    """
    Production-grade configuration management.
    Loads from environment variables with sensible defaults.
    """

    # ============================================
    # MONGODB CONNECTION
    # ============================================
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "eventgate"
    mongodb_max_pool_size: int = 50
    mongodb_min_pool_size: int = 5
    mongodb_server_selection_timeout_ms: int = 5000

    # "memory" keeps every coordination primitive in-process (tests, single node)
    coordination_backend: Literal["memory", "mongodb"] = "memory"

    # ============================================
    # RETRY POLICY
    # ============================================
    default_max_retries: int = 3
    retry_base_delay_seconds: int = 30
    retry_backoff_multiplier: int = 3
    retry_claim_ttl_hours: int = 1
    circuit_open_delay_seconds: int = 60
    max_circuit_deferrals: int = 30

    # ============================================
    # RATE LIMITS (jobs per minute, per priority group)
    # ============================================
    rate_limit_critical: int = 1000
    rate_limit_urgent: int = 100
    rate_limit_normal: int = 50
    rate_limit_bulk: int = 20
    rate_limit_maintenance: int = 10
    rate_limit_window_retention_minutes: int = 5
    rate_limited_defer_seconds: int = 5

    # ============================================
    # IDEMPOTENCY & LOCKING
    # ============================================
    idempotency_default_ttl_hours: int = 24
    unique_lock_timeout_seconds: float = 5.0
    unique_lock_ttl_seconds: int = 5

    # ============================================
    # DEAD LETTER QUEUE
    # ============================================
    dlq_retention_days: int = 30

    # ============================================
    # WORKER & MAINTENANCE
    # ============================================
    worker_max_concurrent: int = 10
    worker_poll_interval: float = 1.0
    worker_batch_size: int = 10
    job_running_timeout_seconds: int = 300
    maintenance_interval_seconds: int = 3600
    job_retention_days: int = 7

    # ============================================
    # MONITORING THRESHOLDS
    # ============================================
    monitor_pending_critical: int = 10
    monitor_pending_total: int = 1000
    monitor_dlq_pending: int = 50
    monitor_failed_per_hour: int = 100
    monitor_avg_wait_seconds: int = 300

    # ============================================
    # CIRCUIT BREAKER
    # ============================================
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_recovery_timeout: float = 60.0
    circuit_breaker_half_open_max_calls: int = 1

    # ============================================
    # WEBHOOK SECURITY
    # ============================================
    whatsapp_app_secret: Optional[str] = None
    whatsapp_verify_token: Optional[str] = None
    whatsapp_validate_signature: bool = True
    admin_api_token: Optional[str] = None
    webhook_max_payload_bytes: int = 2 * 1024 * 1024

    # ============================================
    # LOGGING
    # ============================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    enable_structured_logging: bool = False  # Set to True for production JSON logs

    # ============================================
    # ENVIRONMENT
    # ============================================
    environment: Literal["development", "staging", "production"] = "development"

    def rate_limit_for_group(self, group: str) -> int:
        """Per-minute job budget for a priority group name."""
        return getattr(self, f"rate_limit_{group}", self.rate_limit_normal)


@lru_cache()
def get_settings() -> Settings:
    """
    Singleton pattern for settings.
    Uses LRU cache to ensure only one Settings instance exists.
    """
    return Settings()


# Convenience accessor for common use
settings = get_settings()
