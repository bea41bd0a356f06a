from datetime import timedelta

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Redis (empty url = memory-only cache)
    redis_url: str = "redis://localhost:6379/0"
    cache_fallback_enabled: bool = True
    cache_fallback_max_entries: int = 10_000
    cache_health_check_seconds: int = 60

    # Amadeus
    amadeus_client_id: str = ""
    amadeus_client_secret: str = ""
    amadeus_base_url: str = "https://test.api.amadeus.com"

    # Hotels
    hotel_api_key: str = ""
    hotel_api_base_url: str = "https://api.booking.com/v1"

    # Notifications
    notification_webhook_url: str = ""

    # Scheduler
    scheduler_enabled: bool = True
    max_concurrent_updates: int = 5
    max_job_failures: int = 3
    tier_high_minutes: int = 15
    tier_medium_minutes: int = 60
    tier_low_minutes: int = 360
    alert_check_interval_hours: int = 24
    alert_recheck_minutes: int = 60
    alert_check_delay_seconds: float = 1.0
    cleanup_interval_hours: int = 24

    # Price cache
    price_cache_ttl_seconds: int = 1800       # 30 minutes
    history_window_days: int = 30
    job_ttl_days: int = 30
    alert_ttl_days: int = 30

    # CORS
    cors_origins: str = "http://localhost:3000"

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def tier_intervals(self) -> dict[str, timedelta]:
        return {
            "high": timedelta(minutes=self.tier_high_minutes),
            "medium": timedelta(minutes=self.tier_medium_minutes),
            "low": timedelta(minutes=self.tier_low_minutes),
        }

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
