"""Settings for the swipe feed engine."""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
    if env_names:
        alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
        return Field(default=default, validation_alias=alias)
    return Field(default=default)


class Settings(BaseSettings):
    # Remote RPC endpoint (PostgREST-style /rpc/<name>)
    api_base_url: str = _env_field("http://localhost:54321", "SWIPE_API_BASE_URL", "SUPABASE_URL")
    api_key: Optional[str] = _env_field(None, "SWIPE_API_KEY", "SUPABASE_ANON_KEY")
    api_rpc_path: str = _env_field("/rest/v1/rpc", "SWIPE_API_RPC_PATH")

    retry_max_attempts: int = _env_field(4, "SWIPE_RETRY_MAX_ATTEMPTS")
    retry_base_delay_seconds: float = _env_field(0.25, "SWIPE_RETRY_BASE_DELAY")
    retry_max_delay_seconds: float = _env_field(5.0, "SWIPE_RETRY_MAX_DELAY")
    retry_attempt_timeout_seconds: float = _env_field(15.0, "SWIPE_RETRY_ATTEMPT_TIMEOUT")
    retry_jitter_factor: float = _env_field(0.25, "SWIPE_RETRY_JITTER")

    feed_page_limit: int = _env_field(20, "SWIPE_FEED_PAGE_LIMIT")
    # Top up once fewer than this many unswiped cards remain visible
    feed_low_water_mark: int = _env_field(5, "SWIPE_FEED_LOW_WATER_MARK")
    # Cards right after the top card that compaction must leave untouched
    feed_lookahead_full: int = 3

    cache_max_swiped: int = _env_field(6000, "SWIPE_CACHE_MAX_SWIPED")
    cache_max_pending: int = _env_field(512, "SWIPE_CACHE_MAX_PENDING")
    cache_bio_prefix_chars: int = 64

    outbox_flush_interval_seconds: float = _env_field(30.0, "SWIPE_OUTBOX_FLUSH_INTERVAL")
    outbox_backend: str = _env_field("memory", "SWIPE_OUTBOX_BACKEND")
    outbox_redis_prefix: str = "swipefeed:outbox"
    # Global cache wipes keep queued swipes unless this is switched on
    wipe_drop_pending: bool = _env_field(False, "SWIPE_WIPE_DROP_PENDING")

    photo_signed_urls: bool = _env_field(True, "SWIPE_PHOTO_SIGNED_URLS")
    photo_sign_ttl_seconds: int = 55 * 60
    photo_default_bucket: str = "profile_pictures"

    redis_url: str = _env_field("redis://localhost:6379/0", "REDIS_URL")

    environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
    service_name: str = _env_field("swipefeed", "SERVICE_NAME")
    git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")
    obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
    obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    @field_validator("outbox_backend", mode="before")
    def _normalise_backend(cls, value):  # type: ignore[override]
        """Accept any casing; unknown backends fall back to memory."""
        if value in (None, ""):
            return "memory"
        text = str(value).strip().lower()
        return text if text in ("memory", "redis") else "memory"


def _normalise_level(level: str) -> str:
    return level.upper()


settings = Settings()
settings.obs_log_level = _normalise_level(settings.obs_log_level)
