import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # BoardGameGeek upstream
    bgg_base_url: str = Field(
        default="https://boardgamegeek.com/xmlapi2", alias="BGG_BASE_URL"
    )
    bgg_request_timeout: float = Field(default=30.0, alias="BGG_REQUEST_TIMEOUT")

    # Cache Configuration
    cache_ttl_hours: int = Field(default=24, alias="CACHE_TTL_HOURS")
    cache_fetch_timeout: float = Field(default=10.0, alias="CACHE_FETCH_TIMEOUT")
    cache_summary_every: int = Field(default=100, alias="CACHE_SUMMARY_EVERY")
    cache_hit_rate_window: int = Field(default=100, alias="CACHE_HIT_RATE_WINDOW")
    game_details_ttl_days: int = Field(default=30, alias="GAME_DETAILS_TTL_DAYS")

    # Interactive rate limiter (request path)
    api_min_interval: float = Field(default=0.5, alias="API_MIN_INTERVAL")
    api_retry_base_delay: float = Field(default=0.5, alias="API_RETRY_BASE_DELAY")
    api_retry_max_delay: float = Field(default=8.0, alias="API_RETRY_MAX_DELAY")
    api_max_retries: int = Field(default=3, alias="API_MAX_RETRIES")

    # Bulk refresh rate limiter
    refresh_min_interval: float = Field(default=15.0, alias="REFRESH_MIN_INTERVAL")
    refresh_retry_base_delay: float = Field(
        default=15.0, alias="REFRESH_RETRY_BASE_DELAY"
    )
    refresh_retry_max_delay: float = Field(
        default=120.0, alias="REFRESH_RETRY_MAX_DELAY"
    )
    refresh_max_retries: int = Field(default=2, alias="REFRESH_MAX_RETRIES")
    refresh_max_items: int = Field(default=50, alias="REFRESH_MAX_ITEMS")
    refresh_item_delay: float = Field(default=1.0, alias="REFRESH_ITEM_DELAY")
    refresh_preserve_usage: int = Field(default=10, alias="REFRESH_PRESERVE_USAGE")
    refresh_cron: str = Field(default="0 0 1 * *", alias="REFRESH_CRON")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./bgborrow.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # HTTP surface
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    admin_tokens: str = Field(default="", alias="ADMIN_TOKENS")
    inbound_max_requests: int = Field(default=30, alias="INBOUND_MAX_REQUESTS")
    inbound_window_seconds: int = Field(default=60, alias="INBOUND_WINDOW_SECONDS")
    debug: bool = Field(default=False, alias="DEBUG")

    @property
    def admin_token_set(self) -> set[str]:
        """Admin bearer tokens parsed from the comma-separated setting."""
        return {t.strip() for t in self.admin_tokens.split(",") if t.strip()}


global_settings = Settings.model_validate(dict(os.environ))
