"""Environment-driven settings shared by the alerting runner and the API service."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables or a local .env file."""

    APP_NAME: str = "Polyalert"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"
    VERSION: str = "0.1.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    POLYMARKET_WS_URL: str = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
    POLYMARKET_WS_READ_TIMEOUT_S: float = 0.0
    POLYMARKET_WS_PING_INTERVAL_S: float = 30.0
    POLYMARKET_GAMMA_URL: str = "https://gamma-api.polymarket.com"
    POLYMARKET_GAMMA_TIMEOUT_S: float = 10.0
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_API_URL: str = "https://api.telegram.org"
    TELEGRAM_TIMEOUT_S: float = 10.0
    RUNNER_STOP_GRACE_S: float = 5.0
    STORE_SEED_PATH: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def ws_read_timeout(self) -> float | None:
        """Return the per-frame read deadline, or None when disabled."""

        if self.POLYMARKET_WS_READ_TIMEOUT_S <= 0:
            return None
        return self.POLYMARKET_WS_READ_TIMEOUT_S

    def ws_ping_interval(self) -> float | None:
        """Return the websocket keepalive interval, or None when disabled."""

        if self.POLYMARKET_WS_PING_INTERVAL_S <= 0:
            return None
        return self.POLYMARKET_WS_PING_INTERVAL_S

    def telegram_enabled(self) -> bool:
        """Return whether alerts should be delivered through Telegram."""

        return bool(self.TELEGRAM_BOT_TOKEN.strip())

    def stop_grace(self) -> float:
        """Return the bounded wait used when stopping a user's runner."""

        return max(0.0, self.RUNNER_STOP_GRACE_S)

    def store_seed_path(self) -> str | None:
        """Return the optional JSON seed path for the in-memory store."""

        path = self.STORE_SEED_PATH.strip()
        return path or None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings to avoid repeated environment parsing."""

    return Settings()
