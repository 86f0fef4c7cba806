from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Postgres settings
    DATABASE_URL: str | None = None

    # OpenAI settings
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-3.5-turbo"
    OPENAI_MAX_TOKENS: int = 512
    OPENAI_TEMPERATURE: float = 0.0
    OPENAI_TIMEOUT_SECONDS: float = 60.0

    # Instagram Graph API settings
    INSTAGRAM_BUSINESS_USER_ID: str | None = None
    INSTAGRAM_USER_ACCESS_TOKEN: str | None = None
    INSTAGRAM_GRAPH_API_VERSION: str = "v16.0"
    INSTAGRAM_MEDIA_LIMIT: int = 5
    INSTAGRAM_REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Google Cloud Vision settings (fall back to application default credentials)
    GOOGLE_CLOUD_VISION_PRIVATE_KEY: str | None = None
    GOOGLE_CLOUD_VISION_CLIENT_EMAIL: str | None = None

    # Event sources
    EVENT_SOURCES_PATH: str = str(Path(__file__).resolve().parent.parent / "event_sources.json")
    EVENT_SOURCE_TIMEZONE: str = "America/Los_Angeles"

    # =================================================================
    # INGESTION FAN-OUT - unset timeout means a unit may wait forever
    # =================================================================
    INGESTION_MAX_CONCURRENCY: int = 10
    INGESTION_UNIT_TIMEOUT_SECONDS: float | None = None

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def instagram_graph_url(self) -> str:
        """Base URL of the business account node used for business discovery."""
        return (
            f"https://graph.facebook.com/{self.INSTAGRAM_GRAPH_API_VERSION}"
            f"/{self.INSTAGRAM_BUSINESS_USER_ID}"
        )

    def vision_private_key(self) -> str | None:
        """
        Private key with escaped newlines restored, as stored in most
        single-line secret managers.
        """
        if not self.GOOGLE_CLOUD_VISION_PRIVATE_KEY:
            return None
        return self.GOOGLE_CLOUD_VISION_PRIVATE_KEY.replace("\\n", "\n")

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        The ingestion worker is short-lived, so development stays small.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update(
                {
                    "min_size": 1,
                    "max_size": 5,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
