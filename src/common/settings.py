from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AnyUrl
import os


DEFAULT_POOR_DESCRIPTION_PATTERNS = [
    r"^book by .+?,? approximately \d+ pages\.?$",
    r"^novel by .+?,? approximately \d+ pages\.?$",
    r"^the book has approximately \d+ pages\.?$",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="allow")

    # --- core -----------------------------------------------------------
    project_name: str = "Reading-Tracker-Core"
    debug: bool = Field(False, validation_alias="DEBUG")  # disables auto-enrichment
    publish_events: bool = Field(False, validation_alias="PUBLISH_EVENTS")

    # Database configuration with flexible host
    db_host: str = Field(
        "postgres", validation_alias="DB_HOST"
    )  # postgres (Docker) or localhost (local)
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("books", validation_alias="DB_USER")
    db_password: str = Field("books", validation_alias="DB_PASSWORD")
    db_name: str = Field("books", validation_alias="DB_NAME")

    # Legacy DB_URL support (for backward compatibility)
    legacy_db_url: AnyUrl | None = Field(None, validation_alias="DB_URL")

    # Kafka configuration with flexible host
    kafka_host: str = Field(
        "kafka", validation_alias="KAFKA_HOST"
    )  # kafka (Docker) or localhost (local)
    kafka_port: int = Field(9092, validation_alias="KAFKA_PORT")

    # Legacy KAFKA_BROKERS support (for backward compatibility)
    legacy_kafka_bootstrap: str | None = Field(None, validation_alias="KAFKA_BROKERS")

    # Redis - use redis:6379 for Docker, localhost:6379 for local
    redis_url: str = Field(
        os.getenv("REDIS_URL", "redis://redis:6379/0"), validation_alias="REDIS_URL"
    )

    # Bibliographic sources ---------------------------------------------
    google_books_api_key: str | None = Field(None, validation_alias="GOOGLE_BOOKS_API_KEY")
    google_books_base_url: str = Field(
        "https://www.googleapis.com/books/v1", validation_alias="GOOGLE_BOOKS_BASE_URL"
    )
    openlibrary_base_url: str = Field(
        "https://openlibrary.org", validation_alias="OPENLIBRARY_BASE_URL"
    )
    openlibrary_covers_url: str = Field(
        "https://covers.openlibrary.org", validation_alias="OPENLIBRARY_COVERS_URL"
    )
    source_request_timeout: float = Field(10.0, validation_alias="SOURCE_REQUEST_TIMEOUT")
    source_max_retries: int = Field(3, validation_alias="SOURCE_MAX_RETRIES")
    source_retry_delay: float = Field(1.0, validation_alias="SOURCE_RETRY_DELAY")
    source_user_agent: str = Field(
        "ReadingTracker/1.0 (metadata hydration)", validation_alias="SOURCE_USER_AGENT"
    )
    isbn_cache_ttl_seconds: int = Field(7 * 86400, validation_alias="ISBN_CACHE_TTL")  # 7 days
    volume_cache_ttl_seconds: int = Field(86400, validation_alias="VOLUME_CACHE_TTL")

    # Hydration ---------------------------------------------------------
    hydration_ttl_seconds: int = Field(86400, validation_alias="HYDRATION_TTL")
    description_cache_ttl_seconds: int = Field(86400, validation_alias="DESCRIPTION_CACHE_TTL")
    description_failure_ttl_seconds: int = Field(3600, validation_alias="DESCRIPTION_FAILURE_TTL")

    # Enrichment Configuration
    enrichment_concurrency: int = Field(3, validation_alias="ENRICHMENT_CONCURRENCY")
    enrichment_cooldown_seconds: float = Field(60.0, validation_alias="ENRICHMENT_COOLDOWN")
    enrichment_breaker_seconds: float = Field(120.0, validation_alias="ENRICHMENT_BREAKER_COOLDOWN")
    enrichment_timeout: float = Field(30.0, validation_alias="ENRICHMENT_TIMEOUT")  # seconds
    enrichment_api_url: str = Field(
        "http://catalog_api:8000", validation_alias="ENRICHMENT_API_URL"
    )
    enrichment_batch_size: int = Field(20, validation_alias="ENRICHMENT_BATCH_SIZE")
    poor_description_min_length: int = Field(120, validation_alias="POOR_DESCRIPTION_MIN_LENGTH")
    poor_description_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_POOR_DESCRIPTION_PATTERNS),
        validation_alias="POOR_DESCRIPTION_PATTERNS",
    )

    # Social ------------------------------------------------------------
    like_throttle_ms: int = Field(350, validation_alias="LIKE_THROTTLE_MS")
    social_api_url: str = Field("http://catalog_api:8000", validation_alias="SOCIAL_API_URL")
    social_request_timeout: float = Field(10.0, validation_alias="SOCIAL_REQUEST_TIMEOUT")
    like_rate_limit: str = Field("30/minute", validation_alias="LIKE_RATE_LIMIT")

    # service ports (overridable) ---------------------------------------
    catalog_api_port: int = 8000

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # If legacy DB_URL is provided, it takes precedence
        if self.legacy_db_url:
            self._db_url = str(self.legacy_db_url)
        else:
            self._db_url = f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

        # If legacy KAFKA_BROKERS is provided, it takes precedence
        if self.legacy_kafka_bootstrap:
            self._kafka_bootstrap = self.legacy_kafka_bootstrap
        else:
            self._kafka_bootstrap = f"{self.kafka_host}:{self.kafka_port}"

    @property
    def db_url(self) -> str:
        """Get the database URL, constructed from components or from legacy DB_URL"""
        return self._db_url

    @property
    def kafka_bootstrap(self) -> str:
        """Get the Kafka bootstrap servers, constructed from components"""
        return self._kafka_bootstrap

    @property
    def like_throttle_seconds(self) -> float:
        return self.like_throttle_ms / 1000.0

    @property
    def enrichment_enabled(self) -> bool:
        """Auto-enrichment only runs outside debug builds."""
        return not self.debug


# singleton
SettingsInstance = Settings()
# pep-8 alias
settings = SettingsInstance
