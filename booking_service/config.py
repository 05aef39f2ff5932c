from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    # Tokens are issued by the auth service; this service only verifies them
    SECRET_KEY: str
    ALGORITHM: str

    REDIS_URL: str

    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_NOTIFICATION_TOPIC: str = "booking_notifications"

    STRIPE_SECRET_KEY: str = ""
    STRIPE_TIMEOUT_SECONDS: int = 10
    CURRENCY: str = "usd"

    # Card authorizations lapse after 7 days, so the hold window cannot exceed it
    HOLD_WINDOW_DAYS: int = 7
    DOCUMENT_VALIDITY_DAYS: int = 365
    RENTER_FEE_PERCENT: float = 12.9

    SWEEP_INTERVAL_SECONDS: int = 300
    # Hosts get nudged about requests pending longer than this, at most this often,
    # and only while the request is younger than HOST_NUDGE_WINDOW_HOURS
    HOST_NUDGE_AFTER_MINUTES: int = 60
    HOST_NUDGE_INTERVAL_MINUTES: int = 60
    HOST_NUDGE_WINDOW_HOURS: int = 24
    OUTBOX_POLL_INTERVAL_SECONDS: int = 5

    # Shared secret for the scheduler that calls /internal/sweep
    CRON_SECRET: str | None = None

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env")


settings = Settings()
