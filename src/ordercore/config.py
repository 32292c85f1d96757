import os
from decimal import Decimal
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Full URL wins over the ORDERS_DB_* parts (tests and local runs use sqlite+aiosqlite)
    DATABASE_URL: str          = os.getenv("DATABASE_URL", "")
    ORDERS_DB_USER: str        = os.getenv("ORDERS_DB_USER", "")
    ORDERS_DB_PASSWORD: str    = os.getenv("ORDERS_DB_PASSWORD", "")
    ORDERS_DB_NAME: str        = os.getenv("ORDERS_DB_NAME", "")
    ORDERS_DB_HOST: str        = os.getenv("ORDERS_DB_HOST", "")
    ORDERS_DB_PORT: int        = int(os.getenv("ORDERS_DB_PORT", "5432"))
    SQL_ECHO: bool             = False

    RABBIT_USER: str           = os.getenv("RABBIT_USER", "")
    RABBIT_PASSWORD: str       = os.getenv("RABBIT_PASSWORD", "")
    RABBIT_HOST: str           = os.getenv("RABBIT_HOST", "")
    RABBIT_PORT: int           = int(os.getenv("RABBIT_PORT", "5672"))
    EVENTS_EXCHANGE: str       = "domain_events"
    PUBLISH_EVENTS: bool       = True

    # serializable transactions
    TX_MAX_ATTEMPTS: int       = 8
    TX_RETRY_BASE_DELAY: float = 0.02

    # idempotency
    IDEMPOTENCY_TTL_HOURS: int = 24
    IDEMPOTENCY_CLEANUP_LOCK_TTL: int = 60

    # inventory reservations
    RESERVATION_TTL_MINUTES: int      = 15
    RESERVATION_SWEEP_BATCH: int      = 100
    RESERVATION_SWEEP_LOCK_TTL: int   = 30

    # outbox
    OUTBOX_BATCH_SIZE: int            = 20
    OUTBOX_MAX_RETRIES: int           = 5
    OUTBOX_LOCK_TTL: int              = 30
    # a run stops taking new events this many seconds before its lock expires
    OUTBOX_LEASE_MARGIN: int          = 5
    OUTBOX_RETENTION_DAYS: int        = 7

    # order lifecycle
    UNPAID_AUTO_CANCEL_MINUTES: int   = 30
    AUTO_CANCEL_BATCH: int            = 50
    LIFECYCLE_LOCK_TTL: int           = 60
    SLA_CONFIRMED_TO_PACKED_MINUTES: int   = 10
    SLA_PACKED_TO_DISPATCHED_MINUTES: int  = 5
    ESTIMATED_DELIVERY_MINUTES: int   = 30

    # pricing
    CURRENCY: str                     = "INR"
    DELIVERY_FEE: Decimal             = Decimal("25.00")
    FREE_DELIVERY_THRESHOLD: Decimal  = Decimal("199.00")
    MIN_ORDER_AMOUNT: Decimal         = Decimal("0")
    TAX_RATE: Decimal                 = Decimal("0")
    TAX_INCLUSIVE: bool               = True

    # tokens
    JWT_SECRET: str                   = os.getenv("JWT_SECRET", "change-me")
    JWT_ALGORITHM: str                = "HS256"
    ACCESS_TOKEN_TTL_MINUTES: int     = 15
    REFRESH_TOKEN_TTL_DAYS: int       = 7

    # payment gateway webhooks, provider name -> shared secret
    WEBHOOK_SECRETS: dict[str, str]   = {}

    # background jobs (seconds)
    RUN_WORKERS: bool                 = True
    IDEMPOTENCY_CLEANUP_INTERVAL: int = 3600
    RESERVATION_SWEEP_INTERVAL: int   = 60
    OUTBOX_POLL_INTERVAL: int         = int(os.getenv("OUTBOX_POLL_INTERVAL", "10"))
    OUTBOX_CLEANUP_INTERVAL: int      = 86400
    AUTO_CANCEL_INTERVAL: int         = 300
    SLA_CHECK_INTERVAL: int           = 300

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://"
            f"{self.ORDERS_DB_USER}:"
            f"{self.ORDERS_DB_PASSWORD}"
            f"@{self.ORDERS_DB_HOST}:"
            f"{self.ORDERS_DB_PORT}/"
            f"{self.ORDERS_DB_NAME}"
        )

    @property
    def rabbit_url(self) -> str:
        return f"amqp://{self.RABBIT_USER}:{self.RABBIT_PASSWORD}@{self.RABBIT_HOST}:{self.RABBIT_PORT}/"

settings = Settings()
