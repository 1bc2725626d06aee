import json

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"
    APP_NAME: str = "Wayfare Checkout API"
    # Comma-separated origins for CORS. If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""
    LOG_LEVEL: str = "INFO"

    # Tokens are issued by the identity service; we only verify them.
    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v
    REDIS_URL: str = "redis://localhost:6379/0"

    # Cart
    DEFAULT_CURRENCY: str = "USD"
    CART_TTL_HOURS: int = 24
    CART_MAX_ITEMS: int = 20

    # Checkout session
    CHECKOUT_SESSION_TTL_MINUTES: int = 30
    PRICE_TOLERANCE_CENTS: int = 0
    PRICE_TOLERANCE_PERCENT: float = 0.0
    PRICE_CHANGE_MAX_RETRIES: int = 1

    # Provider / gateway calls
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 25.0
    EXTERNAL_CALL_MAX_ATTEMPTS: int = 3
    EXTERNAL_CALL_BACKOFF_SECONDS: float = 0.5
    EXTERNAL_CALL_BACKOFF_MAX_SECONDS: float = 5.0

    # Background jobs
    RECONCILIATION_INTERVAL_SECONDS: float = 60.0
    RECONCILIATION_MAX_ATTEMPTS: int = 10
    RECONCILIATION_BATCH_SIZE: int = 50
    SCHEDULE_SYNC_INTERVAL_SECONDS: float = 900.0
    CAPTURE_RETRY_INTERVAL_SECONDS: float = 300.0

    # Providers: JSON object {"provider_id": "https://provider.example/api"}
    PROVIDER_ENDPOINTS: str = "{}"
    PROVIDER_API_KEY: str = ""
    CATALOG_URL: str = ""

    # Notifications are handed to an external delivery service
    NOTIFICATIONS_WEBHOOK_URL: str = ""
    NOTIFICATIONS_API_KEY: str = ""

    # Cybersource (HTTP Signature / REST Payments)
    CYBS_ENV: str = "test"  # test|prod
    CYBS_HOST: str = "apitest.cybersource.com"
    CYBS_MERCHANT_ID: str = ""
    CYBS_KEY_ID: str = ""
    CYBS_SECRET_KEY_B64: str = ""
    CYBS_SANDBOX: bool = False  # If True, skip real Cybersource calls and return mock success
    CYBS_WEBHOOK_VERIFY: bool = False
    CYBS_WEBHOOK_PATH: str = ""  # If set, use this path for webhook signature verification

    def provider_endpoints(self) -> dict[str, str]:
        try:
            data = json.loads(self.PROVIDER_ENDPOINTS or "{}")
        except json.JSONDecodeError as e:
            raise ValueError(f"PROVIDER_ENDPOINTS is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("PROVIDER_ENDPOINTS must be a JSON object")
        return {str(k): str(v).rstrip("/") for k, v in data.items()}


settings = Settings()
