from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    ENV: str = "prod"

    DATABASE_URL: str = "sqlite:///./courseshop.db"

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    API_WORKERS: int = 2
    ALLOWED_HOSTS: str = "localhost,127.0.0.1"
    SECURITY_HEADERS_ENABLED: bool = True

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Stripe
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_SUBSCRIPTION_EXPAND: str = "latest_invoice,schedule"

    # Hosted checkout
    CHECKOUT_SUCCESS_URL: str = "http://localhost:3000/courses/{course_id}/success?session_id={CHECKOUT_SESSION_ID}"
    CHECKOUT_CANCEL_URL: str = "http://localhost:3000/courses/{course_id}"
    CHECKOUT_CURRENCY: str = "usd"

settings = Settings()
