from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./smartkollect.db"
    JWT_SECRET: str = "super-secret"
    JWT_ALGORITHM: str = "HS256"

    # Production settings
    ALLOWED_ORIGINS: Optional[str] = None  # comma separated
    ENVIRONMENT: str = "development"  # development, production
    LOG_LEVEL: str = "INFO"

    # Shared secret sent by the scheduler in the X-Cron-Secret header.
    # Left empty in development, where the cron route is open.
    CRON_SECRET: Optional[str] = None

    # "cover": every covered PTP is marked paid by one payment.
    # "exhaust": the payment amount is consumed PTP by PTP, oldest first.
    PTP_ALLOCATION_MODE: str = "cover"

    # Telegram operator notifications (optional)
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_CHAT_ID: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
