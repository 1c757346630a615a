"""
Runtime configuration read from environment variables.
"""
import logging
import os
from functools import lru_cache
from typing import List

from pydantic import BaseModel, Field

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "veluno"
    use_transactions: bool = True
    razorpay_api_url: str = "https://api.razorpay.com"
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    qikink_api_url: str = "https://api.qikink.com"
    qikink_client_id: str = ""
    qikink_client_secret: str = ""
    allowed_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"]
    )
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        data = {
            "database_url": os.getenv("DATABASE_URL"),
            "database_name": os.getenv("DATABASE_NAME"),
            "razorpay_api_url": os.getenv("RAZORPAY_API_URL"),
            "razorpay_key_id": os.getenv("RAZORPAY_KEY_ID"),
            "razorpay_key_secret": os.getenv("RAZORPAY_KEY_SECRET"),
            "razorpay_webhook_secret": os.getenv("RAZORPAY_WEBHOOK_SECRET"),
            "qikink_api_url": os.getenv("QIKINK_API_URL"),
            "qikink_client_id": os.getenv("QIKINK_CLIENT_ID"),
            "qikink_client_secret": os.getenv("QIKINK_CLIENT_SECRET"),
            "log_level": os.getenv("LOG_LEVEL"),
            "port": os.getenv("PORT"),
        }
        origins = os.getenv("ALLOWED_ORIGINS")
        if origins:
            data["allowed_origins"] = [o.strip() for o in origins.split(",") if o.strip()]
        data["use_transactions"] = _env_bool("MONGO_TRANSACTIONS", True)
        return cls(**{k: v for k, v in data.items() if v is not None})


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
