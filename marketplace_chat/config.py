import logging
import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


load_dotenv()


class Settings:

    def __init__(self) -> None:
        self.mongo_uri: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")
        self.mongo_db_name: str = os.getenv("MONGO_DB_NAME", "marketplace")
        self.redis_url: Optional[str] = os.getenv("REDIS_URL") or None
        self.jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", "change-me-before-deploying-this-service")
        self.jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
        self.mark_read_delay_seconds: float = float(os.getenv("MARK_READ_DELAY_SECONDS", "1.0"))
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=level or get_settings().log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
