import logging
import sys
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GEMSTONE_", env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./gemstone.db"
    secret_key: str = "change-me"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 30

    # Remaining stock below this after an order produces a warning, not an error
    low_stock_warning_threshold: int = 5
    # Default cut-off for the admin low stock report
    low_stock_report_threshold: int = 10

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def setup_logging(level: str = "INFO"):
    """Configure the root ``gemstone_shop`` logger with a stdout handler."""
    log = logging.getLogger("gemstone_shop")
    log.setLevel(level.upper())
    if not log.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        log.addHandler(handler)
    return log
