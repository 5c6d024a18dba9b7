import enum
import logging
import os
import sys

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ENVIRONMENT(enum.StrEnum):
    DEVELOPMENT = "dev"
    STAGING = "staging"
    PRODUCTION = "prod"


class Config:
    # Keys allowed to be empty or zero
    OPTIONAL_KEYS = {
        "AUTH_GATEWAY_SECRET",
        "MP_STATEMENT",
        "PUBLIC_URL",
        "AUTO_RECONCILE_INTERVAL_SECONDS",
    }

    def __init__(self):
        load_dotenv()

        self.APP_VERSION: str = self.get_app_version()
        self.ENVIRONMENT: ENVIRONMENT = ENVIRONMENT(os.getenv("ENVIRONMENT", "prod"))
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "")
        self.HTTP_HOST: str = os.getenv("HTTP_HOST", "0.0.0.0")
        self.HTTP_PORT: int = int(os.getenv("HTTP_PORT") or 8080)
        self.PUBLIC_URL: str = os.getenv("PUBLIC_URL", "").rstrip("/")
        self.AUTH_GATEWAY_SECRET: str = os.getenv("AUTH_GATEWAY_SECRET", "")

        self.MP_ACCESS_TOKEN: str = os.getenv("MP_ACCESS_TOKEN", "")
        self.MP_BASE_URL: str = os.getenv(
            "MP_BASE_URL", "https://api.mercadopago.com"
        ).rstrip("/")
        self.MP_TIMEOUT_SECONDS: int = int(os.getenv("MP_TIMEOUT_SECONDS") or 15)
        self.MP_STATEMENT: str = os.getenv("MP_STATEMENT", "")
        self.PIX_EXP_MIN: int = max(30, int(os.getenv("PIX_EXP_MIN") or 30))

        self.RESERVATION_TTL_MIN: int = int(os.getenv("RESERVATION_TTL_MIN") or 5)
        self.MAX_NUMBERS_PER_USER: int = int(os.getenv("MAX_NUMBERS_PER_USER") or 20)
        self.PRICE_CENTS: int = int(os.getenv("PRICE_CENTS") or 5500)
        self.PRICE_CACHE_TTL_SECONDS: int = int(
            os.getenv("PRICE_CACHE_TTL_SECONDS") or 60
        )

        self.RECONCILE_MIN_INTERVAL_SECONDS: int = int(
            os.getenv("RECONCILE_MIN_INTERVAL_SECONDS") or 45
        )
        self.RECONCILE_LOOKBACK_MINUTES: int = int(
            os.getenv("RECONCILE_LOOKBACK_MINUTES") or 1440
        )
        self.RECONCILE_BATCH_MAX: int = int(os.getenv("RECONCILE_BATCH_MAX") or 25)
        self.AUTO_RECONCILE_INTERVAL_SECONDS: int = int(
            os.getenv("AUTO_RECONCILE_INTERVAL_SECONDS") or 0
        )
        self.AUTO_RECONCILE_ON_HIT: bool = (
            os.getenv("AUTO_RECONCILE_ON_HIT", "True").lower() != "false"
        )
        self.EXPIRE_SWEEP_INTERVAL_SECONDS: int = int(
            os.getenv("EXPIRE_SWEEP_INTERVAL_SECONDS") or 60
        )

        self.validate_config()

    def validate_config(self):
        for key, value in vars(self).items():
            if isinstance(value, bool) or key in self.OPTIONAL_KEYS:
                continue
            if isinstance(value, str) and not value:
                raise ValueError(f"Configuration key '{key}' (str) is missing or empty")
            if isinstance(value, int) and value <= 0:
                raise ValueError(f"Configuration key '{key}' (int) is missing or empty")

    def get_app_version(self) -> str:
        with open("VERSION", "r") as file:
            return file.read().strip()


try:
    CONFIG = Config()
    logger.info("Loaded local configuration successfully")
except Exception as e:
    logger.critical(e)
    sys.exit(1)
