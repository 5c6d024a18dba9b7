import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict

from concurrent_log_handler import ConcurrentRotatingFileHandler

from newstore.event_emitter import event_emitter

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

CONSOLE_LEVELS = {
    "dev": logging.DEBUG,
    "staging": logging.INFO,
    "prod": logging.WARNING,
}

# Library loggers that would otherwise drown out payment and draw events
THIRD_PARTY_LOGGERS: Dict[str, Dict[str, Any]] = {
    "sqlalchemy.engine": {"level": logging.ERROR, "propagate": False},
    "aiohttp.access": {"level": logging.WARNING},
    "aiohttp.server": {"level": logging.WARNING},
    "apscheduler.scheduler": {"propagate": False},
    "apscheduler.executors": {"propagate": False},
    "alembic": {"level": logging.WARNING},
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, carrying any `extra={"context": ...}` given."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": self.formatTime(record, DATE_FORMAT),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


@dataclass
class LogSettings:
    log_dir: str = "./logs"
    level: int = logging.INFO
    console_level: int = logging.WARNING
    environment: str = "prod"
    json_format: bool = False
    max_bytes: int = 10_000_000
    backup_count: int = 10

    @classmethod
    def from_env(cls) -> "LogSettings":
        environment = os.getenv("ENVIRONMENT", "prod")
        level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper())
        console = os.getenv("LOG_CONSOLE_LEVEL")
        return cls(
            log_dir=os.getenv("LOG_DIR", cls.log_dir),
            level=level,
            console_level=(
                getattr(logging, console.upper())
                if console
                else CONSOLE_LEVELS.get(environment, logging.WARNING)
            ),
            environment=environment,
            json_format=os.getenv("LOG_JSON_FORMAT", "false").lower() == "true",
            max_bytes=int(os.getenv("LOG_FILE_MAX_BYTES", cls.max_bytes)),
            backup_count=int(os.getenv("LOG_FILE_BACKUP_COUNT", cls.backup_count)),
        )


class NewStoreLogger:
    """Root logger setup: console plus a rotating file per environment.

    The file handler is multi-process safe so the API and a separate
    migration or maintenance process can share the same log directory.
    """

    def __init__(self, settings: LogSettings):
        self.settings = settings
        os.makedirs(settings.log_dir, exist_ok=True)
        self.file_handler = ConcurrentRotatingFileHandler(
            os.path.join(settings.log_dir, f"newstore_{settings.environment}.log"),
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
        )
        self.configure()
        event_emitter.on("shutdown", self.cleanup, priority=100)

    def formatter(self) -> logging.Formatter:
        if self.settings.json_format and self.settings.environment == "prod":
            return JSONFormatter()
        return logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    def configure(self) -> None:
        formatter = self.formatter()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(self.settings.console_level)
        console_handler.setFormatter(formatter)

        self.file_handler.setLevel(self.settings.level)
        self.file_handler.setFormatter(formatter)

        root = logging.getLogger()
        root.setLevel(self.settings.level)
        root.handlers.clear()
        root.addHandler(console_handler)
        root.addHandler(self.file_handler)

        for name, options in THIRD_PARTY_LOGGERS.items():
            library_logger = logging.getLogger(name)
            if "level" in options:
                library_logger.setLevel(options["level"])
            if "propagate" in options:
                library_logger.propagate = options["propagate"]

        logging.getLogger(__name__).info(
            f"Logging configured for {self.settings.environment} at "
            f"{logging.getLevelName(self.settings.level)}"
        )

    async def cleanup(self) -> None:
        logging.getLogger(__name__).info("Closing logging file handler...")
        self.file_handler.close()


# Imported first thing by main.py
_logger_instance = NewStoreLogger(LogSettings.from_env())
