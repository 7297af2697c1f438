# clinic_cashier/core/logging_config.py - Logging setup driven by settings
import json
import logging
from logging.handlers import RotatingFileHandler

from clinic_cashier.core.config import settings

FORMATS = {
    "simple": "%(levelname)s - %(message)s",
    "detailed": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


class JsonFormatter(logging.Formatter):
    """One JSON object per log line"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record),
            "logger": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter()
    return logging.Formatter(FORMATS.get(log_format, FORMATS["detailed"]))


def configure_logging(level: str = None, log_format: str = None, log_file: str = None) -> None:
    """
    Configure the root logger.

    Arguments default to LOG_LEVEL, LOG_FORMAT and LOG_FILE_PATH from settings.
    Calling it again replaces the handlers installed by the previous call.
    """
    level = level or settings.LOG_LEVEL
    formatter = _build_formatter(log_format or settings.LOG_FORMAT)
    log_file = log_file or settings.LOG_FILE_PATH

    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=settings.LOG_MAX_SIZE,
                backupCount=settings.LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        )
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
