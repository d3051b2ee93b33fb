import os
import sys
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from kb_indexer.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_level: Optional[str] = None, log_path: Optional[str] = None):
    """
    Configures the root logger with a console handler and a rotating file handler.
    Safe to call more than once; existing handlers are replaced.
    """
    log_level = (log_level or settings.LOG_LEVEL).upper()
    log_path = log_path if log_path is not None else settings.LOG_PATH

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))
    root_logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_path:
        os.makedirs(log_path, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_path, "kb_indexer.log"),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Quiet chatty third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sentence_transformers").setLevel(logging.WARNING)

    logging.info(f"Logging configured with level: {log_level}")


class RequestLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        context = " ".join(f"{key}={value}" for key, value in self.extra.items() if value is not None)
        return (f"[{context}] {msg}" if context else msg), kwargs


def get_request_logger(name: str, **context) -> logging.LoggerAdapter:
    """Returns a logger that prefixes every message with request context (method, path, client_ip...)."""
    return RequestLoggerAdapter(logging.getLogger(name), context)
