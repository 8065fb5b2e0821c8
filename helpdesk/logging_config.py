"""
Logging setup shared by the API and the maintenance scripts.

Application records go to stdout and, optionally, a rotating log file. The
per-request chat metrics go to a separate "metrics" logger that never reaches
the root handlers.
"""
import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler


METRICS_LOGGER_NAME = "metrics"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
METRICS_FORMAT = '%(asctime)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

MAX_LOG_BYTES = 10 * 1024 * 1024  # 10MB
LOG_BACKUP_COUNT = 5

# Client libraries that log every request at INFO
NOISY_LOGGERS = ("urllib3", "httpx", "httpcore", "openai", "sqlalchemy.engine")


def _rotating_file_handler(path: str, formatter: logging.Formatter) -> RotatingFileHandler:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT)
    handler.setFormatter(formatter)
    return handler


def setup_logging(level: str = "INFO", log_file: str = None, metrics_file: str = None):
    """
    Configure the root logger and the metrics logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (unknown names fall back to INFO)
        log_file: Rotating application log. None logs to the console only.
        metrics_file: Rotating metrics log. None drops metrics records.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers = [console_handler]

    if log_file:
        handlers.append(_rotating_file_handler(log_file, formatter))

    for handler in handlers:
        handler.setLevel(numeric_level)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    setup_metrics_logger(metrics_file)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level} level")
    if log_file:
        logger.info(f"Logging to file: {log_file}")


def setup_metrics_logger(metrics_file: str = None) -> logging.Logger:
    """Attach the metrics logger to its own file; it never propagates to root."""
    metrics_logger = logging.getLogger(METRICS_LOGGER_NAME)
    for handler in list(metrics_logger.handlers):
        metrics_logger.removeHandler(handler)
        handler.close()
    metrics_logger.setLevel(logging.INFO)
    metrics_logger.propagate = False

    if metrics_file:
        metrics_logger.addHandler(
            _rotating_file_handler(metrics_file, logging.Formatter(fmt=METRICS_FORMAT, datefmt=DATE_FORMAT))
        )
    else:
        metrics_logger.addHandler(logging.NullHandler())

    return metrics_logger


def get_logger(name: str) -> logging.Logger:
    """Module logger; call with __name__."""
    return logging.getLogger(name)
