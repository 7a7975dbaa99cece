import contextvars
import logging
import json
import os
import sys
from pathlib import Path
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler


# Extra fields copied into structured entries when passed via extra={...}
EXTRA_KEYS = (
    "correlation_id", "method", "path", "status", "duration_ms", "client_ip",
    "job_id", "worker_id", "state", "from_state", "to_state", "attempt",
    "max_attempts", "error", "error_kind", "error_type", "delay_seconds",
    "adapter", "source_format", "target_format", "service", "operation",
    "count", "deleted", "expired", "recovered", "workers", "poll_interval",
    "url", "returncode",
)


# Set per request by the correlation middleware; stamped onto every record logged under it
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Get the current request's correlation ID"""
    return correlation_id_var.get("")


def _extras(record: logging.LogRecord) -> dict:
    extras = {key: getattr(record, key) for key in EXTRA_KEYS if hasattr(record, key)}
    cid = get_correlation_id()
    if cid and "correlation_id" not in extras:
        extras["correlation_id"] = cid
    return extras


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        entry.update(_extras(record))

        # Add source location for errors
        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.filename}:{record.lineno}"

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for local development, extras appended as key=value"""

    def __init__(self):
        super().__init__(
            '%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = [f"{key}={value}" for key, value in _extras(record).items()]
        if extras:
            line = f"{line} [{' '.join(extras)}]"
        return line


def setup_logger(name: str = "converty", level: str = None) -> logging.Logger:
    """
    Setup application logger.

    LOG_FORMAT=json (or CONVERTY_LOG_FORMAT=json) switches stdout to structured
    JSON for log drains. When a log directory is configured a rotating JSON file
    handler is added as well.
    """
    logger = logging.getLogger(name)

    # Don't add handlers if they already exist
    if logger.handlers:
        return logger

    level = level or os.getenv("CONVERTY_LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    log_format = os.getenv("LOG_FORMAT") or os.getenv("CONVERTY_LOG_FORMAT", "text")
    is_structured = log_format == "json"

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter() if is_structured else SimpleFormatter())
    logger.addHandler(console_handler)

    log_dir = os.getenv("CONVERTY_LOG_DIR")
    if log_dir:
        try:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                Path(log_dir) / "converty.log",
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(StructuredFormatter())
            logger.addHandler(file_handler)
        except OSError as e:
            # Read-only filesystems keep stdout only
            logger.warning(f"Could not setup file logging: {e}")

    return logger


# Create default logger instance
logger = setup_logger()


def get_logger(name: str = None) -> logging.Logger:
    """Get logger instance, children of the default logger share its handlers"""
    if name:
        return logger.getChild(name)
    return logger
