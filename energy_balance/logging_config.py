"""
Logging Configuration
Sets up JSON or text logging for the energy balance core
"""
import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List

# Attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

# Third-party loggers that log every HTTP connection at DEBUG
QUIET_LOGGERS = ("urllib3", "requests")


def context_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached to a record via ``extra=`` / log_with_context"""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line; context fields become top-level keys"""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        log_obj.update(context_fields(record))
        return json.dumps(log_obj, default=str)


class TextFormatter(logging.Formatter):
    """
    Console formatter

    Context fields are appended as ``key=value`` pairs, e.g.
    ``... | Backup uploaded [backup_file=b.json size=812]``
    """

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = context_fields(record)
        if not fields:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in fields.items())
        head, newline, rest = line.partition("\n")
        return f"{head} [{pairs}]{newline}{rest}"


def _resolve_level(name: Any) -> int:
    level = getattr(logging, str(name).upper(), None)
    return level if isinstance(level, int) else logging.INFO


def _build_handlers(log_config: Dict[str, Any], formatter: logging.Formatter, level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    log_file = log_config.get("file")
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            log_path,
            maxBytes=log_config.get("max_bytes", 5 * 1024 * 1024),
            backupCount=log_config.get("backup_count", 3),
            encoding="utf-8",
        ))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    return handlers


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Configure the root logger from the ``logging`` config section

    Keys: ``level`` (default INFO), ``format`` (``text`` or ``json``),
    ``file`` (optional rotating log file), ``max_bytes``, ``backup_count``.
    Output goes to stderr so CLI results on stdout stay machine-readable.
    """
    log_config = config.get("logging") or {}
    level = _resolve_level(log_config.get("level", "INFO"))
    log_format = str(log_config.get("format", "text")).lower()
    formatter = JSONFormatter() if log_format == "json" else TextFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = _build_handlers(log_config, formatter, level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))

    log_with_context(
        root_logger, logging.DEBUG, "Logging configured",
        log_level=logging.getLevelName(level), log_format=log_format, log_file=log_config.get("file"),
    )


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """
    Log a message with additional context fields

    Keys must not clash with LogRecord attributes (``filename``, ``module``...).
    """
    logger.log(level, message, extra=context)
