"""
Centralized logging setup and configuration.

Provides colored console logging, an optional size-rotated JSON log file,
and key/value fields on records so errors carry their context.
"""

import gzip
import json
import logging
import logging.handlers
import os
import shutil
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .config_loader import RotatingLogConfig


class ColoredFormatter(logging.Formatter):
    """
    Custom formatter that adds colors to log output.

    Colors are only applied when output is to a terminal.
    """

    # ANSI color codes
    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",      # Reset
    }

    def __init__(self, fmt: str = None, use_colors: bool = True, stream=None):
        """
        Initialize the formatter.

        Args:
            fmt: Log message format string
            use_colors: Whether to use colors in output
            stream: Stream the formatted records end up on
        """
        super().__init__(fmt or "%(asctime)s [%(levelname)s] %(message)s")
        stream = stream or sys.stdout
        self.use_colors = use_colors and stream.isatty()

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record with optional colors and trailing fields.

        Args:
            record: Log record to format

        Returns:
            Formatted log message
        """
        # Save original values
        original_levelname = record.levelname
        original_msg = record.msg

        if self.use_colors:
            color = self.COLORS.get(record.levelname, "")
            reset = self.COLORS["RESET"]

            record.levelname = f"{color}{record.levelname}{reset}"
            if original_levelname in ("ERROR", "CRITICAL", "WARNING"):
                record.msg = f"{color}{record.msg}{reset}"

        result = super().format(record)

        fields = getattr(record, "fields", None)
        if fields:
            result += " " + " ".join(f"{k}={v}" for k, v in fields.items())

        # Restore original values
        record.levelname = original_levelname
        record.msg = original_msg

        return result


class JSONFormatter(logging.Formatter):
    """Render each record as a single line of JSON."""

    def format(self, record: logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            "pid": record.process,
            "msg": record.getMessage(),
        }

        fields = getattr(record, "fields", None)
        if fields:
            for key, value in fields.items():
                base[key] = _json_safe(value)

        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)

        return json.dumps(base, ensure_ascii=False)


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


class _BelowLevelFilter(logging.Filter):
    """Pass only records strictly below a level."""

    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


class RollingFileHandler(logging.handlers.RotatingFileHandler):
    """
    Size-rotated log file with age-based pruning and optional compression.

    Backups follow the usual ``<file>.1``, ``<file>.2`` naming (with a
    ``.gz`` suffix when compressed). Backups older than ``max_age_days``
    are removed after each rollover and when the handler opens. A
    max_backups of 0 keeps every backup.
    """

    def __init__(
        self,
        filename: str,
        max_size_mb: int = 0,
        max_backups: int = 0,
        max_age_days: int = 0,
        compress: bool = False,
    ):
        directory = os.path.dirname(filename)
        if directory:
            os.makedirs(directory, exist_ok=True)

        super().__init__(
            filename,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=max_backups,
            encoding="utf-8",
        )
        self.max_age_days = max_age_days

        if compress:
            self.namer = lambda name: name + ".gz"
            self.rotator = _gzip_rotator

        self._prune_old_backups()

    def doRollover(self) -> None:
        if self.backupCount == 0 and self.maxBytes > 0:
            # 0 backups means keep them all; shift every existing backup up one
            self.backupCount = self._highest_backup_index() + 1
            try:
                super().doRollover()
            finally:
                self.backupCount = 0
        else:
            super().doRollover()
        self._prune_old_backups()

    def _backups(self):
        directory = os.path.dirname(self.baseFilename)
        prefix = os.path.basename(self.baseFilename) + "."
        for entry in os.listdir(directory):
            if entry.startswith(prefix):
                yield os.path.join(directory, entry), entry[len(prefix):]

    def _highest_backup_index(self) -> int:
        highest = 0
        for _, suffix in self._backups():
            index = suffix[:-3] if suffix.endswith(".gz") else suffix
            if index.isdigit():
                highest = max(highest, int(index))
        return highest

    def _prune_old_backups(self) -> None:
        if self.max_age_days <= 0:
            return

        cutoff = time.time() - self.max_age_days * 86400
        for path, _ in list(self._backups()):
            if os.path.getmtime(path) < cutoff:
                os.remove(path)


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as f_in, gzip.open(dest, "wb") as f_out:
        shutil.copyfileobj(f_in, f_out)
    os.remove(source)


class StructuredLogger(logging.Logger):
    """
    Extended logger that attaches key/value fields to records.
    """

    def event(self, level: int, message: str, **fields: Any) -> None:
        """
        Log a message with structured fields.

        Args:
            level: Logging level
            message: Short, constant event description
            **fields: Context rendered after the message (console)
                or as top-level keys (JSON file)
        """
        if self.isEnabledFor(level):
            self._log(level, message, (), extra={"fields": fields})

    def debugw(self, message: str, **fields: Any) -> None:
        self.event(logging.DEBUG, message, **fields)

    def infow(self, message: str, **fields: Any) -> None:
        self.event(logging.INFO, message, **fields)

    def errorw(self, message: str, **fields: Any) -> None:
        self.event(logging.ERROR, message, **fields)


def setup_logger(
    name: str = "kvcrutch",
    verbose: bool = False,
    use_colors: bool = True,
    log_config: Optional["RotatingLogConfig"] = None,
    stdout=None,
    stderr=None,
) -> StructuredLogger:
    """
    Setup and configure a logger.

    Args:
        name: Logger name
        verbose: Enable debug-level console logging
        use_colors: Enable colored output
        log_config: Optional rotating JSON log file settings
        stdout: Stream for records below WARNING (defaults to sys.stdout)
        stderr: Stream for WARNING and above (defaults to sys.stderr)

    Returns:
        Configured StructuredLogger instance
    """
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr

    logging.setLoggerClass(StructuredLogger)
    logger = logging.getLogger(name)
    logger.__class__ = StructuredLogger
    logging.setLoggerClass(logging.Logger)

    # The logger itself passes everything; handlers decide
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    console_level = logging.DEBUG if verbose else logging.INFO

    out_handler = logging.StreamHandler(stdout)
    out_handler.setLevel(console_level)
    out_handler.addFilter(_BelowLevelFilter(logging.WARNING))
    out_handler.setFormatter(ColoredFormatter(use_colors=use_colors, stream=stdout))
    logger.addHandler(out_handler)

    err_handler = logging.StreamHandler(stderr)
    err_handler.setLevel(logging.WARNING)
    err_handler.setFormatter(ColoredFormatter(use_colors=use_colors, stream=stderr))
    logger.addHandler(err_handler)

    if log_config is not None:
        file_handler = RollingFileHandler(
            log_config.filename,
            max_size_mb=log_config.maxsize,
            max_backups=log_config.maxbackups,
            max_age_days=log_config.maxage,
            compress=log_config.compress,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    return logger


def install_crash_hook(logger: StructuredLogger) -> None:
    """
    Log uncaught exceptions before the previous excepthook reports them.

    Args:
        logger: Logger that receives the CRITICAL record
    """
    previous_hook = sys.excepthook

    def _hook(exc_type, exc_value, exc_traceback):
        if not issubclass(exc_type, KeyboardInterrupt):
            logger.critical(
                "uncaught exception",
                exc_info=(exc_type, exc_value, exc_traceback),
            )
            for handler in logger.handlers:
                handler.flush()
        previous_hook(exc_type, exc_value, exc_traceback)

    sys.excepthook = _hook
