"""
Structured logging for deployment runs.

Provides:
- Human-readable console output for the operator
- JSON lines in a rotating file for the audit trail
- Deployment/stage context attached to every record
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

deployment_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "deployment_id", default=None
)
stage_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "stage", default=None
)

# Libraries that log request payloads (signed transactions) at DEBUG
NOISY_LOGGERS = ("solana", "solders", "httpx", "httpcore", "filelock")


class StageContext:
    """Context manager tagging log records with the running stage."""

    def __init__(self, stage: str, deployment_id: Optional[str] = None):
        self.stage = stage
        self.deployment_id = deployment_id
        self._tokens = []

    def __enter__(self):
        self._tokens.append((stage_var, stage_var.set(self.stage)))
        if self.deployment_id:
            self._tokens.append((deployment_id_var, deployment_id_var.set(self.deployment_id)))
        return self

    def __exit__(self, *args):
        for var, token in reversed(self._tokens):
            var.reset(token)


def short_address(address: Optional[str]) -> str:
    """Shorten an address for log output."""
    if not address:
        return "-"
    if len(address) <= 16:
        return address
    return f"{address[:8]}...{address[-4:]}"


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }

        stage = stage_var.get()
        deployment_id = deployment_id_var.get()
        if stage:
            log_data["stage"] = stage
        if deployment_id:
            log_data["deployment_id"] = deployment_id

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for the operator's terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S")
        level = record.levelname
        if self.use_color and sys.stderr.isatty():
            level = f"{self.COLORS.get(level, '')}{level}{self.RESET}"

        parts = [f"[{timestamp}]", f"[{level}]"]
        stage = stage_var.get()
        if stage:
            parts.append(f"[{stage}]")
        parts.append(record.getMessage())

        if record.exc_info:
            parts.append("\n" + "".join(traceback.format_exception(*record.exc_info)))

        return " ".join(parts)


def setup_logging(
    level: Union[str, int] = logging.INFO,
    log_dir: Optional[Union[str, Path]] = None,
    log_file: str = "deployment.log",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure root logging for a pipeline invocation.

    Args:
        level: Logging level name or number
        log_dir: Directory for the JSON log file; console only when None
        log_file: Name of the log file
        max_bytes: Size at which the file rotates
        backup_count: Rotated files to keep

    Returns:
        Configured root logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path / log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
