"""
Root logger configuration for a run.

Two layouts:

    default         human console + JSON file under {log_dir}/{YYYY-MM-DD}/,
                    rotated at midnight, rotated files moved to {log_dir}/archive
    log_to_stdout   JSON lines on stdout only (containers)
"""

import io
import logging
import shutil
import sys
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter

DEFAULT_LOG_DIR = Path("logs")
DEFAULT_BACKUP_COUNT = 7

# Azure SDK and HTTP client loggers are capped at WARNING
QUIET_LOGGERS = (
    "azure.core.pipeline.policies.http_logging_policy",
    "azure.identity",
    "azure.eventhub",
    "uamqp",
    "urllib3",
    "aiohttp",
)

PLAIN_FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"


class ArchivingTimedRotatingFileHandler(TimedRotatingFileHandler):
    """Midnight-rotating file handler that moves rotated files into archive_dir."""

    def __init__(self, filename, archive_dir, backupCount=0, encoding=None):
        super().__init__(filename, when="midnight", backupCount=backupCount, encoding=encoding)
        self.archive_dir = Path(archive_dir)
        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def doRollover(self):
        super().doRollover()

        current = Path(self.baseFilename)
        for rotated in current.parent.glob(f"{current.name}.*"):
            try:
                shutil.move(str(rotated), str(self.archive_dir / rotated.name))
            except OSError as e:
                # inside a handler: logging here would recurse
                print(f"Warning: could not archive {rotated}: {e}", file=sys.stderr)


def get_log_file_path(log_dir: Path, name: str = "tenant_export") -> Path:
    """{log_dir}/2026-01-05/tenant_export_0105_1430.log"""
    now = datetime.now()
    return log_dir / f"{now:%Y-%m-%d}" / f"{name}_{now:%m%d_%H%M}.log"


def _stdout_handler() -> logging.StreamHandler:
    if sys.platform == "win32":
        # cp1252 consoles cannot encode every resource name
        return logging.StreamHandler(io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace"))
    return logging.StreamHandler(sys.stdout)


def _file_handler(log_dir: Path, name: str, json_format: bool, level: int, backup_count: int) -> logging.Handler:
    log_file = get_log_file_path(log_dir, name=name)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    handler = ArchivingTimedRotatingFileHandler(
        log_file,
        archive_dir=log_dir / "archive",
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(PLAIN_FILE_FORMAT))
    return handler


def setup_logging(
    name: str = "tenant_export",
    stage: str | None = None,
    log_dir: Path | None = None,
    json_format: bool = True,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    log_to_stdout: bool = False,
    log_to_file: bool = True,
) -> logging.Logger:
    """
    Replace the root handlers for this process.

    Args:
        name: Logger returned and log file prefix
        stage: Stored in the log context of the calling task
        log_dir: Root of the dated log folders (default ./logs)
        json_format: JSON lines for the file (or stdout) handler
        console_level: Level of the console / stdout handler
        file_level: Level of the file handler
        backup_count: Rotated files kept
        log_to_stdout: JSON on stdout only, no file
        log_to_file: Add the file handler in the default layout
    """
    log_dir = log_dir or DEFAULT_LOG_DIR
    if stage:
        set_log_context(stage=stage)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    console = _stdout_handler()
    console.setLevel(console_level)
    root.addHandler(console)

    destination = "stdout"
    if log_to_stdout:
        console.setFormatter(JSONFormatter() if json_format else ConsoleFormatter())
    else:
        console.setFormatter(ConsoleFormatter())
        if log_to_file:
            file_handler = _file_handler(log_dir, name, json_format, file_level, backup_count)
            root.addHandler(file_handler)
            destination = file_handler.baseFilename

    for quiet in QUIET_LOGGERS:
        logging.getLogger(quiet).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    logger.debug("Logging initialized", extra={"operation": "setup_logging", "sink": destination})
    return logger
