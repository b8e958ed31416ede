"""
Logging setup for navpulse.

Two loggers, both writing rotating files under ``settings.log_dir``:
- ``navpulse``: API and service messages, console at ``settings.log_level``
- ``navpulse.background``: scheduled/queued job runs; the file gets
  everything, the console only warnings

Every job attempt goes through ``log_background_start`` and then either
``log_background_complete`` or ``log_background_error``, so one grep for a
job id in jobs.log shows its whole history.
"""
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from navpulse.core.config import settings

MAIN_LOG_NAME = "navpulse.log"
JOBS_LOG_NAME = "jobs.log"

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5

_main_logger: Optional[logging.Logger] = None
_background_logger: Optional[logging.Logger] = None


def _resolve_log_dir(log_dir: Union[str, Path]) -> Path:
    path = Path(log_dir)
    if not path.is_absolute():
        # Relative paths are taken from the backend folder
        path = Path(__file__).parent.parent.parent / path
    path.mkdir(parents=True, exist_ok=True)
    return path


def _console_handler(level) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, DATE_FORMAT))
    return handler


def _file_handler(path: Path) -> logging.Handler:
    handler = RotatingFileHandler(path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, DATE_FORMAT))
    return handler


def setup_logging(log_dir: Union[str, Path, None] = None, level: Optional[str] = None):
    """(Re)configure both loggers. Safe to call more than once."""
    global _main_logger, _background_logger

    directory = _resolve_log_dir(log_dir or settings.log_dir)
    console_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    _main_logger = logging.getLogger("navpulse")
    _main_logger.setLevel(logging.DEBUG)
    _main_logger.propagate = False
    _main_logger.handlers.clear()
    _main_logger.addHandler(_console_handler(console_level))
    _main_logger.addHandler(_file_handler(directory / MAIN_LOG_NAME))

    _background_logger = logging.getLogger("navpulse.background")
    _background_logger.setLevel(logging.DEBUG)
    _background_logger.propagate = False
    _background_logger.handlers.clear()
    _background_logger.addHandler(_file_handler(directory / JOBS_LOG_NAME))
    _background_logger.addHandler(_console_handler(logging.WARNING))

    return _main_logger, _background_logger


def get_main_logger() -> logging.Logger:
    if _main_logger is None:
        setup_logging()
    return _main_logger


def get_background_logger() -> logging.Logger:
    if _background_logger is None:
        setup_logging()
    return _background_logger


def log_background_start(job_name: str, job_id: str, attempt: int = 1, manual: bool = False):
    """One console line per attempt, with the detail in jobs.log."""
    trigger = "manual" if manual else "scheduled"
    get_main_logger().info(f"[JOB] {job_name} started ({job_id}, attempt {attempt}, {trigger})")
    get_background_logger().info(f"=== {job_name} [{job_id}] STARTED === attempt={attempt} trigger={trigger}")


def log_background_complete(job_name: str, job_id: str, summary: str = "", elapsed: Optional[float] = None):
    message = f"[JOB] {job_name} completed ({job_id})"
    if summary:
        message += f" - {summary}"
    if elapsed is not None:
        message += f" in {elapsed:.2f}s"
    get_main_logger().info(message)
    get_background_logger().info(f"=== {job_name} [{job_id}] COMPLETED === {summary}")


def log_background_error(job_name: str, job_id: str, error: str, attempts: int):
    """A job that exhausted its retries."""
    get_main_logger().warning(f"[JOB] {job_name} failed ({job_id}) after {attempts} attempt(s): {error}")
    get_background_logger().error(f"=== {job_name} [{job_id}] FAILED === attempts={attempts} error={error}")
