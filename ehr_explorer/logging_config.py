import logging
import logging.handlers
import sys
import os
from typing import List, Optional
from .config import get_config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'

# Chatty third-party loggers; ingestion lines are what matter
QUIET_LOGGERS = ['httpx', 'httpcore', 'asyncio', 'uvicorn.access']

def _rotating_file_handler(log_file: str, level: int) -> logging.Handler:
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
    return handler

def setup_logging(
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """Configure the root logger for the ingestion service and CLI.

    Console output goes to stdout; ``log_file`` (or LOG_FILE) adds a rotating
    file with source locations. Calling it again replaces earlier handlers.
    """
    app_config = get_config().app
    level_name = (log_level or app_config.log_level).upper()
    log_file = log_file or app_config.log_file
    numeric_level = getattr(logging, level_name, logging.INFO)

    handlers: List[logging.Handler] = []
    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(console_handler)
    if log_file:
        handlers.append(_rotating_file_handler(log_file, numeric_level))

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured - Level: {level_name}, File: {log_file or 'None'}")

def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name"""
    return logging.getLogger(name)

class PerformanceLogger:
    """Logger for ingestion timings"""

    def __init__(self, logger_name: str = "performance"):
        self.logger = logging.getLogger(logger_name)

    def log_ingest_job(self, path: str, duration: float, rows_written: int = None, succeeded: bool = True):
        """Log one coordinator job"""
        rows_info = f" ({rows_written} rows)" if rows_written is not None else ""
        outcome = "ok" if succeeded else "failed"
        self.logger.info(f"Ingest {outcome} ({duration:.3f}s){rows_info}: {path}")

    def log_transaction(self, patient_id: Optional[str], duration: float, inserted: int, failed: int):
        """Log one persist transaction"""
        self.logger.info(f"Transaction for patient {patient_id or 'N/A'} ({duration:.3f}s): "
                         f"{inserted} rows inserted, {failed} rows skipped")
