# File: config/logger_config.py
# Centralized logging configuration for the Curtain proteomics data layer.
# Every pipeline module obtains its logger through configure_logger so that log format,
# rotation and destination are the same across ingestion, mapping and search.

import logging  # Provides logging functionality
import os  # For handling file system paths and directories
from logging.handlers import RotatingFileHandler  # For managing rotating log files
from typing import Optional  # For optional type hinting

# Environment variable that overrides the default log directory
LOG_DIR_ENV = "CURTAIN_LOG_DIR"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def resolve_log_dir(log_dir: Optional[str] = None) -> str:
    """
    Resolves the directory that log files are written to.

    Precedence: explicit argument, then the CURTAIN_LOG_DIR environment variable,
    then ``<project_root>/logs``.
    """
    if log_dir:
        return log_dir
    env_dir = os.getenv(LOG_DIR_ENV)
    if env_dir:
        return env_dir
    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return os.path.join(project_root, "logs")


def configure_logger(
    name: Optional[str] = None,  # The name of the logger; None defaults to the root logger
    log_dir: Optional[str] = None,  # Directory where log files will be stored
    log_file: str = "curtain.log",  # Name of the log file
    level: int = logging.INFO,  # Logging level (e.g., DEBUG, INFO, WARNING, ERROR)
    max_bytes: int = 10 * 1024 * 1024,  # Maximum size of a log file before rotation (default: 10 MB)
    backup_count: int = 5,  # Number of backup files to keep during log rotation
    output: str = "both",  # Where to output logs: "file", "console", or "both"
) -> logging.Logger:
    """
    Configures and returns a logger instance.

    Handlers are attached only the first time a given logger name is configured, so
    modules can call this at import time without producing duplicate log lines.

    Args:
        name (Optional[str]): Name of the logger. If None, the root logger is used.
        log_dir (Optional[str]): Directory to store log files. Resolved via resolve_log_dir.
        log_file (str): Name of the log file.
        level (int): Logging level (e.g., logging.INFO, logging.DEBUG).
        max_bytes (int): Maximum size of the log file before rotation.
        backup_count (int): Number of backup files to keep during rotation.
        output (str): Where to send logs: "file", "console", or "both".

    Returns:
        logging.Logger: Configured logger instance.

    Raises:
        RuntimeError: If the log directory or a handler cannot be set up.
    """
    if output not in {"file", "console", "both"}:
        raise ValueError(f"Unsupported logger output '{output}'. Use 'file', 'console' or 'both'.")

    try:
        # Create or retrieve the logger instance with the specified name
        logger = logging.getLogger(name)
        logger.setLevel(level)

        # Check if the logger already has handlers to prevent duplicate logs
        if logger.handlers:
            return logger

        formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

        # If output includes file logging, configure a rotating file handler
        if output in {"file", "both"}:
            resolved_dir = resolve_log_dir(log_dir)
            os.makedirs(resolved_dir, exist_ok=True)
            log_path = os.path.join(resolved_dir, log_file)
            try:
                file_handler = RotatingFileHandler(
                    log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
                )
                file_handler.setLevel(level)
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
            except OSError as e:
                raise RuntimeError(f"Failed to configure file handler for logger: {e}") from e

        # If output includes console logging, configure a stream handler
        if output in {"console", "both"}:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(level)
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)

        return logger

    except OSError as e:  # Handle issues with creating log directories or files
        raise RuntimeError(f"Failed to create or access log directory: {e}") from e
