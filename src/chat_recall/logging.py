"""Logging configuration for chat-recall.

Provides centralized logging setup with file output to ~/chat-recall/logs/.
"""

import logging
import sys
from pathlib import Path

# Default log directory
DEFAULT_LOG_DIR = Path.home() / "chat-recall" / "logs"


def setup_logging(
    name: str,
    log_dir: Path | None = None,
    level: int = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Configure logging for a chat-recall component.

    Attaches a file handler (``<log_dir>/<name>.log``) and an optional
    stderr handler to the ``chat_recall`` root logger, so every module
    logger (``chat_recall.retriever``, ``chat_recall.orchestrator``...)
    writes into the component's log file.

    Args:
        name: Component name (used for log filename)
        log_dir: Directory for log files (defaults to ~/chat-recall/logs/)
        level: Logging level (defaults to INFO)
        console: Whether to also log to console (defaults to True)

    Returns:
        The configured ``chat_recall`` logger
    """
    if log_dir is None:
        log_dir = DEFAULT_LOG_DIR

    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("chat_recall")
    logger.setLevel(level)

    # Avoid adding duplicate handlers if already configured
    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = logging.FileHandler(log_dir / f"{name}.log", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a chat-recall component.

    Args:
        name: Logger name (will be prefixed with 'chat_recall.')

    Returns:
        Logger instance
    """
    return logging.getLogger(f"chat_recall.{name}")


def truncate_for_log(text: str, max_length: int = 50) -> str:
    """Shorten user text before it goes into a log line."""
    if not text or len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
