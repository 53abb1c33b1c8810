"""Logging configuration utilities"""
import logging
import sys

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = "INFO"):
    """
    Configure root logger for the service process.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
        force=True  # Force reconfiguration of root logger
    )
    # Access log is noisy under SSE keep-alives
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def log_user_action(logger: logging.Logger, user_id: str, action: str, details: str = ""):
    """
    Log user action in a consistent format.

    Args:
        logger: Logger instance
        user_id: Owning user ID
        action: Action description
        details: Additional details
    """
    log_msg = f"User {user_id} | {action}"
    if details:
        log_msg += f" | {details}"
    logger.info(log_msg)


def log_error_with_context(logger: logging.Logger, error: Exception, context: str):
    """Log an unexpected error with its traceback and where it happened"""
    logger.error(f"{context}: {type(error).__name__}: {error}", exc_info=True)
