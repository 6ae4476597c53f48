"""
Logging utility for the Sophia application
"""
import logging
import sys
from config import Config

NOISY_LOGGERS = ('twilio.http_client', 'httpx', 'urllib3', 'hpack')

def _configure_root(level: str) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(Config.LOG_FORMAT))
    root_logger.addHandler(console_handler)

    # Reduce verbosity of external libraries
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

def setup_logger(name: str, level: str = None) -> logging.Logger:
    """
    Set up a logger with consistent formatting

    Args:
        name: Logger name
        level: Logging level (optional, uses config default if not provided)

    Returns:
        Configured logger instance
    """
    level = (level or Config.LOG_LEVEL).upper()
    _configure_root(level)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger

def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for the given name

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    # Ensure root logger is configured
    if not logging.getLogger().handlers:
        _configure_root(Config.LOG_LEVEL.upper())

    return logging.getLogger(name)

def mask_phone(phone_number: str) -> str:
    """Mask a phone number for log output, e.g. +357991XXXXX"""
    if not phone_number:
        return 'XXXXX'
    clean_number = phone_number.replace('whatsapp:', '')
    if len(clean_number) < 8:
        return 'XXXXX'
    return clean_number[:7] + 'X' * (len(clean_number) - 7)
