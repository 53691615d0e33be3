"""Centralized logging configuration for the application."""
import logging
import sys

from flask import Flask

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(app: Flask) -> logging.Logger:
    """
    Attach a stdout handler to the package logger and align the Flask app logger.

    Services log through logging.getLogger(__name__), which resolves under
    the "saleflow" hierarchy; routes keep using current_app.logger.
    """
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)

    logger = logging.getLogger("saleflow")
    logger.setLevel(level)
    app.logger.setLevel(level)

    # Avoid duplicate handlers when create_app() runs more than once (tests)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False

    return logger
