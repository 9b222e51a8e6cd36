"""Logging configuration shared by the settlement service components."""

import sys
from typing import Optional

from loguru import logger as loguru_logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[service]}</cyan> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[service]} | {name}:{function}:{line} - {message}"

_configured = False


def setup_service_logger(
    service_name: str,
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    serialize: bool = False,
) -> loguru_logger:
    """Configure a logger for a service with standardized settings.

    Args:
        service_name: Name of the service (e.g., 'settlement-service')
        log_level: Logging level (default: INFO)
        log_file: Optional path to log file
        serialize: Emit JSON records instead of the colored console format

    Returns:
        logger: Configured loguru logger instance
    """
    global _configured

    # Remove any existing handlers
    loguru_logger.remove()
    loguru_logger.configure(extra={"service": service_name})

    if serialize:
        loguru_logger.add(sys.stderr, level=log_level, serialize=True, enqueue=True)
    else:
        loguru_logger.add(
            sys.stderr,
            level=log_level,
            format=LOG_FORMAT,
            colorize=True,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    # Add file handler if specified
    if log_file:
        loguru_logger.add(
            log_file,
            level=log_level,
            format=FILE_FORMAT,
            rotation="10 MB",
            retention="1 week",
            compression="gz",
            enqueue=True,
        )

    _configured = True
    return loguru_logger.bind(service=service_name)


def get_component_logger(service_name: str, component: str) -> loguru_logger:
    """Get a logger bound to one component of a service.

    The first call configures the default sinks if nothing has configured
    them yet, so modules can be imported in any order.

    Args:
        service_name: Name of the service
        component: Component name, e.g. 'gateway.stripe'

    Returns:
        logger: Logger carrying service and component context
    """
    if not _configured:
        setup_service_logger(service_name)
    return loguru_logger.bind(service=f"{service_name}.{component}", component=component)
