"""Logger module for the settlement service."""

from logging_utils.config import get_component_logger, setup_service_logger

from .config import get_settings

SERVICE_NAME = "settlement-service"


def configure_logging():
    """Configure the service sinks from settings and return the service logger."""
    settings = get_settings()
    return setup_service_logger(
        settings.service_name,
        log_level=settings.log_level.upper(),
        log_file=settings.log_file,
        serialize=settings.log_json,
    )


def get_logger(component: str):
    """Return a logger bound to a settlement-service component."""
    return get_component_logger(SERVICE_NAME, component)


__all__ = ["configure_logging", "get_logger"]
