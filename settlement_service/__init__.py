"""Order settlement and multi-gateway payment reconciliation service."""

__version__ = "0.1.0"
