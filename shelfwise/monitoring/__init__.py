"""Monitoring: structured logging, Prometheus metrics and health checks."""
from .health import HealthCheck
from .logging import setup_logging
from .metrics import metrics

__all__ = ["HealthCheck", "metrics", "setup_logging"]
