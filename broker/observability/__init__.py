"""
Observability module - Logging, Metrics, and Tracing.
"""

from broker.observability.logging import get_logger, log_context, setup_logging
from broker.observability.metrics import metrics
from broker.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
