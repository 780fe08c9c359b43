"""
Observability module - Logging, Metrics, and Tracing.
"""

from marketplace_billing.observability.logging import get_logger, log_context, setup_logging
from marketplace_billing.observability.metrics import metrics
from marketplace_billing.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
