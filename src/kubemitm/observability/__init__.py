"""kubemitm observability package.

Structured logging and Prometheus metrics for provisioning runs.
"""

from kubemitm.observability.logging import configure_logging, get_logger
from kubemitm.observability.metrics import record_step, write_metrics

__all__ = ["configure_logging", "get_logger", "record_step", "write_metrics"]
