"""
Monitoring and metrics infrastructure for RewardGuard.

This package provides:
- Application metrics collection (counters, gauges, histograms)
- Structured logging with JSON output and redaction
- Request timing middleware

Usage:
    from monitoring import metrics, get_logger

    metrics.increment("rewards_withheld_total", labels={"reason": "CHALLENGE_REQUIRED"})

    logger = get_logger(__name__)
    logger.warning("Reward withheld", extra={"identity": "abc"})
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics
from monitoring.middleware import setup_request_logging

__all__ = [
    "LoggingContext",
    "MetricsCollector",
    "configure_logging",
    "get_logger",
    "metrics",
    "setup_request_logging",
]
