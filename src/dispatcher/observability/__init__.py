"""Dispatcher observability package: in-process metrics."""

from dispatcher.observability.metrics import MetricsCollector

__all__ = ["MetricsCollector"]
