"""
Monitoring package: Prometheus metrics.
"""

from src.monitoring.metrics_rich import RichMetrics

__all__ = [
    "RichMetrics",
]
