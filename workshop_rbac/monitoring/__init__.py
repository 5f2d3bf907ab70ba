"""
Monitoring module for RBAC metrics
"""

from workshop_rbac.monitoring.metrics import get_metrics, metrics_registry, track_resolution

__all__ = [
    "get_metrics",
    "metrics_registry",
    "track_resolution",
]
