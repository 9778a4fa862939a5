"""
Fleetwatch Metrics History
Bounded, delta-compressed fleet history over time.
"""

from .history import HistoryRecorder, aggregate_node_metrics

__all__ = [
    "HistoryRecorder",
    "aggregate_node_metrics",
]
