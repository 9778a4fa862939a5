"""
Fleetwatch Topology Layer
Service discovery, application dependency graph and health aggregation.
"""

from .discovery import (
    DiscoveryRegistry,
    DiscoveryRule,
    ServiceDiscoveryResolver,
    ServiceMetadata,
    MatcherSpec,
    MatcherKind,
    FallbackSpec,
    FallbackStrategy,
)
from .graph import TopologyGraph
from .health import HealthAggregator, HealthResult

__all__ = [
    "DiscoveryRegistry",
    "DiscoveryRule",
    "ServiceDiscoveryResolver",
    "ServiceMetadata",
    "MatcherSpec",
    "MatcherKind",
    "FallbackSpec",
    "FallbackStrategy",
    "TopologyGraph",
    "HealthAggregator",
    "HealthResult",
]
