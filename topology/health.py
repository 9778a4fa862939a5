"""
Fleetwatch Health Aggregator
============================
Derives application health from the nodes its dependencies resolve to.

Score = average node score (status bucket minus metric penalties), minus a
cascading penalty for every dependency that is itself an unhealthy
application. The recursion carries the set of applications on the current
path; re-entering one of them adds nothing, so cyclic topologies terminate.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Callable, Set

from simulator.errors import UnknownApplicationError
from simulator.models import Node, HealthRecord, Application, UNKNOWN_STATUS
from topology.discovery import ServiceDiscoveryResolver
from topology.graph import TopologyGraph

logger = logging.getLogger("fleetwatch.topology")

STATUS_SCORES: Dict[str, float] = {
    "offline": 0.0,
    "critical": 20.0,
    "warning": 60.0,
    "maintenance": 80.0,
    "online": 100.0,
    UNKNOWN_STATUS: 100.0,
}

MAX_DEPENDENCY_PENALTY = 50.0
DEPENDENCY_HEALTH_FLOOR = 80.0
DEPENDENCY_PENALTY_WEIGHT = 0.3


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    if value != value:  # NaN
        return low
    return max(low, min(high, value))


def node_health_score(node: Node) -> float:
    m = node.metrics
    score = STATUS_SCORES.get(node.status, 100.0)
    score -= 0.5 * max(0.0, m.cpu - 80)
    score -= 0.5 * max(0.0, m.memory - 80)
    score -= 0.1 * max(0.0, m.network_latency - 200)
    return _clamp(score)


@dataclass
class HealthResult:
    application: str
    score: float
    status: str  # healthy, warning, critical, failure, unknown
    reason: str
    node_details: Dict[str, int] = field(default_factory=dict)
    dependencies: List[Dict[str, Any]] = field(default_factory=list)
    resolved_node_refs: List[str] = field(default_factory=list)
    avg_node_health: float = 0.0
    dependency_penalty: float = 0.0
    timestamp: int = 0
    history: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "application": self.application,
            "score": round(self.score, 2),
            "status": self.status,
            "reason": self.reason,
            "node_details": dict(self.node_details),
            "dependencies": [dict(d) for d in self.dependencies],
            "resolved_node_refs": list(self.resolved_node_refs),
            "avg_node_health": round(self.avg_node_health, 2),
            "dependency_penalty": round(self.dependency_penalty, 2),
            "timestamp": self.timestamp,
            "history": list(self.history),
        }


class HealthAggregator:
    def __init__(
        self,
        graph: TopologyGraph,
        resolver: ServiceDiscoveryResolver,
        nodes_provider: Callable[[], List[Node]],
        clock: Optional[Callable[[], int]] = None,
    ):
        self.graph = graph
        self.resolver = resolver
        self._nodes_provider = nodes_provider
        self._clock = clock or (lambda: int(time.time() * 1000))

    def compute_application_health(self, app_name: str) -> HealthResult:
        app = self.graph.get(app_name)
        if app is None:
            raise UnknownApplicationError(app_name)
        result = self._compute(app, set())
        app.health_history.append(HealthRecord(
            timestamp=result.timestamp,
            score=result.score,
            status=result.status,
            node_count=result.node_details.get("total", 0),
            avg_node_health=result.avg_node_health,
            dependency_penalty=result.dependency_penalty,
        ))
        result.history = [r.to_dict() for r in list(app.health_history)[-10:]]
        return result

    def get_all_application_health(self) -> Dict[str, HealthResult]:
        return {name: self.compute_application_health(name) for name in self.graph.names()}

    def _compute(self, app: Application, visiting: Set[str]) -> HealthResult:
        now = self._clock()
        visiting.add(app.name)
        try:
            candidates = self._nodes_provider()
            resolved: Dict[str, Node] = {}
            dependencies = []
            for dep in app.dependencies:
                nodes = self.resolver.resolve(dep, candidates)
                app.resolved_nodes[dep] = [n.id for n in nodes]
                for node in nodes:
                    resolved.setdefault(node.id, node)
                dependencies.append({
                    "name": dep,
                    "is_application": self.graph.has(dep),
                    "resolved": [n.id for n in nodes],
                    "virtual": all(n.virtual for n in nodes),
                })
            app.last_resolution = now

            if not resolved:
                return HealthResult(
                    application=app.name,
                    score=0.0,
                    status="unknown",
                    reason="No nodes found for dependencies",
                    node_details=_node_details([]),
                    dependencies=dependencies,
                    timestamp=now,
                )

            nodes = list(resolved.values())
            avg = sum(node_health_score(n) for n in nodes) / len(nodes)

            penalty = 0.0
            for entry in dependencies:
                dep = entry["name"]
                if not entry["is_application"]:
                    continue
                if dep in visiting:
                    entry["cycle"] = True
                    logger.debug(f"Dependency cycle {app.name} -> {dep}; no further penalty")
                    continue
                dep_result = self._compute(self.graph.get(dep), visiting)
                entry["health"] = round(dep_result.score, 2)
                penalty += max(0.0, DEPENDENCY_HEALTH_FLOOR - dep_result.score) * DEPENDENCY_PENALTY_WEIGHT
            penalty = _clamp(penalty, 0.0, MAX_DEPENDENCY_PENALTY)

            score = _clamp(avg - penalty)
            status, reason = _classify(score, app)
            return HealthResult(
                application=app.name,
                score=score,
                status=status,
                reason=reason,
                node_details=_node_details(nodes),
                dependencies=dependencies,
                resolved_node_refs=[n.id for n in nodes],
                avg_node_health=avg,
                dependency_penalty=penalty,
                timestamp=now,
            )
        finally:
            visiting.discard(app.name)


def _classify(score: float, app: Application):
    t = app.thresholds
    if score < t.failure:
        return "failure", "Critical system failure"
    if score < t.critical:
        return "critical", "Multiple system issues detected"
    if score < t.warning:
        return "warning", "Performance degradation detected"
    return "healthy", "All systems operational"


def _node_details(nodes: List[Node]) -> Dict[str, int]:
    details = {"total": len(nodes), "healthy": 0, "warning": 0, "critical": 0, "offline": 0, "virtual": 0}
    for node in nodes:
        if node.virtual:
            details["virtual"] += 1
        elif node.status in ("online", "maintenance"):
            details["healthy"] += 1
        elif node.status in details:
            details[node.status] += 1
    return details
