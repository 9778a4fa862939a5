"""
Fleetwatch Data Model
=====================
Nodes, applications and incident records shared by every layer.

Timestamps are integer epoch milliseconds throughout. Node status is stored
as the plain string value of NodeStatus so records serialize directly.
"""

from __future__ import annotations

import copy
from collections import deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Dict, Any, Optional, Deque


class NodeStatus(Enum):
    ONLINE = "online"
    WARNING = "warning"
    CRITICAL = "critical"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


# Only synthesized virtual nodes carry this; real nodes never do.
UNKNOWN_STATUS = "unknown"

NODE_STATUSES = tuple(s.value for s in NodeStatus)

CRITICALITIES = ("critical", "high", "medium", "low")


@dataclass(frozen=True)
class HealthThresholds:
    """Score boundaries below which an application leaves a health band."""
    warning: float
    critical: float
    failure: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


THRESHOLDS_BY_CRITICALITY: Dict[str, HealthThresholds] = {
    "critical": HealthThresholds(warning=90, critical=70, failure=50),
    "high": HealthThresholds(warning=80, critical=60, failure=40),
    "medium": HealthThresholds(warning=70, critical=50, failure=30),
    "low": HealthThresholds(warning=60, critical=40, failure=20),
}


def thresholds_for(criticality: str) -> HealthThresholds:
    return THRESHOLDS_BY_CRITICALITY.get(criticality, THRESHOLDS_BY_CRITICALITY["medium"])


# ─────────────────────────────────────────────────────────────────────
# Node
# ─────────────────────────────────────────────────────────────────────

@dataclass
class NodeMetrics:
    cpu: float = 30.0
    memory: float = 40.0
    network_latency: float = 20.0
    storage_io: float = 500.0
    disk_usage: float = 45.0

    def clamp(self):
        self.cpu = max(0.0, min(100.0, self.cpu))
        self.memory = max(0.0, min(100.0, self.memory))
        self.disk_usage = max(0.0, min(100.0, self.disk_usage))
        self.network_latency = max(1.0, self.network_latency)
        self.storage_io = max(100.0, self.storage_io)

    def to_dict(self) -> Dict[str, float]:
        return {k: round(v, 2) for k, v in asdict(self).items()}

    @classmethod
    def zeroed(cls) -> "NodeMetrics":
        return cls(cpu=0.0, memory=0.0, network_latency=0.0, storage_io=0.0, disk_usage=0.0)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NodeMetrics":
        data = data or {}
        # camelCase aliases from dashboard-style fixtures
        aliases = {
            "mem": "memory",
            "networkLatency": "network_latency",
            "storageIO": "storage_io",
            "diskUsage": "disk_usage",
        }
        values = {}
        for key, value in data.items():
            name = aliases.get(key, key)
            if name in cls.__dataclass_fields__:
                values[name] = float(value)
        return cls(**values)


@dataclass
class Personality:
    """Behavioural profile that biases how a node drifts over time."""
    name: str = "stable"
    volatility: float = 0.1
    degradation_rate: float = 1.0
    recovery_rate: float = 1.0
    incident_proneness: float = 0.5
    load_sensitivity: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Prediction:
    risk: float
    confidence: float
    time_to_failure: Optional[int]
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk": round(self.risk, 3),
            "confidence": round(self.confidence, 3),
            "time_to_failure": self.time_to_failure,
            "timestamp": self.timestamp,
        }


@dataclass
class Node:
    id: str
    name: str
    type: str
    datacenter: str = "dc-east"
    tier: str = "standard"
    status: str = NodeStatus.ONLINE.value
    metrics: NodeMetrics = field(default_factory=NodeMetrics)
    environment: str = "production"
    criticality: str = "medium"
    region: str = ""
    tags: List[str] = field(default_factory=list)
    virtual: bool = False
    current_incident: Optional["IncidentInstance"] = None
    last_healed: Optional[int] = None
    personality: Personality = field(default_factory=Personality)
    prediction: Optional[Prediction] = None

    def copy(self) -> "Node":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "datacenter": self.datacenter,
            "tier": self.tier,
            "status": self.status,
            "metrics": self.metrics.to_dict(),
            "environment": self.environment,
            "criticality": self.criticality,
            "region": self.region,
            "tags": list(self.tags),
            "virtual": self.virtual,
            "current_incident": self.current_incident.summary() if self.current_incident else None,
            "last_healed": self.last_healed,
            "personality_type": self.personality.name,
            "prediction": self.prediction.to_dict() if self.prediction else None,
        }


def classify_metrics(metrics: NodeMetrics) -> str:
    """Instantaneous status implied by a metric vector."""
    if (metrics.cpu > 90 or metrics.memory > 90 or metrics.disk_usage > 90
            or metrics.network_latency > 200):
        return NodeStatus.CRITICAL.value
    if (metrics.cpu > 75 or metrics.memory > 75 or metrics.disk_usage > 75
            or metrics.network_latency > 100):
        return NodeStatus.WARNING.value
    return NodeStatus.ONLINE.value


# ─────────────────────────────────────────────────────────────────────
# Application
# ─────────────────────────────────────────────────────────────────────

@dataclass
class HealthRecord:
    timestamp: int
    score: float
    status: str
    node_count: int
    avg_node_health: float
    dependency_penalty: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "score": round(self.score, 2),
            "status": self.status,
            "node_count": self.node_count,
            "avg_node_health": round(self.avg_node_health, 2),
            "dependency_penalty": round(self.dependency_penalty, 2),
        }


@dataclass
class Application:
    name: str
    criticality: str = "medium"
    dependencies: List[str] = field(default_factory=list)
    description: str = ""
    resolved_nodes: Dict[str, List[str]] = field(default_factory=dict)
    last_resolution: Optional[int] = None
    health_history: Deque[HealthRecord] = field(default_factory=lambda: deque(maxlen=100))

    @property
    def thresholds(self) -> HealthThresholds:
        return thresholds_for(self.criticality)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "criticality": self.criticality,
            "dependencies": list(self.dependencies),
            "description": self.description,
            "thresholds": self.thresholds.to_dict(),
            "resolved_nodes": {k: list(v) for k, v in self.resolved_nodes.items()},
            "last_resolution": self.last_resolution,
        }


# ─────────────────────────────────────────────────────────────────────
# Incidents
# ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Phase:
    status: str
    duration_ms: int
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class IncidentScenario:
    name: str
    description: str
    phases: tuple

    @property
    def total_duration(self) -> int:
        return sum(p.duration_ms for p in self.phases)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "phases": [p.to_dict() for p in self.phases],
            "total_duration": self.total_duration,
        }


@dataclass
class IncidentInstance:
    id: str
    node_id: str
    scenario: str
    phases: List[Phase]
    start_time: int
    options: Dict[str, Any] = field(default_factory=dict)
    phase_index: int = 0
    phase_started_at: int = 0
    injected: bool = True
    status: str = "active"  # active, completed, cancelled, superseded
    ended_at: Optional[int] = None

    @property
    def estimated_duration(self) -> int:
        return sum(p.duration_ms for p in self.phases)

    @property
    def current_phase(self) -> Phase:
        return self.phases[self.phase_index]

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def summary(self) -> Dict[str, Any]:
        phase = self.current_phase
        return {
            "id": self.id,
            "scenario": self.scenario,
            "phase_index": self.phase_index,
            "phase_status": phase.status,
            "phase_description": phase.description,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "node_id": self.node_id,
            "scenario": self.scenario,
            "options": dict(self.options),
            "phases": [p.to_dict() for p in self.phases],
            "phase_index": self.phase_index,
            "start_time": self.start_time,
            "phase_started_at": self.phase_started_at,
            "injected": self.injected,
            "status": self.status,
            "ended_at": self.ended_at,
            "estimated_duration": self.estimated_duration,
        }
