"""
Fleetwatch Evolution Engine
===========================
SOURCE OF TRUTH - Advances every node's metrics and status each tick.

PURPOSE:
- Random-walk node metrics, scaled by personality, business hours,
  environment and criticality
- Run the per-node state machine (online / warning / critical / offline)
- Derive advisory failure predictions
- Emit edge-triggered threshold alerts and auto-healing events

FORBIDDEN:
- No touching nodes that carry an active incident (the director owns them)
- No knowledge of applications or topology
- No I/O

Online nodes are reclassified from instantaneous thresholds with no deadband;
a node hovering around a boundary can flip every tick. Warning and critical
nodes only leave their state through the probabilistic exits below.
"""

from __future__ import annotations

import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Any, Optional, Tuple

from simulator.models import Node, NodeMetrics, NodeStatus, Prediction, classify_metrics


@dataclass(frozen=True)
class EvolutionSettings:
    """Tunables for the organic state machine."""
    business_hours: Tuple[int, int] = (9, 17)
    business_load: Tuple[float, float] = (1.4, 1.6)
    off_hours_load: Tuple[float, float] = (0.6, 0.8)
    environment_factors: Dict[str, Tuple[float, float]] = field(default_factory=lambda: {
        "production": (1.0, 1.0),
        "staging": (0.6, 0.7),
        "development": (0.4, 0.5),
        "dr": (0.3, 0.4),
    })
    criticality_factors: Dict[str, float] = field(default_factory=lambda: {
        "critical": 0.8,
        "high": 1.0,
        "medium": 1.2,
        "low": 1.5,
    })
    warning_transition_rate: float = 0.15   # per second
    warning_recovery_share: float = 0.65
    critical_heal_rate: float = 0.2         # per second
    offline_restore_rate: float = 0.05      # per second
    spike_rate: float = 0.01                # per second, scaled by incident proneness
    cpu_alert: float = 85.0
    memory_alert: float = 80.0
    latency_alert: float = 100.0
    healing_actions: Tuple[str, ...] = ("Service restart", "Memory cleanup", "Cache flush")


ENVIRONMENT_ALIASES = {"disaster-recovery": "dr", "prod": "production", "dev": "development"}


@dataclass
class EvolutionResult:
    """What one organic tick produced besides the mutated nodes."""
    timestamp: int
    business_load: float
    in_business_hours: bool
    alerts: List[Dict[str, Any]] = field(default_factory=list)
    healing_events: List[Dict[str, Any]] = field(default_factory=list)
    predictions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "business_load": round(self.business_load, 3),
            "in_business_hours": self.in_business_hours,
            "alerts": list(self.alerts),
            "healing_events": list(self.healing_events),
            "predictions": list(self.predictions),
        }


# ─────────────────────────────────────────────────────────────────────
# Metric helpers (shared with the incident director)
# ─────────────────────────────────────────────────────────────────────

def improve_metrics(metrics: NodeMetrics, rate: float) -> NodeMetrics:
    return NodeMetrics(
        cpu=max(5.0, metrics.cpu - rate * 40),
        memory=max(10.0, metrics.memory - rate * 25),
        network_latency=max(1.0, metrics.network_latency - rate * 80),
        storage_io=max(100.0, metrics.storage_io - rate * 150),
        disk_usage=max(0.0, metrics.disk_usage - rate * 5),
    )


def degrade_metrics(metrics: NodeMetrics, rate: float) -> NodeMetrics:
    degraded = NodeMetrics(
        cpu=metrics.cpu + rate * 50,
        memory=metrics.memory + rate * 30,
        network_latency=metrics.network_latency + rate * 100,
        storage_io=metrics.storage_io + rate * 200,
        disk_usage=metrics.disk_usage + rate * 20,
    )
    degraded.clamp()
    return degraded


class EvolutionEngine:
    """
    Organic node evolution.

    Every random draw goes through `self.rng`, so a seeded engine replays
    the same trajectory for the same sequence of ticks.
    """

    def __init__(self, settings: Optional[EvolutionSettings] = None, rng: Optional[random.Random] = None):
        self.settings = settings or EvolutionSettings()
        self.rng = rng or random.Random()
        # node id -> (status, cpu, memory, latency) as of the previous tick
        self._last_seen: Dict[str, Tuple[str, float, float, float]] = {}
        self.business_load = 1.0

    # ── Load factors ────────────────────────────────────────────────

    def is_business_hours(self, now_ms: int) -> bool:
        moment = datetime.fromtimestamp(now_ms / 1000)
        start, end = self.settings.business_hours
        return moment.weekday() < 5 and start <= moment.hour < end

    def _load_factor(self, in_hours: bool) -> float:
        low, high = self.settings.business_load if in_hours else self.settings.off_hours_load
        return self.rng.uniform(low, high)

    def _environment_factor(self, environment: str) -> float:
        env = ENVIRONMENT_ALIASES.get(environment, environment)
        low, high = self.settings.environment_factors.get(env, (1.0, 1.0))
        return self.rng.uniform(low, high)

    # ── Tick ────────────────────────────────────────────────────────

    def tick(self, nodes: List[Node], delta_ms: int, now_ms: int) -> EvolutionResult:
        """
        Evolve `nodes` in place by `delta_ms`.

        Nodes with an active incident keep the status the director gave them;
        they still get predictions and take part in alert edge detection.
        """
        dt = max(0.0, delta_ms / 1000.0)
        in_hours = self.is_business_hours(now_ms)
        self.business_load = self._load_factor(in_hours)
        result = EvolutionResult(timestamp=now_ms, business_load=self.business_load,
                                 in_business_hours=in_hours)

        for node in nodes:
            if node.virtual:
                continue
            if node.current_incident is None:
                self._evolve(node, dt, now_ms, result)
            node.metrics.clamp()
            node.prediction = self.predict(node, now_ms, in_hours)
            result.predictions.append({"node_id": node.id, "node_name": node.name,
                                       **node.prediction.to_dict()})

        result.alerts.extend(self._collect_alerts(nodes, now_ms))
        return result

    def _evolve(self, node: Node, dt: float, now_ms: int, result: EvolutionResult):
        status = node.status
        if status == NodeStatus.ONLINE.value:
            self._walk(node, dt)
            node.status = classify_metrics(node.metrics)
        elif status == NodeStatus.WARNING.value:
            self._walk(node, dt)
            if self.rng.random() < min(1.0, self.settings.warning_transition_rate * dt):
                if self.rng.random() < self.settings.warning_recovery_share:
                    self._recover(node)
                else:
                    node.status = NodeStatus.CRITICAL.value
        elif status == NodeStatus.CRITICAL.value:
            self._walk(node, dt)
            if self.rng.random() < min(1.0, self.settings.critical_heal_rate * dt):
                result.healing_events.append(self._heal(node, now_ms))
        elif status == NodeStatus.OFFLINE.value:
            if self.rng.random() < min(1.0, self.settings.offline_restore_rate * dt):
                node.status = NodeStatus.ONLINE.value
                node.metrics = NodeMetrics(
                    cpu=self.rng.uniform(15, 35),
                    memory=self.rng.uniform(25, 45),
                    network_latency=self.rng.uniform(10, 30),
                    storage_io=node.metrics.storage_io,
                    disk_usage=node.metrics.disk_usage,
                )
        # maintenance is sticky: only an incident arc moves a node out of it

    def _volatility(self, node: Node, dt: float) -> float:
        p = node.personality
        load = max(0.1, 1.0 + (self.business_load - 1.0) * p.load_sensitivity)
        crit = self.settings.criticality_factors.get(node.criticality, 1.0)
        return p.volatility * dt * load * self._environment_factor(node.environment) * crit

    def _walk(self, node: Node, dt: float):
        vol = self._volatility(node, dt)
        m = node.metrics
        u = self.rng.random
        deg = node.personality.degradation_rate
        m.cpu += (u() - 0.5 + 0.05 * deg) * 20 * vol
        m.memory += (u() - 0.5 + 0.02 * (deg - 1.0)) * 10 * vol
        m.network_latency += (u() - 0.5) * 30 * vol
        m.storage_io += (u() - 0.5) * 800 * vol
        m.disk_usage += (u() - 0.5) * 2 * vol

        if self.rng.random() < min(1.0, self.settings.spike_rate * node.personality.incident_proneness * dt):
            m.cpu += self.rng.uniform(15, 30)
            m.network_latency += self.rng.uniform(50, 150)
        m.clamp()

    def _recover(self, node: Node):
        rate = node.personality.recovery_rate
        m = node.metrics
        m.cpu -= 15 * rate
        m.memory -= 12 * rate
        m.network_latency -= 20 * rate
        m.disk_usage -= 5 * rate
        m.clamp()
        node.status = NodeStatus.ONLINE.value

    def _heal(self, node: Node, now_ms: int) -> Dict[str, Any]:
        m = node.metrics
        before = m.to_dict()
        m.cpu *= 0.5
        m.memory *= 0.6
        m.network_latency *= 0.7
        m.disk_usage *= 0.7
        m.clamp()
        node.status = NodeStatus.ONLINE.value
        node.last_healed = now_ms
        return {
            "id": f"heal-{uuid.UUID(int=self.rng.getrandbits(128)).hex[:12]}",
            "node_id": node.id,
            "node_name": node.name,
            "timestamp": now_ms,
            "actions": list(self.settings.healing_actions),
            "metrics_before": before,
            "metrics_after": m.to_dict(),
        }

    # ── Predictions ─────────────────────────────────────────────────

    def predict(self, node: Node, now_ms: int, in_hours: Optional[bool] = None) -> Prediction:
        if in_hours is None:
            in_hours = self.is_business_hours(now_ms)
        m = node.metrics
        risk = 0.0
        if m.cpu > 80:
            risk += 0.3 * (m.cpu - 80) / 20
        if m.memory > 80:
            risk += 0.4 * (m.memory - 80) / 20
        if m.disk_usage > 80:
            risk += 0.2 * (m.disk_usage - 80) / 20
        if m.network_latency > 100:
            risk += 0.1 * min(1.0, (m.network_latency - 100) / 200)

        if node.status == NodeStatus.WARNING.value:
            risk += 0.3
        elif node.status == NodeStatus.CRITICAL.value:
            risk += 0.6

        if in_hours and node.environment == "production":
            risk += 0.1
        if node.criticality == "critical":
            risk += 0.1
        if node.last_healed is not None and now_ms - node.last_healed < 600_000:
            risk -= 0.2

        risk = max(0.0, min(1.0, risk))
        confidence = 0.6 + 0.4 * self.rng.random()
        time_to_failure = int(30_000 + self.rng.random() * 600_000) if risk > 0.6 else None
        return Prediction(risk=risk, confidence=confidence, time_to_failure=time_to_failure,
                          timestamp=now_ms)

    # ── Alerts ──────────────────────────────────────────────────────

    def _collect_alerts(self, nodes: List[Node], now_ms: int) -> List[Dict[str, Any]]:
        s = self.settings
        alerts = []
        for node in nodes:
            if node.virtual:
                continue
            m = node.metrics
            prev = self._last_seen.get(node.id)
            self._last_seen[node.id] = (node.status, m.cpu, m.memory, m.network_latency)
            if prev is None:
                continue
            old_status, old_cpu, old_mem, old_lat = prev

            if m.cpu > s.cpu_alert >= old_cpu:
                alerts.append(self._alert(node, "cpu_threshold", "critical" if m.cpu > 90 else "warning",
                                          f"CPU usage crossed {s.cpu_alert:.0f}%", m.cpu, s.cpu_alert, now_ms))
            if m.memory > s.memory_alert >= old_mem:
                alerts.append(self._alert(node, "memory_threshold", "critical" if m.memory > 90 else "warning",
                                          f"Memory usage crossed {s.memory_alert:.0f}%", m.memory,
                                          s.memory_alert, now_ms))
            if m.network_latency > s.latency_alert >= old_lat:
                alerts.append(self._alert(node, "latency_threshold",
                                          "critical" if m.network_latency > 200 else "warning",
                                          f"Network latency crossed {s.latency_alert:.0f}ms",
                                          m.network_latency, s.latency_alert, now_ms))

            if node.status != old_status:
                alerts.append(self._status_alert(node, old_status, now_ms))
        return alerts

    def _status_alert(self, node: Node, old_status: str, now_ms: int) -> Dict[str, Any]:
        new_status = node.status
        message = f"{node.name} changed from {old_status} to {new_status}"
        if new_status == NodeStatus.ONLINE.value:
            alert = self._alert(node, "recovery", "info", message, None, None, now_ms)
        elif new_status in (NodeStatus.CRITICAL.value, NodeStatus.OFFLINE.value):
            alert = self._alert(node, "degradation", "critical", message, None, None, now_ms)
        else:
            alert = self._alert(node, "status_change", "warning", message, None, None, now_ms)
        alert["from"] = old_status
        alert["to"] = new_status
        if node.current_incident is not None:
            alert["incident_id"] = node.current_incident.id
        return alert

    def _alert(self, node, alert_type, severity, message, value, threshold, now_ms) -> Dict[str, Any]:
        return {
            "id": f"alert-{now_ms}-{node.id}-{alert_type}",
            "node_id": node.id,
            "node_name": node.name,
            "datacenter": node.datacenter,
            "type": alert_type,
            "severity": severity,
            "message": message,
            "value": round(value, 2) if value is not None else None,
            "threshold": threshold,
            "timestamp": now_ms,
        }

    def forget(self, node_id: str):
        """Drop the edge-trigger state kept for a node that left the fleet."""
        self._last_seen.pop(node_id, None)

    # ── Fleet views ─────────────────────────────────────────────────

    @staticmethod
    def fleet_health(nodes: List[Node], now_ms: int) -> Dict[str, Any]:
        real = [n for n in nodes if not n.virtual]
        total = len(real)
        counts = {s.value: 0 for s in NodeStatus}
        for node in real:
            if node.status in counts:
                counts[node.status] += 1

        def pct(status: str) -> float:
            return round(counts[status] / total * 100, 1) if total else 0.0

        return {
            "healthy_pct": pct("online"),
            "warning_pct": pct("warning"),
            "critical_pct": pct("critical"),
            "offline_pct": pct("offline"),
            "maintenance_pct": pct("maintenance"),
            "total_servers": total,
            "timestamp": now_ms,
        }

    @staticmethod
    def datacenter_anomalies(nodes: List[Node], now_ms: int) -> List[Dict[str, Any]]:
        """Datacenter-level patterns: resource pressure, incident clustering, risk spikes."""
        by_dc: Dict[str, List[Node]] = {}
        for node in nodes:
            if not node.virtual:
                by_dc.setdefault(node.datacenter, []).append(node)

        rank = {"medium": 1, "high": 2, "critical": 3}
        anomalies = []
        for dc, members in sorted(by_dc.items()):
            count = len(members)
            avg_cpu = sum(n.metrics.cpu for n in members) / count
            avg_mem = sum(n.metrics.memory for n in members) / count
            avg_lat = sum(n.metrics.network_latency for n in members) / count
            with_incident = sum(1 for n in members if n.current_incident is not None
                                or n.status in ("critical", "offline"))
            high_risk = sum(1 for n in members if n.prediction and n.prediction.risk > 0.7)

            found = []
            if avg_cpu > 80:
                found.append(("high_cpu_usage", "high", round(avg_cpu, 1)))
            if avg_mem > 85:
                found.append(("high_memory_usage", "high", round(avg_mem, 1)))
            if avg_lat > 200:
                found.append(("network_degradation", "medium", round(avg_lat, 1)))
            if with_incident > count * 0.3:
                found.append(("incident_clustering", "critical", with_incident))
            if high_risk > count * 0.4:
                found.append(("failure_risk_spike", "high", high_risk))

            if found:
                anomalies.append({
                    "datacenter": dc,
                    "timestamp": now_ms,
                    "node_count": count,
                    "anomalies": [{"type": t, "severity": sev, "value": v} for t, sev, v in found],
                    "severity": max((sev for _, sev, _ in found), key=lambda s: rank[s]),
                })
        return anomalies
