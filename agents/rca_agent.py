"""
Fleetwatch Root Cause Analyzer
Matches the recent event stream against known failure modes and ranks hypotheses.

This agent is stateless - receives an event window (plus optional deployments and
metric series), returns ranked hypotheses with remediation text.

It produces "probable causes, not formal proof": every hypothesis carries the
evidence that triggered it and a confidence.
"""

from __future__ import annotations

import math
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Any, Optional, Callable, Iterable


class HypothesisType(Enum):
    PATTERN = "pattern"
    ANOMALY = "anomaly"
    CORRELATION = "correlation"


@dataclass
class RcaEvent:
    timestamp: int
    type: str
    service: str
    zone: str = "default"
    value: Optional[float] = None
    severity: str = "warning"
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "type": self.type,
            "service": self.service,
            "zone": self.zone,
            "value": self.value,
            "severity": self.severity,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RcaEvent":
        return cls(
            timestamp=int(data["timestamp"]),
            type=data["type"],
            service=data.get("service", "unknown"),
            zone=data.get("zone") or "default",
            value=data.get("value"),
            severity=data.get("severity", "warning"),
            description=data.get("description", ""),
        )


@dataclass
class Deployment:
    name: str
    timestamp: int


@dataclass
class Hypothesis:
    """A ranked root-cause candidate."""
    id: str
    type: HypothesisType
    title: str
    confidence: float
    evidence: List[str] = field(default_factory=list)
    remediation: Dict[str, str] = field(default_factory=dict)
    priority: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "confidence": round(self.confidence, 3),
            "evidence": list(self.evidence),
            "remediation": dict(self.remediation),
            "priority": round(self.priority, 4),
            "details": self.details,
        }


def _remedy(immediate: str, short_term: str, long_term: str) -> Dict[str, str]:
    return {"immediate": immediate, "short_term": short_term, "long_term": long_term}


# ─────────────────────────────────────────────────────────────────────
# Pattern detectors
# ─────────────────────────────────────────────────────────────────────

CASCADE_WINDOW_MS = 5 * 60 * 1000
DEPLOYMENT_LOOKBACK_MS = 60 * 60 * 1000
HERD_BUCKET_MS = 10_000
RESOURCE_TYPES = ("high_cpu", "memory_pressure", "disk_full")
CONNECTIVITY_TYPES = ("connection_timeout", "server_offline")


def detect_cascade(events: List[RcaEvent], **_) -> Optional[Dict[str, Any]]:
    related = []
    for i in range(len(events) - 1):
        for j in range(i + 1, len(events)):
            a, b = events[i], events[j]
            if abs(a.timestamp - b.timestamp) < CASCADE_WINDOW_MS and a.service != b.service:
                related.append((a.service, b.service))
    if len(related) > 2:
        return {"confidence": 0.9, "related": len(related),
                "services": sorted({s for pair in related for s in pair})}
    return None


def detect_resource_exhaustion(events: List[RcaEvent], **_) -> Optional[Dict[str, Any]]:
    by_type: Dict[str, List[RcaEvent]] = {}
    for e in events:
        if e.type in RESOURCE_TYPES and e.value is not None:
            by_type.setdefault(e.type, []).append(e)

    trending = []
    for resource, series in by_type.items():
        if len(series) < 2:
            continue
        series.sort(key=lambda e: e.timestamp)
        if all(series[i].value > series[i - 1].value for i in range(1, len(series))):
            trending.append(resource)

    if trending:
        return {"confidence": 0.85, "trend": "increasing", "resources": sorted(trending)}
    return None


def detect_deployment_related(events: List[RcaEvent], deployments: Optional[List[Deployment]] = None,
                              now: Optional[int] = None, **_) -> Optional[Dict[str, Any]]:
    if not deployments or not events:
        return None
    now = int(time.time() * 1000) if now is None else now
    recent = [d for d in deployments if now - d.timestamp < DEPLOYMENT_LOOKBACK_MS]
    if not recent:
        return None
    latest = max(recent, key=lambda d: d.timestamp)
    after = [e for e in events if e.timestamp > latest.timestamp]
    if len(after) > len(events) * 0.7:
        return {"confidence": 0.95, "deployment": latest.name,
                "affected_services": sorted({e.service for e in after})}
    return None


def detect_network_partition(events: List[RcaEvent], **_) -> Optional[Dict[str, Any]]:
    network = [e for e in events
               if e.type in CONNECTIVITY_TYPES or "unreachable" in (e.description or "")]
    if len(network) < 2:
        return None
    zones = sorted({e.zone or "default" for e in network})
    if len(zones) > 1:
        return {"confidence": 0.75, "segments": zones, "event_count": len(network)}
    return None


def detect_database_bottleneck(events: List[RcaEvent], **_) -> Optional[Dict[str, Any]]:
    db_events = [e for e in events
                 if "db" in e.service or e.type in ("slow_query", "connection_pool_exhausted")]
    app_events = [e for e in events if e.type in ("timeout", "high_latency")]
    if db_events and len(app_events) > len(db_events):
        return {"confidence": 0.8, "db_events": len(db_events),
                "impacted_services": len(app_events), "bottleneck": db_events[0].service}
    return None


def detect_thundering_herd(events: List[RcaEvent], **_) -> Optional[Dict[str, Any]]:
    buckets = Counter((e.timestamp // HERD_BUCKET_MS, e.type) for e in events)
    bursts = [count for count in buckets.values() if count > 10]
    if bursts:
        return {"confidence": 0.7, "burst_size": max(bursts), "pattern": "synchronized_requests"}
    return None


@dataclass(frozen=True)
class FailurePattern:
    key: str
    name: str
    description: str
    detect: Callable[..., Optional[Dict[str, Any]]]
    weight: float


FAILURE_PATTERNS: Dict[str, FailurePattern] = {
    p.key: p for p in (
        FailurePattern("cascade", "Cascading Failure",
                       "Multiple dependent services failing in sequence", detect_cascade, 1.0),
        FailurePattern("deployment_related", "Deployment Issue",
                       "Problems started after recent deployment", detect_deployment_related, 0.95),
        FailurePattern("database_bottleneck", "Database Bottleneck",
                       "Database performance causing system-wide issues", detect_database_bottleneck, 0.9),
        FailurePattern("network_partition", "Network Partition",
                       "Network connectivity issues between services", detect_network_partition, 0.85),
        FailurePattern("resource_exhaustion", "Resource Exhaustion",
                       "Progressive degradation due to resource limits", detect_resource_exhaustion, 0.8),
        FailurePattern("thundering_herd", "Thundering Herd",
                       "Synchronized retry storm overwhelming system", detect_thundering_herd, 0.75),
    )
}


def pattern_evidence(key: str, result: Dict[str, Any]) -> List[str]:
    if key == "cascade":
        return [f"{result.get('related', 0)} related failures detected",
                "Services failed in sequence within 5 minutes",
                "Dependency chain identified"]
    if key == "resource_exhaustion":
        return [f"Resources trending {result.get('trend')}",
                f"Affected: {', '.join(result.get('resources', []))}",
                "Progressive degradation observed"]
    if key == "deployment_related":
        return [f"Deployment: {result.get('deployment') or 'Recent'}",
                f"{len(result.get('affected_services', []))} services affected",
                "Issues started post-deployment"]
    if key == "network_partition":
        return [f"{len(result.get('segments', []))} network segments affected",
                f"{result.get('event_count')} connectivity events",
                "Cross-zone communication failures"]
    if key == "database_bottleneck":
        return [f"Database: {result.get('bottleneck')}",
                f"{result.get('impacted_services')} services impacted",
                "Query performance degradation"]
    if key == "thundering_herd":
        return [f"Burst size: {result.get('burst_size')} events",
                "Synchronized retry pattern detected",
                "Request amplification observed"]
    return ["Pattern detected"]


def pattern_remediation(key: str, result: Dict[str, Any]) -> Dict[str, str]:
    if key == "cascade":
        return _remedy("Implement circuit breakers on critical paths",
                       "Add request timeouts and retries with backoff",
                       "Review service dependencies and add bulkheads")
    if key == "resource_exhaustion":
        resources = result.get("resources") or ["resources"]
        return _remedy(f"Scale up {resources[0]}",
                       "Identify and optimize resource-heavy operations",
                       "Implement auto-scaling policies")
    if key == "deployment_related":
        return _remedy(f"Rollback deployment: {result.get('deployment')}",
                       "Review deployment changes and test in staging",
                       "Implement canary deployments and better testing")
    if key == "network_partition":
        return _remedy("Check network connectivity between zones",
                       "Implement retry logic with exponential backoff",
                       "Add redundant network paths and health checks")
    if key == "database_bottleneck":
        return _remedy("Increase connection pool size",
                       "Optimize slow queries and add caching",
                       "Consider read replicas or sharding")
    if key == "thundering_herd":
        return _remedy("Add jitter to retry timings",
                       "Implement request coalescing",
                       "Add cache warming and request deduplication")
    return _remedy("Investigate the detected pattern",
                   "Implement monitoring for this pattern",
                   "Design system to prevent recurrence")


ANOMALY_REMEDIATION = {
    "cpu": _remedy("Check for runaway processes",
                   "Profile CPU usage and optimize hot paths",
                   "Implement horizontal scaling"),
    "memory": _remedy("Force garbage collection or restart",
                      "Find and fix memory leaks",
                      "Optimize memory usage patterns"),
    "latency": _remedy("Check database and network health",
                       "Add caching for frequent queries",
                       "Optimize service architecture"),
}


class RootCauseAnalyzer:
    """
    Hypothesis ranker over an event window.

    Three sources of hypotheses:
    - known failure patterns (cascade, resource exhaustion, deployment, ...)
    - statistical anomalies in metric series (|z| > 3 against the trailing window)
    - periodicity in event inter-arrival times (likely a scheduled job)

    Ranked by priority, highest first.
    """

    Z_THRESHOLD = 3.0
    MIN_SAMPLES = 10

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or (lambda: int(time.time() * 1000))

    def analyze(
        self,
        events: Iterable[Any],
        deployments: Optional[List[Deployment]] = None,
        metrics: Optional[Dict[str, List[float]]] = None,
    ) -> List[Hypothesis]:
        """
        Generate ranked hypotheses.

        Args:
            events: RcaEvent objects (or dicts in the same shape)
            deployments: Recent deployments, newest relevant within an hour
            metrics: Metric name -> chronological series for anomaly detection
        """
        window = sorted(
            (e if isinstance(e, RcaEvent) else RcaEvent.from_dict(e) for e in events),
            key=lambda e: e.timestamp,
        )
        hypotheses = []
        hypotheses.extend(self._pattern_hypotheses(window, deployments))
        hypotheses.extend(self._anomaly_hypotheses(metrics or {}))
        hypotheses.extend(self._correlation_hypotheses(window))
        hypotheses.sort(key=lambda h: h.priority, reverse=True)
        return hypotheses

    def detect_patterns(self, events: List[RcaEvent],
                        deployments: Optional[List[Deployment]] = None) -> Dict[str, Dict[str, Any]]:
        now = self._clock()
        found = {}
        for key, pattern in FAILURE_PATTERNS.items():
            result = pattern.detect(events, deployments=deployments, now=now)
            if result:
                found[key] = result
        return found

    def _pattern_hypotheses(self, events, deployments) -> List[Hypothesis]:
        hypotheses = []
        for key, result in self.detect_patterns(events, deployments).items():
            pattern = FAILURE_PATTERNS[key]
            hypotheses.append(Hypothesis(
                id=f"pattern-{key}",
                type=HypothesisType.PATTERN,
                title=pattern.name,
                confidence=result["confidence"],
                evidence=pattern_evidence(key, result),
                remediation=pattern_remediation(key, result),
                priority=result["confidence"] * pattern.weight,
                details={k: v for k, v in result.items() if k != "confidence"},
            ))
        return hypotheses

    # ── Statistical anomalies ───────────────────────────────────────

    def detect_anomalies(self, metrics: Dict[str, List[float]]) -> List[Dict[str, Any]]:
        anomalies = []
        for name, values in metrics.items():
            if not isinstance(values, (list, tuple)) or len(values) < self.MIN_SAMPLES:
                continue
            baseline, recent = values[:-1], values[-1]
            mean = sum(baseline) / len(baseline)
            std = math.sqrt(sum((v - mean) ** 2 for v in baseline) / len(baseline))
            if std == 0:
                continue
            z = abs(recent - mean) / std
            if z > self.Z_THRESHOLD:
                anomalies.append({
                    "metric": name,
                    "zscore": z,
                    "confidence": min(z / 10, 0.99),
                    "severity": z / 3,
                    "evidence": [
                        f"Current: {recent:.2f}",
                        f"Expected: {mean:.2f} ± {std:.2f}",
                        f"Deviation: {z:.1f} standard deviations",
                    ],
                })
        return anomalies

    def _anomaly_hypotheses(self, metrics) -> List[Hypothesis]:
        hypotheses = []
        for anomaly in self.detect_anomalies(metrics):
            metric = anomaly["metric"]
            remediation = next(
                (r for key, r in ANOMALY_REMEDIATION.items() if key in metric.lower()),
                _remedy(f"Investigate {metric} anomaly", "Add monitoring and alerting",
                        "Establish baseline and thresholds"),
            )
            hypotheses.append(Hypothesis(
                id=f"anomaly-{metric}",
                type=HypothesisType.ANOMALY,
                title=f"Anomaly in {metric}",
                confidence=anomaly["confidence"],
                evidence=anomaly["evidence"],
                remediation=dict(remediation),
                priority=anomaly["confidence"] * min(anomaly["severity"], 2.0),
                details={"zscore": round(anomaly["zscore"], 2)},
            ))
        return hypotheses

    # ── Periodicity ─────────────────────────────────────────────────

    def find_time_correlations(self, events: List[RcaEvent]) -> List[Dict[str, Any]]:
        if len(events) < 2:
            return []
        intervals: Counter = Counter()
        for prev, cur in zip(events, events[1:]):
            bucket = round((cur.timestamp - prev.timestamp) / 60000) * 60000
            if bucket > 0:
                intervals[bucket] += 1
        if not intervals:
            return []

        interval, count = intervals.most_common(1)[0]
        if count <= 3:
            return []
        minutes = round(interval / 60000)
        return [{
            "id": "periodic",
            "title": f"Periodic pattern (every {minutes} min)",
            "confidence": min(count / 10, 0.9),
            "interval_ms": interval,
            "evidence": [
                f"Pattern repeats {count} times",
                f"Interval: {minutes} minutes",
                "Likely scheduled job or batch process",
            ],
            "remediation": _remedy("Check cron jobs and scheduled tasks",
                                   "Stagger scheduled operations",
                                   "Implement queue-based processing"),
        }]

    def _correlation_hypotheses(self, events) -> List[Hypothesis]:
        return [
            Hypothesis(
                id=f"time-{c['id']}",
                type=HypothesisType.CORRELATION,
                title=c["title"],
                confidence=c["confidence"],
                evidence=c["evidence"],
                remediation=c["remediation"],
                priority=c["confidence"] * 0.8,
                details={"interval_ms": c["interval_ms"]},
            )
            for c in self.find_time_correlations(events)
        ]


# ─────────────────────────────────────────────────────────────────────
# Event extraction from simulation output
# ─────────────────────────────────────────────────────────────────────

SCENARIO_EVENT_TYPES = {
    "memory_exhaustion": "memory_pressure",
    "disk_full": "disk_full",
    "network_storm": "connection_timeout",
    "cpu_thermal": "high_cpu",
    "dependency_cascade": "timeout",
}


def events_from_alerts(alerts: Iterable[Dict[str, Any]], node_types: Optional[Dict[str, str]] = None
                       ) -> List[RcaEvent]:
    """Translate engine alerts into analyzer events."""
    node_types = node_types or {}
    events = []
    for alert in alerts:
        kind = alert.get("type")
        is_db = node_types.get(alert.get("node_id")) == "db"
        if kind == "cpu_threshold":
            event_type = "high_cpu"
        elif kind == "memory_threshold":
            event_type = "memory_pressure"
        elif kind == "latency_threshold":
            event_type = "slow_query" if is_db else "high_latency"
        elif kind == "degradation" and alert.get("to") == "offline":
            event_type = "server_offline"
        elif kind == "degradation":
            event_type = "timeout"
        else:
            continue
        description = alert.get("message", "")
        if event_type == "server_offline":
            description = f"{alert.get('node_name')} unreachable"
        events.append(RcaEvent(
            timestamp=alert["timestamp"],
            type=event_type,
            service=alert.get("node_name", "unknown"),
            zone=alert.get("datacenter") or "default",
            value=alert.get("value"),
            severity=alert.get("severity", "warning"),
            description=description,
        ))
    return events


def events_from_incidents(incidents: Iterable[Dict[str, Any]], zones: Optional[Dict[str, str]] = None,
                          names: Optional[Dict[str, str]] = None) -> List[RcaEvent]:
    """One event per injected incident, stamped at injection time."""
    zones = zones or {}
    names = names or {}
    events = []
    for incident in incidents:
        node_id = incident["node_id"]
        events.append(RcaEvent(
            timestamp=incident["start_time"],
            type=SCENARIO_EVENT_TYPES.get(incident["scenario"], "incident"),
            service=names.get(node_id, node_id),
            zone=zones.get(node_id, "default"),
            severity="critical",
            description=f"Injected {incident['scenario']} ({incident['status']})",
        ))
    return events


def events_from_timeline(timeline: Iterable[Dict[str, Any]], zones: Optional[Dict[str, str]] = None
                         ) -> List[RcaEvent]:
    """Significant metric moves from history deltas."""
    zones = zones or {}
    events = []
    for entry in timeline:
        for change in entry.get("changes", []):
            if change.get("type") != "metrics_change":
                continue
            metrics = change.get("metrics", {})
            zone = zones.get(change["node_id"], "default")
            for key, event_type, floor in (("cpu", "high_cpu", 80), ("memory", "memory_pressure", 80),
                                           ("network_latency", "high_latency", 100)):
                move = metrics.get(key)
                if move and move["to"] > move["from"] and move["to"] > floor:
                    events.append(RcaEvent(
                        timestamp=entry["timestamp"],
                        type=event_type,
                        service=change.get("node_name", change["node_id"]),
                        zone=zone,
                        value=move["to"],
                        description=f"{key} rose from {move['from']} to {move['to']}",
                    ))
    return events
