#!/usr/bin/env python3
"""Root cause analyzer: failure patterns, z-score anomalies, periodicity, ranking"""

import os
import sys

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

import pytest

from agents.rca_agent import (
    RootCauseAnalyzer,
    RcaEvent,
    Deployment,
    HypothesisType,
    detect_cascade,
    detect_resource_exhaustion,
    detect_network_partition,
    detect_database_bottleneck,
    detect_thundering_herd,
    events_from_alerts,
    events_from_timeline,
)

NOW = 1_700_000_000_000


@pytest.fixture
def analyzer():
    return RootCauseAnalyzer(clock=lambda: NOW)


def _event(offset_ms, type_, service, zone="dc-east", value=None):
    return RcaEvent(timestamp=NOW - 600_000 + offset_ms, type=type_, service=service, zone=zone, value=value)


def test_cascade_needs_more_than_two_related_pairs():
    two = [_event(0, "timeout", "a"), _event(1000, "timeout", "b")]
    assert detect_cascade(two) is None

    three = two + [_event(2000, "timeout", "c")]
    result = detect_cascade(three)
    assert result["related"] == 3
    assert result["services"] == ["a", "b", "c"]


def test_resource_exhaustion_requires_strictly_increasing_series():
    rising = [_event(i * 1000, "high_cpu", "api", value=v) for i, v in enumerate((70, 80, 90))]
    assert detect_resource_exhaustion(rising)["resources"] == ["high_cpu"]

    flat = [_event(i * 1000, "high_cpu", "api", value=v) for i, v in enumerate((70, 70, 90))]
    assert detect_resource_exhaustion(flat) is None


def test_network_partition_spans_zones():
    same_zone = [_event(0, "server_offline", "a"), _event(1000, "connection_timeout", "b")]
    assert detect_network_partition(same_zone) is None

    split = [_event(0, "server_offline", "a", zone="dc-east"),
             _event(1000, "connection_timeout", "b", zone="dc-west")]
    assert detect_network_partition(split)["segments"] == ["dc-east", "dc-west"]


def test_database_bottleneck():
    events = [_event(0, "slow_query", "order-db"),
              _event(1000, "timeout", "order-api"),
              _event(2000, "high_latency", "user-api")]
    result = detect_database_bottleneck(events)
    assert result["bottleneck"] == "order-db"
    assert result["impacted_services"] == 2


def test_thundering_herd_needs_a_burst():
    burst = [_event(i, "timeout", "api") for i in range(11)]
    assert detect_thundering_herd(burst)["burst_size"] == 11
    assert detect_thundering_herd(burst[:10]) is None


def test_deployment_hypothesis_ranks_by_weight(analyzer):
    deploy_at = NOW - 600_000
    events = [_event(1000 + i * 1000, "timeout", f"svc-{i}") for i in range(4)]
    hypotheses = analyzer.analyze(events, deployments=[Deployment("v2.3.1", deploy_at)])

    ids = [h.id for h in hypotheses]
    assert ids[:2] == ["pattern-deployment_related", "pattern-cascade"]
    deployment = hypotheses[0]
    assert deployment.confidence == 0.95
    assert deployment.priority == pytest.approx(0.95 * 0.95)
    assert deployment.remediation["immediate"] == "Rollback deployment: v2.3.1"


def test_stale_deployment_is_ignored(analyzer):
    old = Deployment("v1", NOW - 2 * 3_600_000)
    events = [_event(i * 1000, "timeout", "a") for i in range(3)]
    assert "deployment_related" not in analyzer.detect_patterns(events, [old])


def test_zscore_anomaly(analyzer):
    series = [50.0, 51.0, 49.0, 50.5, 49.5, 50.0, 51.0, 49.0, 50.0, 50.5, 95.0]
    anomalies = analyzer.detect_anomalies({"cpu": series})
    assert len(anomalies) == 1
    assert anomalies[0]["zscore"] > 3

    hypotheses = analyzer.analyze([], metrics={"cpu": series})
    assert hypotheses[0].type == HypothesisType.ANOMALY
    assert hypotheses[0].remediation["immediate"] == "Check for runaway processes"


def test_anomaly_needs_enough_varied_samples(analyzer):
    assert analyzer.detect_anomalies({"cpu": [50.0] * 5 + [99.0]}) == []
    assert analyzer.detect_anomalies({"cpu": [50.0] * 12 + [99.0]}) == []


def test_periodic_events_yield_correlation(analyzer):
    events = [_event(i * 300_000, "high_cpu", "report-generator") for i in range(6)]
    hypotheses = analyzer.analyze(events)
    periodic = [h for h in hypotheses if h.type == HypothesisType.CORRELATION]
    assert len(periodic) == 1
    assert periodic[0].title == "Periodic pattern (every 5 min)"
    assert periodic[0].details["interval_ms"] == 300_000


def test_hypotheses_sorted_by_priority(analyzer):
    events = [_event(i * 1000, "timeout", f"svc-{i}") for i in range(12)]
    series = [10.0, 11.0, 9.0, 10.0, 10.5, 9.5, 10.0, 11.0, 9.0, 10.0, 60.0]
    hypotheses = analyzer.analyze(events, metrics={"latency": series})
    priorities = [h.priority for h in hypotheses]
    assert priorities == sorted(priorities, reverse=True)
    assert all(set(h.remediation) == {"immediate", "short_term", "long_term"} for h in hypotheses)


def test_analyze_accepts_event_dicts(analyzer):
    events = [e.to_dict() for e in (_event(0, "timeout", "a"), _event(1, "timeout", "b"), _event(2, "timeout", "c"))]
    assert analyzer.analyze(events)[0].id == "pattern-cascade"


def test_alert_translation():
    alerts = [
        {"type": "latency_threshold", "node_id": "db1", "node_name": "order-db-01",
         "datacenter": "dc-east", "value": 150.0, "timestamp": NOW, "severity": "warning"},
        {"type": "degradation", "to": "offline", "node_id": "api1", "node_name": "order-api-01",
         "datacenter": "dc-west", "timestamp": NOW, "severity": "critical"},
        {"type": "recovery", "node_id": "api1", "node_name": "order-api-01", "timestamp": NOW},
    ]
    events = events_from_alerts(alerts, {"db1": "db", "api1": "api"})
    assert [e.type for e in events] == ["slow_query", "server_offline"]
    assert events[1].description == "order-api-01 unreachable"


def test_timeline_translation_keeps_only_rising_moves():
    timeline = [{
        "timestamp": NOW,
        "changes": [
            {"type": "metrics_change", "node_id": "a", "node_name": "api-01",
             "metrics": {"cpu": {"from": 60.0, "to": 92.0}, "memory": {"from": 90.0, "to": 70.0}}},
            {"type": "status_change", "node_id": "a", "node_name": "api-01", "from": "online", "to": "warning"},
        ],
    }]
    events = events_from_timeline(timeline, {"a": "dc-east"})
    assert [(e.type, e.value, e.zone) for e in events] == [("high_cpu", 92.0, "dc-east")]
