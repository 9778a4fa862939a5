#!/usr/bin/env python3
"""Application health roll-up: node scores, dependency penalties and cycles"""

import os
import sys

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

import pytest

from simulator.errors import UnknownApplicationError
from simulator.models import Application, Node, NodeMetrics
from topology.discovery import (
    DiscoveryRegistry,
    DiscoveryRule,
    ServiceDiscoveryResolver,
    ServiceMetadata,
    MatcherSpec,
    MatcherKind,
)
from topology.graph import TopologyGraph
from topology.health import HealthAggregator, node_health_score

NOW = 1_700_000_000_000


def _node(node_id, name, node_type="api", status="online", cpu=30.0, memory=40.0, latency=20.0):
    return Node(
        id=node_id,
        name=name,
        type=node_type,
        status=status,
        metrics=NodeMetrics(cpu=cpu, memory=memory, network_latency=latency),
    )


def _aggregator(apps, nodes, registry=None):
    graph = TopologyGraph(apps)
    resolver = ServiceDiscoveryResolver(registry or DiscoveryRegistry())
    return HealthAggregator(graph, resolver, lambda: list(nodes), clock=lambda: NOW)


def test_node_score_penalises_hot_metrics():
    assert node_health_score(_node("a", "a")) == 100.0
    hot = _node("b", "b", status="critical", cpu=95, memory=95)
    assert node_health_score(hot) == pytest.approx(5.0)
    dead = _node("c", "c", status="offline", cpu=100, memory=100, latency=500)
    assert node_health_score(dead) == 0.0


def test_overloaded_dependency_drives_application_down():
    apps = [Application("shop", "medium", ["shop-db"])]
    nodes = [_node("db1", "shop-db-01", "db", status="critical", cpu=95, memory=95)]
    result = _aggregator(apps, nodes).compute_application_health("shop")

    assert result.score <= 20
    assert result.status in ("critical", "failure")
    assert result.node_details["critical"] == 1
    assert result.resolved_node_refs == ["db1"]


def test_healthy_application():
    apps = [Application("shop", "critical", ["shop-db", "shop-api"])]
    nodes = [_node("db1", "shop-db-01", "db"), _node("api1", "shop-api-01")]
    result = _aggregator(apps, nodes).compute_application_health("shop")

    assert result.score == 100.0
    assert result.status == "healthy"
    assert result.reason == "All systems operational"
    assert result.node_details["healthy"] == 2


def test_thresholds_follow_criticality():
    nodes = [_node("w", "shop-api-01", status="warning")]
    critical_app = _aggregator([Application("shop", "critical", ["shop-api"])], nodes)
    low_app = _aggregator([Application("shop", "low", ["shop-api"])], nodes)

    # a single warning node scores 60
    assert critical_app.compute_application_health("shop").status == "critical"
    assert low_app.compute_application_health("shop").status == "healthy"


def test_unknown_application_is_reported():
    aggregator = _aggregator([Application("shop")], [])
    with pytest.raises(UnknownApplicationError):
        aggregator.compute_application_health("nope")


def test_application_without_dependencies_is_unknown():
    result = _aggregator([Application("lonely")], []).compute_application_health("lonely")
    assert result.status == "unknown"
    assert result.score == 0.0
    assert result.reason == "No nodes found for dependencies"


def test_unresolvable_dependency_uses_virtual_node():
    result = _aggregator([Application("shop", "medium", ["ghost-service"])], []).compute_application_health("shop")
    assert result.node_details["virtual"] == 1
    assert result.dependencies[0]["virtual"] is True
    assert result.status == "healthy"


def test_mutual_dependency_terminates():
    apps = [
        Application("alpha", "medium", ["beta", "alpha-db"]),
        Application("beta", "medium", ["alpha", "beta-db"]),
    ]
    nodes = [
        _node("a", "alpha-db-01", "db", status="offline", cpu=100, memory=100),
        _node("b", "beta-db-01", "db", status="offline", cpu=100, memory=100),
    ]
    aggregator = _aggregator(apps, nodes)

    results = aggregator.get_all_application_health()
    for result in results.values():
        assert 0 <= result.dependency_penalty <= 50
        assert 0 <= result.score <= 100


def test_self_dependency_is_flagged_as_cycle():
    apps = [Application("solo", "medium", ["solo"])]
    nodes = [_node("s", "solo-01")]
    result = _aggregator(apps, nodes).compute_application_health("solo")

    assert result.dependencies[0]["cycle"] is True
    assert result.dependency_penalty == 0.0


def test_dependency_penalty_is_capped():
    sinks = [Application(f"sink{i}", "medium", [f"sink{i}-db"]) for i in range(5)]
    front = Application("front", "medium", ["front-api"] + [f"sink{i}" for i in range(5)])
    nodes = [_node("f", "front-api-01")]
    nodes += [_node(f"s{i}", f"sink{i}-db-01", "db", status="offline", cpu=100, memory=100) for i in range(5)]

    result = _aggregator(sinks + [front], nodes).compute_application_health("front")
    assert result.dependency_penalty == pytest.approx(50.0)


def test_shared_node_is_counted_once():
    registry = DiscoveryRegistry([
        DiscoveryRule("svc-a", ServiceMetadata(), MatcherSpec(MatcherKind.NODE_IDS, ("n1",))),
        DiscoveryRule("svc-b", ServiceMetadata(), MatcherSpec(MatcherKind.NODE_IDS, ("n1",))),
    ])
    apps = [Application("shop", "medium", ["svc-a", "svc-b"])]
    result = _aggregator(apps, [_node("n1", "box-01")], registry).compute_application_health("shop")

    assert result.node_details["total"] == 1
    assert result.resolved_node_refs == ["n1"]


def test_history_is_kept_per_application():
    apps = [Application("shop", "medium", ["shop-api"])]
    aggregator = _aggregator(apps, [_node("a", "shop-api-01")])
    for _ in range(12):
        result = aggregator.compute_application_health("shop")

    assert len(result.history) == 10
    assert len(aggregator.graph.get("shop").health_history) == 12
    assert aggregator.graph.get("shop").resolved_nodes == {"shop-api": ["a"]}


def test_graph_tracks_dependents_and_normalises_criticality():
    graph = TopologyGraph([
        Application("web", "extreme", ["api", "web-cache"]),
        Application("api", "high", ["api-db"]),
    ])
    assert graph.get("web").criticality == "medium"
    assert graph.dependents_of("api") == ["web"]
    assert graph.application_dependencies("web") == ["api"]

    graph.add_application(Application("web", "low", ["web-cache"]))
    assert graph.dependents_of("api") == []
    assert graph.to_dict()["web"]["dependencies"] == ["web-cache"]
