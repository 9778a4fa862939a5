#!/usr/bin/env python3
"""Service discovery: rule lookup layers, matchers, fallbacks and virtual nodes"""

import os
import sys

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

import pytest

from simulator.defaults import parse_rules
from simulator.models import Node, UNKNOWN_STATUS
from topology.discovery import (
    DiscoveryRegistry,
    DiscoveryRule,
    ServiceDiscoveryResolver,
    ServiceMetadata,
    MatcherSpec,
    MatcherKind,
    FallbackSpec,
    FallbackStrategy,
    default_metadata,
)


@pytest.fixture
def resolver():
    return ServiceDiscoveryResolver(DiscoveryRegistry(parse_rules(None)))


def _node(node_id, name, node_type, tags=None):
    return Node(id=node_id, name=name, type=node_type, tags=list(tags or []))


def test_exact_rule_wins_over_category(resolver):
    rule, source = resolver.lookup("audit-db")
    assert source == "exact"
    assert rule.metadata.kind == "database"
    assert rule.metadata.extra["schema"] == "audit"


def test_lookup_is_case_insensitive(resolver):
    _, source = resolver.lookup("Audit-DB")
    assert source == "exact"


def test_category_rule_applies_when_registered(resolver):
    rule, source = resolver.lookup("payment-db")
    assert source == "category"
    assert rule.key == "database"
    assert rule.metadata.port == 5432


def test_category_needs_a_registered_rule():
    bare = ServiceDiscoveryResolver(DiscoveryRegistry())
    rule, source = bare.lookup("payment-db")
    assert source == "heuristic"
    assert rule.metadata.kind == "database"


def test_heuristics_use_word_boundaries():
    assert default_metadata("orders-mysql").engine == "mysql"
    assert default_metadata("kafka-events").kind == "queue"
    assert default_metadata("search-engine").port == 9200
    # "dbx" is not a database token
    assert default_metadata("dbx-runner").kind == "service"


def test_unknown_name_gets_generic_metadata(resolver):
    metadata = resolver.get_service_metadata("mystery-thing")
    assert metadata.kind == "service"
    assert metadata.port == 80


def test_resolution_never_returns_empty(resolver):
    first = resolver.resolve("nonexistent-widget", [])
    second = resolver.resolve("nonexistent-widget", [])
    assert len(first) == 1
    assert first[0].virtual is True
    assert first[0].status == UNKNOWN_STATUS
    assert first[0].id == "virtual-nonexistent-widget"
    assert second[0] is first[0]


def test_derived_matcher_uses_name_prefix(resolver):
    nodes = [
        _node("db-1", "order-db-01", "db"),
        _node("db-2", "user-db-01", "db"),
        _node("api-1", "order-api-01", "api"),
    ]
    matched = resolver.resolve("order-db", nodes)
    assert [n.id for n in matched] == ["db-1"]


def test_derived_fallback_limits_by_kind(resolver):
    nodes = [_node(f"db-{i}", f"store-{i}", "db") for i in range(3)]
    matched = resolver.resolve("payment-db", nodes)
    assert [n.id for n in matched] == ["db-0"]

    caches = [_node(f"c-{i}", f"blob-{i}", "cache") for i in range(4)]
    matched = resolver.resolve("hot-cache", caches)
    assert len(matched) == 2


def test_custom_service_matches_name_or_tag():
    registry = DiscoveryRegistry()
    resolver = ServiceDiscoveryResolver(registry)
    registry.register_custom_service("billing")

    nodes = [
        _node("a", "billing-api-01", "api"),
        _node("b", "misc-01", "api", tags=["billing"]),
        _node("c", "other-01", "api"),
    ]
    assert {n.id for n in resolver.resolve("billing", nodes)} == {"a", "b"}


def test_custom_service_falls_back_to_server_type():
    registry = DiscoveryRegistry()
    resolver = ServiceDiscoveryResolver(registry)
    rule = registry.register_custom_service("ledger", {"server_type": "worker", "instances": 2, "port": 9000})

    assert rule.fallback.strategy == FallbackStrategy.FIRST_OF_TYPE
    assert rule.metadata.port == 9000
    nodes = [_node(f"w-{i}", f"batch-{i}", "worker") for i in range(3)] + [_node("x", "x", "api")]
    assert [n.id for n in resolver.resolve("ledger", nodes)] == ["w-0", "w-1"]


def test_registries_are_isolated():
    first = DiscoveryRegistry()
    second = DiscoveryRegistry()
    first.register_custom_service("billing")

    assert first.has("billing")
    assert not second.has("billing")
    ServiceDiscoveryResolver(first).lookup("never-seen")
    assert "never-seen" in first.stats()["unknown_names_seen"]
    assert second.stats()["unknown_names_seen"] == []


def test_new_rule_replaces_virtual_placeholder():
    registry = DiscoveryRegistry()
    resolver = ServiceDiscoveryResolver(registry)
    assert resolver.resolve("ledger", [])[0].virtual

    registry.register(DiscoveryRule(
        "ledger",
        ServiceMetadata(kind="service"),
        MatcherSpec(MatcherKind.NODE_IDS, ("n1",)),
        FallbackSpec(FallbackStrategy.NONE),
    ))
    matched = resolver.resolve("ledger", [_node("n1", "anything", "api")])
    assert [n.id for n in matched] == ["n1"]


def test_rule_from_dict_round_trip_and_validation():
    rule = DiscoveryRule.from_dict({
        "key": "Ledger",
        "metadata": {"kind": "database", "port": 5433, "engine": "postgres", "shard": 2},
        "matcher": {"kind": "tag", "values": ["ledger"]},
        "fallback": {"strategy": "none"},
    })
    assert rule.key == "ledger"
    assert rule.metadata.extra == {"shard": 2}
    assert rule.to_dict()["matcher"]["kind"] == "tag"

    with pytest.raises(ValueError):
        DiscoveryRule.from_dict({"metadata": {}})


def test_category_match_needs_a_whole_token(resolver):
    rule, source = resolver.lookup("feedback-service")
    assert source == "heuristic"
    assert rule.metadata.kind == "service"

    assert resolver.lookup("orders_db")[1] == "category"
    assert resolver.lookup("orders_db")[0].key == "database"
    assert resolver.lookup("user.cache")[0].key == "cache"


def test_unknown_tracking_can_be_cleared():
    registry = DiscoveryRegistry()
    ServiceDiscoveryResolver(registry).lookup("never-seen")
    registry.clear_unknown_tracking()
    assert registry.stats()["unknown_names_seen"] == []
    assert registry.mark_seen("never-seen")
