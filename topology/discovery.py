"""
Fleetwatch Service Discovery
============================
Maps logical dependency names ("payment-db", "event-queue") to physical nodes.

PURPOSE:
- Keep a per-world registry of discovery rules (exact names and category keys)
- Resolve a name layer by layer: exact rule > registered category rule > heuristic
- Fall back to a type-based pick when the matcher finds nothing
- Synthesize one virtual placeholder when even the fallback is empty

FORBIDDEN:
- No health scoring (that is the aggregator's job)
- No global state: two registries never share rules or first-seen tracking

Rules are plain data (matcher descriptor + fallback strategy + metadata) so
they can be registered at runtime from JSON and inspected in tests.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Dict, Any, Optional, Tuple, Iterable

from simulator.models import Node, NodeMetrics, UNKNOWN_STATUS

logger = logging.getLogger("fleetwatch.discovery")


# Node type a service kind usually lives on.
KIND_TO_NODE_TYPE: Dict[str, str] = {
    "database": "db",
    "cache": "cache",
    "queue": "queue",
    "gateway": "lb",
    "worker": "worker",
    "notification": "worker",
    "analytics": "db",
    "search": "api",
    "storage": "storage",
    "service": "api",
}

# Category keys consulted when no exact rule exists. A category only applies
# if a rule under that key has been registered. Words must stand alone between
# "-", "_", "." or the ends of the name, so "feedback" is not a database.
def _token(words: str) -> re.Pattern:
    return re.compile(rf"(?<![a-z0-9])(?:{words})(?![a-z0-9])")


CATEGORY_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (_token(r"db|database"), "database"),
    (_token(r"cache|redis|memcached"), "cache"),
    (_token(r"queue|mq|rabbitmq|kafka|message|messages"), "queue"),
    (_token(r"gateway|proxy|waf|lb"), "gateway"),
    (_token(r"worker|job|task"), "worker"),
    (_token(r"email|mail|notification"), "notification"),
    (_token(r"analytics|warehouse"), "analytics"),
    (_token(r"search|elastic"), "search"),
    (_token(r"storage|s3|blob"), "storage"),
]


# ─────────────────────────────────────────────────────────────────────
# Rule structures
# ─────────────────────────────────────────────────────────────────────

@dataclass
class ServiceMetadata:
    kind: str = "service"
    port: int = 80
    protocol: str = "http"
    engine: str = "generic"
    category: str = "application"
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "kind": self.kind,
            "port": self.port,
            "protocol": self.protocol,
            "engine": self.engine,
            "category": self.category,
        }
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceMetadata":
        known = {"kind", "port", "protocol", "engine", "category"}
        return cls(
            kind=data.get("kind", "service"),
            port=int(data.get("port", 80)),
            protocol=data.get("protocol", "http"),
            engine=data.get("engine", "generic"),
            category=data.get("category", "application"),
            extra={k: v for k, v in data.items() if k not in known},
        )


class MatcherKind(Enum):
    DERIVED = "derived"            # tags / name / type+prefix, from the service name
    NAME_CONTAINS = "name_contains"
    NAME_OR_TAG = "name_or_tag"
    TAG = "tag"
    NODE_TYPE = "node_type"
    NODE_IDS = "node_ids"


@dataclass(frozen=True)
class MatcherSpec:
    """Predicate descriptor selecting candidate nodes for a service."""
    kind: MatcherKind = MatcherKind.DERIVED
    values: Tuple[str, ...] = ()
    node_type: Optional[str] = None

    def matches(self, node: Node, service_name: str, metadata: ServiceMetadata) -> bool:
        if self.node_type and node.type != self.node_type:
            return False

        if self.kind == MatcherKind.DERIVED:
            return _derived_match(node, service_name, metadata)
        if self.kind == MatcherKind.NAME_CONTAINS:
            name = node.name.lower()
            return any(v.lower() in name for v in self.values)
        if self.kind == MatcherKind.NAME_OR_TAG:
            name = node.name.lower()
            return any(v.lower() in name or v in node.tags for v in self.values)
        if self.kind == MatcherKind.TAG:
            return any(v in node.tags for v in self.values)
        if self.kind == MatcherKind.NODE_TYPE:
            return node.type in self.values
        if self.kind == MatcherKind.NODE_IDS:
            return node.id in self.values
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "values": list(self.values), "node_type": self.node_type}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MatcherSpec":
        if not data:
            return cls()
        return cls(
            kind=MatcherKind(data.get("kind", "derived")),
            values=tuple(data.get("values", ())),
            node_type=data.get("node_type"),
        )


def _derived_match(node: Node, service_name: str, metadata: ServiceMetadata) -> bool:
    if service_name in node.tags:
        return True
    node_name = node.name.lower()
    if service_name.lower() in node_name:
        return True
    if node.type == KIND_TO_NODE_TYPE.get(metadata.kind):
        prefix = service_name.split("-")[0]
        if prefix and prefix.lower() in node_name:
            return True
        if "-" not in service_name:
            return True
    return False


class FallbackStrategy(Enum):
    NONE = "none"
    DERIVED = "derived"              # first N nodes of the kind's node type
    FIRST_OF_TYPE = "first_of_type"  # first `limit` nodes of an explicit type


@dataclass(frozen=True)
class FallbackSpec:
    strategy: FallbackStrategy = FallbackStrategy.DERIVED
    node_type: Optional[str] = None
    limit: Optional[int] = None

    def apply(self, nodes: Iterable[Node], metadata: ServiceMetadata) -> List[Node]:
        if self.strategy == FallbackStrategy.NONE:
            return []

        if self.strategy == FallbackStrategy.FIRST_OF_TYPE:
            node_type = self.node_type or KIND_TO_NODE_TYPE.get(metadata.kind, "api")
            limit = self.limit if self.limit is not None else 3
        else:
            node_type = KIND_TO_NODE_TYPE.get(metadata.kind, "api")
            if metadata.kind in ("cache", "queue"):
                limit = 2
            elif metadata.kind == "database":
                limit = 1
            else:
                limit = 3

        return [n for n in nodes if n.type == node_type][:limit]

    def to_dict(self) -> Dict[str, Any]:
        return {"strategy": self.strategy.value, "node_type": self.node_type, "limit": self.limit}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FallbackSpec":
        if not data:
            return cls()
        return cls(
            strategy=FallbackStrategy(data.get("strategy", "derived")),
            node_type=data.get("node_type"),
            limit=data.get("limit"),
        )


@dataclass
class DiscoveryRule:
    key: str
    metadata: ServiceMetadata
    matcher: MatcherSpec = field(default_factory=MatcherSpec)
    fallback: FallbackSpec = field(default_factory=FallbackSpec)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "metadata": self.metadata.to_dict(),
            "matcher": self.matcher.to_dict(),
            "fallback": self.fallback.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiscoveryRule":
        key = data.get("key") or data.get("name")
        if not key:
            raise ValueError("Discovery rule requires a 'key'")
        return cls(
            key=str(key).lower(),
            metadata=ServiceMetadata.from_dict(data.get("metadata", {})),
            matcher=MatcherSpec.from_dict(data.get("matcher")),
            fallback=FallbackSpec.from_dict(data.get("fallback")),
        )


# ─────────────────────────────────────────────────────────────────────
# Heuristic metadata for names with no rule
# ─────────────────────────────────────────────────────────────────────

_HEURISTICS: List[Tuple[re.Pattern, Any]] = [
    (re.compile(r"\b(db|database|postgres|mysql|mariadb|mongo|cassandra|dynamo|rds)\b"),
     lambda n: ServiceMetadata("database", 5432, "tcp",
                               "mysql" if "mysql" in n else "mongodb" if "mongo" in n else "postgres",
                               "storage")),
    (re.compile(r"\b(cache|redis|memcached|elasticache|varnish)\b"),
     lambda n: ServiceMetadata("cache", 6379, "tcp", "memcached" if "memcached" in n else "redis",
                               "performance")),
    (re.compile(r"\b(queue|mq|kafka|rabbit|sqs|sns|pubsub|message|event)\b"),
     lambda n: ServiceMetadata("queue", 5672, "tcp",
                               "kafka" if "kafka" in n else "sqs" if "sqs" in n else "rabbitmq",
                               "messaging")),
    (re.compile(r"\b(gateway|proxy|waf|nginx|apache|haproxy|cloudflare|cdn|lb|load-?balancer)\b"),
     lambda n: ServiceMetadata("gateway", 443, "https",
                               "nginx" if "nginx" in n else "haproxy" if "haproxy" in n else "generic",
                               "network")),
    (re.compile(r"\b(storage|s3|blob|file|bucket|nas|san)\b"),
     lambda n: ServiceMetadata("storage", 443, "https", "s3" if "s3" in n else "generic", "storage")),
    (re.compile(r"\b(worker|job|task|batch|cron|scheduler)\b"),
     lambda n: ServiceMetadata("worker", 8080, "http", "generic", "processing")),
    (re.compile(r"\b(email|mail|smtp|notification|alert|sns)\b"),
     lambda n: ServiceMetadata("notification", 587, "smtp", "sns" if "sns" in n else "smtp",
                               "communication")),
    (re.compile(r"\b(analytics|warehouse|etl|bigquery|redshift|snowflake|reporting)\b"),
     lambda n: ServiceMetadata("analytics", 5432, "tcp",
                               "bigquery" if "bigquery" in n else "redshift" if "redshift" in n else "generic",
                               "analytics")),
    (re.compile(r"\b(search|elastic|solr|algolia)\b"),
     lambda n: ServiceMetadata("search", 9200, "http",
                               "elasticsearch" if "elastic" in n else "solr" if "solr" in n else "generic",
                               "search")),
]


def default_metadata(service_name: str) -> ServiceMetadata:
    name = str(service_name).lower()
    for pattern, build in _HEURISTICS:
        if pattern.search(name):
            return build(name)
    return ServiceMetadata()


# ─────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────

class DiscoveryRegistry:
    """
    Rule table plus first-seen tracking, owned by one simulation world.

    Thread-safe: rules can be registered from the API thread while the
    tick thread resolves.
    """

    def __init__(self, rules: Optional[Iterable[DiscoveryRule]] = None):
        self._rules: Dict[str, DiscoveryRule] = {}
        self._seen_unknown: set = set()
        self._virtual_nodes: Dict[str, Node] = {}
        self._lock = threading.Lock()
        for rule in rules or []:
            self.register(rule)

    def register(self, rule: DiscoveryRule):
        key = rule.key.lower()
        with self._lock:
            self._rules[key] = rule
            # A new rule may change the kind of a previously virtual service
            self._virtual_nodes.pop(key, None)
        logger.debug(f"Registered discovery rule '{key}' ({rule.metadata.kind})")

    def register_custom_service(self, name: str, config: Optional[Dict[str, Any]] = None) -> DiscoveryRule:
        """
        Register a service by name with sensible defaults.

        Nodes match when their name contains the service name or they carry
        it as a tag. With `server_type`, the fallback picks the first
        `instances` nodes of that type.
        """
        config = dict(config or {})
        metadata = ServiceMetadata(
            kind=config.get("kind", "service"),
            port=int(config.get("port", 8080)),
            protocol=config.get("protocol", "http"),
            engine=config.get("engine", "generic"),
            category=config.get("category", "application"),
            extra=dict(config.get("metadata") or {}),
        )
        if config.get("matcher"):
            matcher = MatcherSpec.from_dict(config["matcher"])
        else:
            matcher = MatcherSpec(MatcherKind.NAME_OR_TAG, (name,))
        if config.get("fallback"):
            fallback = FallbackSpec.from_dict(config["fallback"])
        elif config.get("server_type"):
            fallback = FallbackSpec(FallbackStrategy.FIRST_OF_TYPE, config["server_type"],
                                    int(config.get("instances", 1)))
        else:
            fallback = FallbackSpec()
        rule = DiscoveryRule(str(name).lower(), metadata, matcher, fallback)
        self.register(rule)
        logger.info(f"Registered custom service: {name}")
        return rule

    def get(self, key: str) -> Optional[DiscoveryRule]:
        with self._lock:
            return self._rules.get(str(key).lower())

    def has(self, key: str) -> bool:
        with self._lock:
            return str(key).lower() in self._rules

    def registered_keys(self) -> List[str]:
        with self._lock:
            return list(self._rules.keys())

    def rules(self) -> List[DiscoveryRule]:
        with self._lock:
            return list(self._rules.values())

    def mark_seen(self, key: str) -> bool:
        """Record an unknown name; True only the first time it is seen."""
        with self._lock:
            if key in self._seen_unknown:
                return False
            self._seen_unknown.add(key)
            return True

    def clear_unknown_tracking(self):
        with self._lock:
            self._seen_unknown.clear()

    def virtual_node(self, key: str, service_name: str, metadata: ServiceMetadata) -> Node:
        with self._lock:
            node = self._virtual_nodes.get(key)
            if node is None:
                node = Node(
                    id=f"virtual-{key}",
                    name=service_name,
                    type=KIND_TO_NODE_TYPE.get(metadata.kind, "api"),
                    datacenter="virtual",
                    tier="virtual",
                    status=UNKNOWN_STATUS,
                    metrics=NodeMetrics.zeroed(),
                    tags=[service_name],
                    virtual=True,
                )
                self._virtual_nodes[key] = node
                logger.info(f"Synthesized virtual node for unresolved service '{service_name}'")
            return node

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "registered_rules": sorted(self._rules.keys()),
                "rule_count": len(self._rules),
                "unknown_names_seen": sorted(self._seen_unknown),
                "virtual_nodes": len(self._virtual_nodes),
            }


# ─────────────────────────────────────────────────────────────────────
# Resolver
# ─────────────────────────────────────────────────────────────────────

class ServiceDiscoveryResolver:
    """Resolves dependency names against a registry. Never raises, never returns empty."""

    def __init__(self, registry: Optional[DiscoveryRegistry] = None):
        self.registry = registry or DiscoveryRegistry()

    def lookup(self, service_name: str) -> Tuple[DiscoveryRule, str]:
        """Return (rule, source) where source is exact, category or heuristic."""
        key = str(service_name).lower()
        rule = self.registry.get(key)
        if rule is not None:
            return rule, "exact"

        if self.registry.mark_seen(key):
            logger.debug(f"Using fallback discovery for '{service_name}'")

        for pattern, category in CATEGORY_PATTERNS:
            if pattern.search(key):
                category_rule = self.registry.get(category)
                if category_rule is not None:
                    return category_rule, "category"

        return DiscoveryRule(key, default_metadata(key)), "heuristic"

    def get_service_metadata(self, service_name: str) -> ServiceMetadata:
        rule, _ = self.lookup(service_name)
        return rule.metadata

    def resolve(self, service_name: str, candidates: List[Node]) -> List[Node]:
        rule, source = self.lookup(service_name)
        metadata = rule.metadata

        matches = [n for n in candidates if rule.matcher.matches(n, service_name, metadata)]
        if matches:
            return matches

        matches = rule.fallback.apply(candidates, metadata)
        if matches:
            logger.debug(
                f"Fallback resolution for {service_name} ({source}): "
                f"{', '.join(n.name for n in matches)}"
            )
            return matches

        return [self.registry.virtual_node(str(service_name).lower(), service_name, metadata)]
