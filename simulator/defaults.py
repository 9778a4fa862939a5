"""
Fleetwatch World Defaults
=========================
Built-in applications, discovery rules and demo fleet, plus the JSON loader
that lets a deployment replace any of them.

Config document:
    {
        "applications":    [{"name", "criticality", "dependencies": [...]}],
        "nodes":           [{"id", "name", "type", "datacenter", "tier", "metrics", ...}],
        "discovery_rules": [{"key", "metadata", "matcher", "fallback"}]
    }
Missing sections fall back to the defaults below.
"""

import json
import logging
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Dict, Any, Optional

from simulator.models import Application, Node, NodeMetrics, classify_metrics, NODE_STATUSES
from simulator.personalities import assign_personality, get_personality
from topology.discovery import DiscoveryRule

logger = logging.getLogger("fleetwatch.world")


# ─────────────────────────────────────────────────────────────────────
# Applications
# ─────────────────────────────────────────────────────────────────────

DEFAULT_APPLICATIONS: List[Dict[str, Any]] = [
    {"name": "user-service", "criticality": "high",
     "dependencies": ["user-db", "session-cache", "api-gateway", "session-db"]},
    {"name": "order-service", "criticality": "critical",
     "dependencies": ["order-db", "payment-processor", "inventory-service", "event-queue", "api-cache"]},
    {"name": "payment-service", "criticality": "critical",
     "dependencies": ["payment-db", "payment-processor", "fraud-detection", "event-queue", "audit-db"]},
    {"name": "inventory-service", "criticality": "medium",
     "dependencies": ["inventory-db", "api-cache", "event-queue"]},
    {"name": "notification-service", "criticality": "low",
     "dependencies": ["notification-queue", "email-service", "session-cache"]},
    {"name": "analytics-service", "criticality": "low",
     "dependencies": ["analytics-db", "task-queue", "report-generator"]},
    {"name": "admin-service", "criticality": "medium",
     "dependencies": ["admin-cache", "audit-db", "compliance-db", "rate-limiter"]},
    {"name": "media-service", "criticality": "medium",
     "dependencies": ["media-storage", "image-processor", "cdn", "api-cache"]},
    {"name": "search-service", "criticality": "medium",
     "dependencies": ["search-engine", "api-cache", "recommendation-engine"]},
    {"name": "monitoring-service", "criticality": "high",
     "dependencies": ["health-monitor", "log-aggregator", "metrics-db", "notification-queue"]},
]


# ─────────────────────────────────────────────────────────────────────
# Discovery rules
# ─────────────────────────────────────────────────────────────────────

def _rule(key: str, kind: str, port: int, protocol: str, engine: str, category: str, **extra) -> Dict[str, Any]:
    metadata = {"kind": kind, "port": port, "protocol": protocol, "engine": engine, "category": category}
    metadata.update(extra)
    return {"key": key, "metadata": metadata}


DEFAULT_DISCOVERY_RULES: List[Dict[str, Any]] = [
    # Category rules
    _rule("database", "database", 5432, "tcp", "postgres", "storage", replication=True, backup=True),
    _rule("cache", "cache", 6379, "tcp", "redis", "performance", ttl=3600, eviction_policy="lru"),
    _rule("queue", "queue", 5672, "amqp", "rabbitmq", "messaging", durable=True, auto_ack=False),
    _rule("gateway", "gateway", 443, "https", "nginx", "network",
          load_balancing="round-robin", health_check="/health"),

    # Databases
    _rule("audit-db", "database", 5432, "tcp", "postgres", "storage",
          schema="audit", retention="7 years", encryption="at-rest", compliance=["SOC2", "GDPR"]),
    _rule("compliance-db", "database", 5432, "tcp", "postgres", "storage",
          compliance=["SOC2", "HIPAA", "GDPR"], encrypted=True, audit_log=True, backup_schedule="hourly"),
    _rule("analytics-db", "database", 5432, "tcp", "postgres", "analytics",
          warehouse=True, partitioned=True, compression_enabled=True),
    _rule("session-db", "database", 5432, "tcp", "postgres", "storage", ttl=86400, cleanup_schedule="hourly"),

    # Caches
    _rule("admin-cache", "cache", 6379, "tcp", "redis", "performance",
          ttl=300, max_memory="512mb", admin_only=True, eviction_policy="allkeys-lru"),
    _rule("session-cache", "cache", 6379, "tcp", "redis", "performance",
          ttl=3600, max_memory="2gb", persistence="aof"),
    _rule("api-cache", "cache", 6379, "tcp", "redis", "performance", ttl=60, max_memory="4gb", cluster=True),

    # Queues
    _rule("event-queue", "queue", 5672, "amqp", "rabbitmq", "messaging",
          durable=True, auto_ack=False, max_retries=3, dlq=True),
    _rule("task-queue", "queue", 5672, "amqp", "rabbitmq", "messaging",
          priority=True, max_concurrency=100, prefetch=10),
    _rule("notification-queue", "queue", 5672, "amqp", "rabbitmq", "messaging",
          batching=True, batch_size=100, batch_timeout=5000),

    # Service endpoints
    _rule("fraud-detection", "service", 8443, "https", "ml-service", "security",
          ml_model="fraud-v2", threshold=0.85, timeout=5000, retries=2),
    _rule("recommendation-engine", "service", 8080, "http", "ml-service", "personalization",
          ml_model="rec-v3", cache_results=True, cache_ttl=3600),
    _rule("payment-processor", "service", 443, "https", "external-api", "payment",
          provider="stripe", timeout=10000, retries=3, idempotent=True),

    # Storage
    _rule("media-storage", "storage", 443, "https", "s3", "storage",
          bucket="media-assets", cdn=True, public_read=True),
    _rule("backup-storage", "storage", 443, "https", "s3", "storage",
          bucket="backups", encryption="AES256", versioning=True, lifecycle="90days"),

    # Workers
    _rule("report-generator", "worker", 8080, "http", "worker", "processing",
          concurrency=5, timeout=300000, memory_limit="2gb"),
    _rule("image-processor", "worker", 8080, "http", "worker", "processing",
          concurrency=10, timeout=60000, supported_formats=["jpg", "png", "webp", "avif"]),

    # Monitoring
    _rule("health-monitor", "service", 9090, "http", "monitoring", "observability",
          check_interval=30000, alert_threshold=3, metrics=["cpu", "memory", "disk", "network"]),
    _rule("log-aggregator", "service", 514, "syslog", "logging", "observability",
          retention="30days", indexing=True, searchable=True),
    _rule("rate-limiter", "service", 6379, "tcp", "redis", "security",
          window_size=60000, max_requests=100, key_prefix="rl:"),
]


# ─────────────────────────────────────────────────────────────────────
# Demo fleet
# ─────────────────────────────────────────────────────────────────────

BASE_METRICS_BY_TYPE: Dict[str, Dict[str, float]] = {
    "api": {"cpu": 38, "memory": 52, "network_latency": 28, "storage_io": 900, "disk_usage": 40},
    "db": {"cpu": 45, "memory": 64, "network_latency": 12, "storage_io": 2400, "disk_usage": 62},
    "cache": {"cpu": 25, "memory": 68, "network_latency": 4, "storage_io": 300, "disk_usage": 20},
    "queue": {"cpu": 30, "memory": 48, "network_latency": 9, "storage_io": 1200, "disk_usage": 35},
    "lb": {"cpu": 22, "memory": 30, "network_latency": 15, "storage_io": 200, "disk_usage": 18},
    "worker": {"cpu": 50, "memory": 55, "network_latency": 35, "storage_io": 1500, "disk_usage": 45},
    "storage": {"cpu": 15, "memory": 35, "network_latency": 20, "storage_io": 3000, "disk_usage": 70},
    "web": {"cpu": 28, "memory": 40, "network_latency": 18, "storage_io": 400, "disk_usage": 30},
}

# id, name, type, datacenter, tier, environment, criticality
_FLEET = [
    ("lb-east-01", "api-gateway-01", "lb", "dc-east", "edge", "production", "critical"),
    ("lb-west-01", "api-gateway-02", "lb", "dc-west", "edge", "production", "critical"),
    ("web-east-01", "cdn-edge-01", "web", "dc-east", "edge", "production", "high"),
    ("api-east-01", "user-api-01", "api", "dc-east", "app", "production", "high"),
    ("api-east-02", "order-api-01", "api", "dc-east", "app", "production", "critical"),
    ("api-west-01", "order-api-02", "api", "dc-west", "app", "production", "critical"),
    ("api-east-03", "payment-api-01", "api", "dc-east", "app", "production", "critical"),
    ("api-west-02", "inventory-api-01", "api", "dc-west", "app", "production", "medium"),
    ("api-central-01", "fraud-detection-01", "api", "dc-central", "app", "production", "critical"),
    ("api-central-02", "recommendation-engine-01", "api", "dc-central", "app", "production", "medium"),
    ("api-central-03", "search-api-01", "api", "dc-central", "app", "production", "medium"),
    ("api-west-03", "health-monitor-01", "api", "dc-west", "ops", "production", "high"),
    ("api-west-04", "log-aggregator-01", "api", "dc-west", "ops", "production", "high"),
    ("api-east-04", "rate-limiter-01", "api", "dc-east", "edge", "production", "medium"),
    ("db-east-01", "user-db-01", "db", "dc-east", "data", "production", "high"),
    ("db-east-02", "order-db-01", "db", "dc-east", "data", "production", "critical"),
    ("db-east-03", "payment-db-01", "db", "dc-east", "data", "production", "critical"),
    ("db-west-01", "inventory-db-01", "db", "dc-west", "data", "production", "medium"),
    ("db-central-01", "analytics-db-01", "db", "dc-central", "data", "production", "low"),
    ("db-central-02", "audit-db-01", "db", "dc-central", "data", "production", "high"),
    ("db-west-02", "metrics-db-01", "db", "dc-west", "ops", "production", "medium"),
    ("cache-east-01", "session-cache-01", "cache", "dc-east", "data", "production", "high"),
    ("cache-east-02", "api-cache-01", "cache", "dc-east", "data", "production", "medium"),
    ("cache-west-01", "api-cache-02", "cache", "dc-west", "data", "production", "medium"),
    ("queue-east-01", "event-queue-01", "queue", "dc-east", "messaging", "production", "critical"),
    ("queue-central-01", "task-queue-01", "queue", "dc-central", "messaging", "production", "low"),
    ("queue-west-01", "notification-queue-01", "queue", "dc-west", "messaging", "production", "low"),
    ("worker-east-01", "email-worker-01", "worker", "dc-east", "batch", "production", "low"),
    ("worker-central-01", "report-generator-01", "worker", "dc-central", "batch", "production", "low"),
    ("worker-central-02", "image-processor-01", "worker", "dc-central", "batch", "production", "medium"),
    ("storage-east-01", "media-storage-01", "storage", "dc-east", "data", "production", "medium"),
    ("api-staging-01", "order-api-staging", "api", "dc-west", "app", "staging", "low"),
    ("db-dr-01", "order-db-dr", "db", "dc-central", "data", "dr", "high"),
]


def default_nodes() -> List[Dict[str, Any]]:
    nodes = []
    for node_id, name, node_type, dc, tier, env, crit in _FLEET:
        nodes.append({
            "id": node_id,
            "name": name,
            "type": node_type,
            "datacenter": dc,
            "tier": tier,
            "environment": env,
            "criticality": crit,
            "region": dc.split("-", 1)[1],
            "metrics": dict(BASE_METRICS_BY_TYPE[node_type]),
        })
    return nodes


# ─────────────────────────────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────────────────────────────

def _valid_application(entry: Any) -> bool:
    if not isinstance(entry, dict) or not entry.get("name"):
        return False
    deps = entry.get("dependencies", [])
    return isinstance(deps, list) and all(isinstance(d, str) for d in deps)


def parse_applications(raw: Any) -> List[Application]:
    """Build applications, falling back to the defaults when `raw` is malformed."""
    if raw is None:
        raw = DEFAULT_APPLICATIONS
    elif not isinstance(raw, list) or not all(_valid_application(e) for e in raw):
        logger.warning("Malformed application config, falling back to built-in default applications")
        raw = DEFAULT_APPLICATIONS

    return [
        Application(
            name=entry["name"],
            criticality=entry.get("criticality", "medium"),
            dependencies=list(entry.get("dependencies", [])),
            description=entry.get("description", ""),
        )
        for entry in raw
    ]


def node_from_dict(data: Dict[str, Any], rng: Optional[random.Random] = None) -> Node:
    missing = [k for k in ("id", "name", "type") if not data.get(k)]
    if missing:
        raise ValueError(f"Node seed {data!r} is missing {', '.join(missing)}")

    base = BASE_METRICS_BY_TYPE.get(data["type"], {})
    metrics = NodeMetrics.from_dict({**base, **(data.get("metrics") or {})})
    metrics.clamp()

    status = data.get("status")
    if status is None:
        status = classify_metrics(metrics)
    elif status not in NODE_STATUSES:
        raise ValueError(f"Node {data['id']} has invalid status '{status}'")

    if data.get("personality"):
        personality = get_personality(data["personality"])
    else:
        personality = assign_personality(data["type"], rng)

    return Node(
        id=data["id"],
        name=data["name"],
        type=data["type"],
        datacenter=data.get("datacenter", "dc-east"),
        tier=data.get("tier", "standard"),
        status=status,
        metrics=metrics,
        environment=data.get("environment", "production"),
        criticality=data.get("criticality", "medium"),
        region=data.get("region", ""),
        tags=list(data.get("tags", [])),
        personality=personality,
    )


def parse_rules(raw: Optional[List[Dict[str, Any]]]) -> List[DiscoveryRule]:
    return [DiscoveryRule.from_dict(r) for r in (DEFAULT_DISCOVERY_RULES if raw is None else raw)]


@dataclass
class WorldConfig:
    applications: List[Application] = field(default_factory=list)
    nodes: List[Dict[str, Any]] = field(default_factory=list)
    discovery_rules: List[DiscoveryRule] = field(default_factory=list)


def load_world_config(path: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> WorldConfig:
    """Load a world from a JSON file, an in-memory dict, or nothing (all defaults)."""
    if data is None and path:
        file_path = Path(path)
        if file_path.exists():
            data = json.loads(file_path.read_text())
            logger.info(f"Loaded world config from {file_path}")
        else:
            logger.warning(f"World config {file_path} not found, using built-in defaults")
    data = data or {}

    return WorldConfig(
        applications=parse_applications(data.get("applications")),
        nodes=data.get("nodes") or default_nodes(),
        discovery_rules=parse_rules(data.get("discovery_rules")),
    )
