"""
Fleetwatch History Recorder
===========================
Bounded, delta-compressed record of how the fleet evolved.

Three independent ring buffers:
- evolution history: sparse per-node deltas (new node, status change,
  significant metric change), only written when something changed
- metric snapshots: dense fleet aggregates, every tick
- application health: per-application score/status, every tick

This shows trajectory, not raw node dumps.
"""

import csv
import io
import json
import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Callable

from simulator.models import Node

logger = logging.getLogger("fleetwatch.history")

CPU_MEMORY_DELTA = 10.0
LATENCY_DELTA = 50.0

TREND_METRICS = {
    "cpu": lambda s: s["fleet"]["avg_cpu_usage"],
    "memory": lambda s: s["fleet"]["avg_memory_usage"],
    "network": lambda s: s["fleet"]["avg_network_latency"],
    "health": lambda s: s["system_health"].get("healthy_pct", 0.0),
    "businessLoad": lambda s: s["business_load"],
}
TREND_ALIASES = {"business_load": "businessLoad", "latency": "network", "mem": "memory"}

CSV_COLUMNS = ["timestamp", "avgCpuUsage", "avgMemoryUsage", "avgNetworkLatency", "systemHealthy", "businessLoad"]


def _iso(ms: int) -> str:
    moment = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def aggregate_node_metrics(nodes: List[Node]) -> Dict[str, Any]:
    real = [n for n in nodes if not n.virtual]
    total = len(real)

    def avg(values):
        values = list(values)
        return round(sum(values) / len(values), 2) if values else 0.0

    def group(key):
        buckets: Dict[str, List[Node]] = {}
        for node in real:
            buckets.setdefault(getattr(node, key), []).append(node)
        return {
            name: {
                "count": len(members),
                "avg_cpu": avg(n.metrics.cpu for n in members),
                "avg_memory": avg(n.metrics.memory for n in members),
            }
            for name, members in buckets.items()
        }

    return {
        "avg_cpu_usage": avg(n.metrics.cpu for n in real),
        "avg_memory_usage": avg(n.metrics.memory for n in real),
        "avg_network_latency": avg(n.metrics.network_latency for n in real),
        "total_servers": total,
        "by_type": group("type"),
        "by_datacenter": group("datacenter"),
    }


class HistoryRecorder:
    def __init__(self, max_history_size: int = 1000, clock: Optional[Callable[[], int]] = None):
        self.max_history_size = max_history_size
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._evolution: deque = deque(maxlen=max_history_size)
        self._metric_snapshots: deque = deque(maxlen=max_history_size)
        self._app_health: deque = deque(maxlen=max_history_size)
        self._previous: Optional[Dict[str, Dict[str, Any]]] = None
        self._lock = threading.Lock()

    # ── Capture ─────────────────────────────────────────────────────

    def capture_snapshot(
        self,
        nodes: List[Node],
        fleet_health: Dict[str, Any],
        app_health_map: Dict[str, Any],
        business_load: float = 1.0,
        timestamp: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Record one tick. Returns the delta entry (possibly with no changes)."""
        timestamp = self._clock() if timestamp is None else timestamp
        with self._lock:
            changes = self._diff(nodes)
            delta = {"timestamp": timestamp, "type": "server_evolution", "changes": changes}
            if changes:
                self._evolution.append(delta)

            self._metric_snapshots.append({
                "timestamp": timestamp,
                "fleet": aggregate_node_metrics(nodes),
                "system_health": dict(fleet_health or {}),
                "business_load": business_load,
            })

            applications = {}
            for name, health in (app_health_map or {}).items():
                data = health.to_dict() if hasattr(health, "to_dict") else dict(health)
                applications[name] = {"score": data.get("score"), "status": data.get("status")}
            self._app_health.append({"timestamp": timestamp, "applications": applications})
        return delta

    def _diff(self, nodes: List[Node]) -> List[Dict[str, Any]]:
        current = {
            n.id: {
                "name": n.name,
                "status": n.status,
                "cpu": n.metrics.cpu,
                "memory": n.metrics.memory,
                "network_latency": n.metrics.network_latency,
            }
            for n in nodes if not n.virtual
        }
        previous = self._previous
        self._previous = current
        if previous is None:
            return []

        changes = []
        for node_id, state in current.items():
            old = previous.get(node_id)
            if old is None:
                changes.append({"type": "new_server", "node_id": node_id, "node_name": state["name"],
                                "status": state["status"]})
                continue
            if old["status"] != state["status"]:
                changes.append({"type": "status_change", "node_id": node_id, "node_name": state["name"],
                                "from": old["status"], "to": state["status"]})

            moved = {}
            for key, limit in (("cpu", CPU_MEMORY_DELTA), ("memory", CPU_MEMORY_DELTA),
                               ("network_latency", LATENCY_DELTA)):
                if abs(state[key] - old[key]) > limit:
                    moved[key] = {"from": round(old[key], 2), "to": round(state[key], 2)}
            if moved:
                changes.append({"type": "metrics_change", "node_id": node_id, "node_name": state["name"],
                                "metrics": moved})
        return changes

    # ── Queries ─────────────────────────────────────────────────────

    def get_historical_trend(self, metric: str, range_ms: int = 3_600_000) -> List[Dict[str, Any]]:
        metric = TREND_ALIASES.get(metric, metric)
        extract = TREND_METRICS.get(metric)
        if extract is None:
            raise ValueError(f"Unknown trend metric: {metric}. Available: {', '.join(TREND_METRICS)}")
        cutoff = self._clock() - range_ms
        with self._lock:
            snapshots = [s for s in self._metric_snapshots if s["timestamp"] >= cutoff]
        return [
            {
                "timestamp": s["timestamp"],
                "time": datetime.fromtimestamp(s["timestamp"] / 1000).strftime("%H:%M:%S"),
                "value": extract(s),
            }
            for s in snapshots
        ]

    def get_event_timeline(self, range_ms: int = 3_600_000) -> List[Dict[str, Any]]:
        cutoff = self._clock() - range_ms
        with self._lock:
            entries = [e for e in self._evolution if e["timestamp"] >= cutoff]
        return list(reversed(entries))

    def get_application_health_history(self, range_ms: int = 3_600_000) -> List[Dict[str, Any]]:
        cutoff = self._clock() - range_ms
        with self._lock:
            return [e for e in self._app_health if e["timestamp"] >= cutoff]

    def export_historical_data(self, fmt: str = "json") -> str:
        with self._lock:
            evolution = list(self._evolution)
            snapshots = list(self._metric_snapshots)
            app_health = list(self._app_health)

        if fmt == "json":
            return json.dumps({
                "evolutionHistory": evolution,
                "metricSnapshots": snapshots,
                "applicationHealthHistory": app_health,
                "exportedAt": _iso(self._clock()),
            }, indent=2)

        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(CSV_COLUMNS)
            for s in snapshots:
                writer.writerow([
                    _iso(s["timestamp"]),
                    f"{s['fleet']['avg_cpu_usage']:.2f}",
                    f"{s['fleet']['avg_memory_usage']:.2f}",
                    f"{s['fleet']['avg_network_latency']:.2f}",
                    f"{s['system_health'].get('healthy_pct', 0.0):.2f}",
                    f"{s['business_load']:.2f}",
                ])
            return buffer.getvalue()

        raise ValueError(f"Unsupported export format: {fmt}")

    def get_historical_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_snapshots": len(self._metric_snapshots),
                "total_evolution_events": len(self._evolution),
                "total_app_health_snapshots": len(self._app_health),
                "oldest_snapshot": self._metric_snapshots[0]["timestamp"] if self._metric_snapshots else None,
                "newest_snapshot": self._metric_snapshots[-1]["timestamp"] if self._metric_snapshots else None,
                "available_metrics": list(TREND_METRICS),
                "max_history_size": self.max_history_size,
            }

    def sizes(self) -> Dict[str, int]:
        with self._lock:
            return {
                "evolution": len(self._evolution),
                "metric_snapshots": len(self._metric_snapshots),
                "application_health": len(self._app_health),
            }

    def clear(self):
        with self._lock:
            self._evolution.clear()
            self._metric_snapshots.clear()
            self._app_health.clear()
            self._previous = None
        logger.info("History cleared")
