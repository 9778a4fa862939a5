"""
Fleetwatch Simulation World
===========================
Wires the engine, director, topology, history and analyzer into one world
with a single clock and a single tick driver.

Tick order (all under one lock):
1. incident phase arcs advance to "now"
2. organic evolution (nodes with an incident are left alone)
3. application health for every application
4. history snapshot
5. fire-and-forget hand-off of copies to the registered tick callback

Observers only ever see copies, so a slow callback can hold on to a tick
while the next one is being computed. While a delivery is in flight only the
newest tick waits behind it; older undelivered ticks are dropped.
"""

from __future__ import annotations

import json
import logging
import random
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, Future, wait
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Callable, Iterable, Tuple, Union

from agents.rca_agent import (
    RootCauseAnalyzer,
    Deployment,
    events_from_alerts,
    events_from_incidents,
    events_from_timeline,
)
from metrics.history import HistoryRecorder
from simulator.defaults import WorldConfig, load_world_config, node_from_dict, parse_applications
from simulator.engine import EvolutionEngine, EvolutionSettings
from simulator.errors import UnknownNodeError
from simulator.incidents import IncidentDirector
from simulator.models import Node, Application
from topology.discovery import DiscoveryRegistry, DiscoveryRule, ServiceDiscoveryResolver
from topology.graph import TopologyGraph
from topology.health import HealthAggregator, HealthResult

logger = logging.getLogger("fleetwatch.world")

TickCallback = Callable[[List[Node], Dict[str, Any], Dict[str, Any], Dict[str, Any]], None]


class SimulationClock:
    """
    Epoch-millisecond clock for one world.

    Wall-clock by default. Given a start time it becomes a manual clock
    that only moves when the world ticks (or `advance` is called).
    """

    def __init__(self, start_ms: Optional[int] = None):
        self.manual = start_ms is not None
        self._now = start_ms

    def __call__(self) -> int:
        if self.manual:
            return self._now
        return int(time.time() * 1000)

    def advance(self, delta_ms: int):
        if self.manual:
            self._now += int(delta_ms)


@dataclass
class TickSnapshot:
    tick: int
    timestamp: int
    nodes: List[Node]
    fleet_health: Dict[str, Any]
    app_health: Dict[str, Dict[str, Any]]
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tick": self.tick,
            "timestamp": self.timestamp,
            "nodes": [n.to_dict() for n in self.nodes],
            "fleet_health": self.fleet_health,
            "app_health": self.app_health,
            "extra": self.extra,
        }


class SimulationWorld:
    def __init__(
        self,
        applications: Optional[Iterable[Union[Application, Dict[str, Any]]]] = None,
        nodes: Optional[Iterable[Union[Node, Dict[str, Any]]]] = None,
        discovery_rules: Optional[Iterable[Union[DiscoveryRule, Dict[str, Any]]]] = None,
        *,
        seed: Optional[int] = None,
        start_time_ms: Optional[int] = None,
        tick_interval_ms: int = 3000,
        history_max: int = 1000,
        evolution_settings: Optional[EvolutionSettings] = None,
        alert_log_max: int = 500,
        app_health_history_max: int = 100,
    ):
        self.rng = random.Random(seed)
        self.clock = SimulationClock(start_time_ms)
        self.tick_interval_ms = tick_interval_ms
        self._lock = threading.RLock()

        rules = [r if isinstance(r, DiscoveryRule) else DiscoveryRule.from_dict(r)
                 for r in (discovery_rules or [])]
        self.registry = DiscoveryRegistry(rules)
        self.resolver = ServiceDiscoveryResolver(self.registry)

        apps = list(applications or [])
        if apps and not all(isinstance(a, Application) for a in apps):
            apps = parse_applications(apps)
        for app in apps:
            app.health_history = deque(app.health_history, maxlen=app_health_history_max)
        self.graph = TopologyGraph(apps)

        self._nodes: Dict[str, Node] = {}
        for raw in nodes or []:
            node = raw if isinstance(raw, Node) else node_from_dict(raw, self.rng)
            self._nodes[node.id] = node

        self.engine = EvolutionEngine(evolution_settings, rng=self.rng)
        self.director = IncidentDirector(self._nodes.get, clock=self.clock)
        self.health = HealthAggregator(self.graph, self.resolver, self._node_list, clock=self.clock)
        self.history = HistoryRecorder(history_max, clock=self.clock)
        self.analyzer = RootCauseAnalyzer(clock=self.clock)

        self._alert_log: deque = deque(maxlen=alert_log_max)
        self._healing_log: deque = deque(maxlen=alert_log_max)
        self._callback: Optional[TickCallback] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fleetwatch-callback")
        self._last_dispatch: Optional[Future] = None
        self._dispatch_lock = threading.Lock()
        self._delivering = False
        self._pending: Optional[Tuple[TickCallback, TickSnapshot]] = None
        self.coalesced_dispatches = 0
        self._last_tick_at: Optional[int] = None
        self._last_snapshot: Optional[TickSnapshot] = None
        self.tick_count = 0

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        logger.info(
            f"World ready: {len(self._nodes)} nodes, {len(self.graph.names())} applications, "
            f"{len(rules)} discovery rules"
        )

    @classmethod
    def from_config(cls, config: Optional[WorldConfig] = None, **kwargs) -> "SimulationWorld":
        config = config or load_world_config()
        return cls(config.applications, config.nodes, config.discovery_rules, **kwargs)

    def now(self) -> int:
        return self.clock()

    def _node_list(self) -> List[Node]:
        return list(self._nodes.values())

    # ── Tick ────────────────────────────────────────────────────────

    def tick(self, delta_ms: Optional[int] = None) -> TickSnapshot:
        with self._lock:
            if self.clock.manual:
                delta_ms = self.tick_interval_ms if delta_ms is None else delta_ms
                self.clock.advance(delta_ms)
            now = self.clock()
            if delta_ms is None:
                delta_ms = now - self._last_tick_at if self._last_tick_at else self.tick_interval_ms
            self._last_tick_at = now

            nodes = self._node_list()
            transitions = self.director.advance(now)
            evolution = self.engine.tick(nodes, delta_ms, now)
            app_health = self.health.get_all_application_health()
            fleet_health = self.engine.fleet_health(nodes, now)
            anomalies = self.engine.datacenter_anomalies(nodes, now)
            delta = self.history.capture_snapshot(nodes, fleet_health, app_health,
                                                  evolution.business_load, now)

            self._alert_log.extend(evolution.alerts)
            self._healing_log.extend(evolution.healing_events)
            self.tick_count += 1

            snapshot = TickSnapshot(
                tick=self.tick_count,
                timestamp=now,
                nodes=[n.copy() for n in nodes],
                fleet_health=fleet_health,
                app_health={name: result.to_dict() for name, result in app_health.items()},
                extra={
                    "incidents": self.director.get_active_incidents(),
                    "predictions": evolution.predictions,
                    "anomalies": anomalies,
                    "alerts": evolution.alerts,
                    "healing_events": evolution.healing_events,
                    "incident_transitions": transitions,
                    "history_delta": delta,
                    "business_load": evolution.business_load,
                },
            )
            self._last_snapshot = snapshot
            callback = self._callback

        if callback is not None:
            self._dispatch(callback, snapshot)
        return snapshot

    def run(self, ticks: int, delta_ms: Optional[int] = None) -> List[TickSnapshot]:
        return [self.tick(delta_ms) for _ in range(ticks)]

    def set_tick_callback(self, callback: Optional[TickCallback]):
        """Register the single tick observer, replacing any previous one."""
        with self._lock:
            self._callback = callback

    def _dispatch(self, callback: TickCallback, snapshot: TickSnapshot):
        with self._dispatch_lock:
            if self._delivering:
                if self._pending is not None:
                    self.coalesced_dispatches += 1
                self._pending = (callback, snapshot)
                return
            self._delivering = True
            self._last_dispatch = self._executor.submit(self._deliver, callback, snapshot)

    @property
    def pending_dispatches(self) -> int:
        """Ticks waiting behind the in-flight delivery (0 or 1)."""
        with self._dispatch_lock:
            return 0 if self._pending is None else 1

    def _deliver(self, callback: TickCallback, snapshot: TickSnapshot):
        while True:
            self._invoke(callback, snapshot)
            with self._dispatch_lock:
                if self._pending is None:
                    self._delivering = False
                    return
                callback, snapshot = self._pending
                self._pending = None

    @staticmethod
    def _invoke(callback: TickCallback, snapshot: TickSnapshot):
        try:
            callback(snapshot.nodes, snapshot.fleet_health, snapshot.app_health, snapshot.extra)
        except Exception as exc:
            logger.error(f"Tick callback failed on tick {snapshot.tick}: {type(exc).__name__}: {exc}")

    def drain(self, timeout: Optional[float] = 5.0) -> bool:
        """Wait for dispatched callbacks to finish. True when nothing is pending."""
        pending = self._last_dispatch
        if pending is None:
            return True
        done, _ = wait([pending], timeout=timeout)
        return bool(done)

    # ── Background driver ───────────────────────────────────────────

    def start(self, interval_ms: Optional[int] = None):
        if interval_ms is not None:
            self.tick_interval_ms = interval_ms
        if self._thread is None or not self._thread.is_alive():
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name="fleetwatch-tick", daemon=True)
            self._thread.start()
            logger.info(f"Tick driver started ({self.tick_interval_ms}ms interval)")

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Tick thread did not exit within {timeout:.1f}s")
                return
            self._thread = None
        logger.info(f"Tick driver stopped after {self.tick_count} ticks")

    def close(self):
        self.stop()
        self._executor.shutdown(wait=True)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as exc:
                logger.exception(f"Tick error (will retry): {type(exc).__name__}: {exc}")
            self._stop_event.wait(timeout=self.tick_interval_ms / 1000)

    # ── Nodes & fleet ───────────────────────────────────────────────

    def get_nodes(self) -> List[Node]:
        with self._lock:
            return [n.copy() for n in self._nodes.values()]

    def get_node(self, node_id: str) -> Node:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise UnknownNodeError(node_id)
            return node.copy()

    def add_node(self, node: Union[Node, Dict[str, Any]]) -> Node:
        with self._lock:
            node = node if isinstance(node, Node) else node_from_dict(node, self.rng)
            if node.id in self._nodes:
                self.remove_node(node.id)
            self._nodes[node.id] = node
            return node.copy()

    def remove_node(self, node_id: str) -> Node:
        """Take a node out of the fleet, cancelling any incident it carries."""
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise UnknownNodeError(node_id)
            if node.current_incident is not None and node.current_incident.is_active:
                self.director.cancel_incident(node.current_incident.id)
            del self._nodes[node_id]
            self.engine.forget(node_id)
            logger.info(f"Node {node_id} removed from the fleet")
            return node.copy()

    def get_fleet_health(self) -> Dict[str, Any]:
        with self._lock:
            return self.engine.fleet_health(self._node_list(), self.clock())

    def get_datacenter_anomalies(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self.engine.datacenter_anomalies(self._node_list(), self.clock())

    def get_recent_alerts(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._alert_log)[-limit:][::-1]

    def get_healing_events(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._healing_log)[-limit:][::-1]

    @property
    def last_snapshot(self) -> Optional[TickSnapshot]:
        return self._last_snapshot

    # ── Incidents ───────────────────────────────────────────────────

    def list_scenarios(self) -> List[Dict[str, Any]]:
        return self.director.list_scenarios()

    def inject_incident(self, node_id: str, scenario: str, options: Optional[Dict[str, Any]] = None):
        with self._lock:
            return self.director.inject_incident(node_id, scenario, options)

    def cancel_incident(self, incident_id: str) -> Dict[str, str]:
        with self._lock:
            return self.director.cancel_incident(incident_id)

    def get_injected_incidents(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self.director.get_injected_incidents()

    def get_active_incidents(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self.director.get_active_incidents()

    # ── Topology & health ───────────────────────────────────────────

    def compute_application_health(self, app_name: str) -> HealthResult:
        with self._lock:
            return self.health.compute_application_health(app_name)

    def get_all_application_health(self) -> Dict[str, HealthResult]:
        with self._lock:
            return self.health.get_all_application_health()

    def get_topology(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "applications": self.graph.to_dict(),
                "discovery": self.registry.stats(),
            }

    def register_discovery_rule(self, rule: Union[DiscoveryRule, Dict[str, Any]]) -> DiscoveryRule:
        rule = rule if isinstance(rule, DiscoveryRule) else DiscoveryRule.from_dict(rule)
        self.registry.register(rule)
        return rule

    def register_custom_service(self, name: str, config: Optional[Dict[str, Any]] = None) -> DiscoveryRule:
        return self.registry.register_custom_service(name, config)

    # ── History ─────────────────────────────────────────────────────

    def get_historical_trend(self, metric: str, range_ms: int = 3_600_000):
        return self.history.get_historical_trend(metric, range_ms)

    def get_event_timeline(self, range_ms: int = 3_600_000):
        return self.history.get_event_timeline(range_ms)

    def export_historical_data(self, fmt: str = "json") -> str:
        return self.history.export_historical_data(fmt)

    def get_historical_summary(self) -> Dict[str, Any]:
        return self.history.get_historical_summary()

    # ── Root cause ──────────────────────────────────────────────────

    def analyze_root_cause(self, range_ms: int = 3_600_000,
                           deployments: Optional[List[Deployment]] = None):
        """Build an event window from alerts, incidents and history, then rank hypotheses."""
        with self._lock:
            now = self.clock()
            cutoff = now - range_ms
            node_types = {n.id: n.type for n in self._nodes.values()}
            zones = {n.id: n.datacenter for n in self._nodes.values()}
            names = {n.id: n.name for n in self._nodes.values()}
            alerts = [a for a in self._alert_log if a["timestamp"] >= cutoff]
            incidents = [i for i in self.director.get_injected_incidents() if i["start_time"] >= cutoff]

        events = events_from_alerts(alerts, node_types)
        events += events_from_incidents(incidents, zones, names)
        events += events_from_timeline(self.history.get_event_timeline(range_ms), zones)

        series = {"cpu": [], "memory": [], "latency": []}
        for metric, key in (("cpu", "cpu"), ("memory", "memory"), ("network", "latency")):
            series[key] = [p["value"] for p in self.history.get_historical_trend(metric, range_ms)]

        hypotheses = self.analyzer.analyze(events, deployments, series)
        logger.debug(f"Root cause analysis: {len(events)} events -> {len(hypotheses)} hypotheses")
        return hypotheses


# ═══════════════════════════════════════════════════════════════════════════════
# CLI Interface
# ═══════════════════════════════════════════════════════════════════════════════

def main():
    """Run a headless simulation and write one JSON line per tick."""
    import argparse

    parser = argparse.ArgumentParser(description="Fleetwatch headless simulation")
    parser.add_argument("--ticks", type=int, default=20, help="Number of simulation ticks")
    parser.add_argument("--interval-ms", type=int, default=3000, help="Simulated time per tick")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument("--config", type=str, default=None, help="World config JSON file")
    parser.add_argument("--inject", action="append", default=[],
                        help="node_id:scenario to inject before the first tick (repeatable)")
    parser.add_argument("--output", type=str, default="simulation_output.jsonl", help="Output file")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s | %(levelname)-7s | %(name)-24s | %(message)s")

    world = SimulationWorld.from_config(
        load_world_config(args.config),
        seed=args.seed,
        start_time_ms=int(time.time() * 1000),
        tick_interval_ms=args.interval_ms,
    )
    for spec in args.inject:
        node_id, _, scenario = spec.partition(":")
        print(world.inject_incident(node_id, scenario)["message"])

    with open(args.output, "w") as f:
        for snapshot in world.run(args.ticks):
            f.write(json.dumps(snapshot.to_dict()) + "\n")

    hypotheses = world.analyze_root_cause()
    world.close()

    print(f"Simulated {args.ticks} ticks, fleet health: {world.get_fleet_health()}")
    print(f"Top hypotheses: {[h.title for h in hypotheses[:3]]}")
    print(f"Output written to: {args.output}")


if __name__ == "__main__":
    main()
