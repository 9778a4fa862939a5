"""
Fleetwatch Incident Director
============================
Scripted multi-phase incidents injected onto individual nodes.

PURPOSE:
- Provide a catalog of predefined incident arcs (memory exhaustion, disk full, ...)
- Inject an arc onto a node, optionally rescaled or made more/less severe
- Advance arcs phase by phase as simulated time passes
- Cancel arcs early and restore the node

While a node carries an active incident the evolution engine leaves its
status alone. Phase changes are applied by `advance()`, which the world
calls at the start of every tick, before organic evolution runs.
"""

import logging
import time
from collections import deque
from typing import List, Dict, Any, Optional, Callable

from simulator.engine import improve_metrics, degrade_metrics
from simulator.errors import (
    UnknownNodeError,
    UnknownScenarioError,
    IncidentNotFoundError,
    IncidentStateError,
)
from simulator.models import Node, Phase, IncidentScenario, IncidentInstance, NodeStatus

logger = logging.getLogger("fleetwatch.incidents")


# ─────────────────────────────────────────────────────────────────────
# Scenario catalog
# ─────────────────────────────────────────────────────────────────────

SCENARIOS: Dict[str, IncidentScenario] = {
    "memory_exhaustion": IncidentScenario(
        name="memory_exhaustion",
        description="Memory leak grows until the process is killed and restarted.",
        phases=(
            Phase("warning", 10000, "Memory usage climbing rapidly"),
            Phase("critical", 5000, "Memory exhaustion imminent"),
            Phase("offline", 30000, "Out of memory, process killed"),
            Phase("online", 0, "Process restarted with fresh memory"),
        ),
    ),
    "disk_full": IncidentScenario(
        name="disk_full",
        description="Disk fills up, writes fail, operators clean up space.",
        phases=(
            Phase("warning", 15000, "Disk space running low"),
            Phase("critical", 10000, "Disk nearly full, writes failing"),
            Phase("maintenance", 45000, "Cleaning up disk space"),
            Phase("online", 0, "Disk space restored"),
        ),
    ),
    "network_storm": IncidentScenario(
        name="network_storm",
        description="Traffic spike saturates the network interface until shaping kicks in.",
        phases=(
            Phase("warning", 5000, "Network traffic spike detected"),
            Phase("critical", 20000, "Network interface overwhelmed"),
            Phase("warning", 15000, "Traffic shaping activated"),
            Phase("online", 0, "Network traffic normalized"),
        ),
    ),
    "cpu_thermal": IncidentScenario(
        name="cpu_thermal",
        description="CPU overheats, throttles, and needs a cooling intervention.",
        phases=(
            Phase("warning", 8000, "CPU temperature rising"),
            Phase("critical", 12000, "Thermal throttling activated"),
            Phase("maintenance", 60000, "Cooling system intervention"),
            Phase("online", 0, "Normal operating temperature restored"),
        ),
    ),
    "dependency_cascade": IncidentScenario(
        name="dependency_cascade",
        description="Upstream failures cascade into this node before partial then full restoration.",
        phases=(
            Phase("warning", 3000, "Upstream dependency issues detected"),
            Phase("critical", 25000, "Cascade failure in progress"),
            Phase("warning", 10000, "Partial service restoration"),
            Phase("online", 0, "Full service restored"),
        ),
    ),
}

# Metric each scenario pushes hardest, with its warning/critical targets.
SCENARIO_FOCUS: Dict[str, tuple] = {
    "memory_exhaustion": ("memory", 85.0, 97.0),
    "disk_full": ("disk_usage", 85.0, 98.0),
    "network_storm": ("network_latency", 150.0, 400.0),
    "cpu_thermal": ("cpu", 85.0, 97.0),
    "dependency_cascade": ("network_latency", 120.0, 250.0),
}

PHASE_SEVERITY = {"offline": 4, "critical": 3, "maintenance": 2, "warning": 1, "online": 0}


def apply_incident_options(scenario: IncidentScenario, options: Optional[Dict[str, Any]]) -> List[Phase]:
    """
    Phases of `scenario` after options are applied.

    `duration` rescales every phase so the total matches it; then
    `severity="high"` stretches every phase by 1.5 and `severity="low"`
    drops offline phases.
    """
    options = options or {}
    phases = list(scenario.phases)

    duration = options.get("duration")
    if duration is not None:
        if duration <= 0:
            raise ValueError(f"Incident duration must be positive, got {duration}")
        total = sum(p.duration_ms for p in phases)
        if total > 0:
            scale = duration / total
            phases = [Phase(p.status, int(round(p.duration_ms * scale)), p.description) for p in phases]

    severity = options.get("severity")
    if severity == "high":
        phases = [Phase(p.status, int(round(p.duration_ms * 1.5)), p.description) for p in phases]
    elif severity == "low":
        phases = [p for p in phases if p.status != NodeStatus.OFFLINE.value]

    if not phases:
        raise ValueError(f"Scenario {scenario.name} has no phases left after options {options}")
    return phases


class IncidentDirector:
    """
    Owns every injected incident record.

    Not thread-safe on its own; the simulation world serializes access
    together with the tick.
    """

    def __init__(
        self,
        node_lookup: Callable[[str], Optional[Node]],
        clock: Optional[Callable[[], int]] = None,
        scenarios: Optional[Dict[str, IncidentScenario]] = None,
        max_finished: int = 500,
    ):
        self._node_lookup = node_lookup
        self._clock = clock or (lambda: int(time.time() * 1000))
        self.scenarios = dict(scenarios or SCENARIOS)
        self._incidents: Dict[str, IncidentInstance] = {}
        # ids of completed, cancelled and superseded incidents, oldest first
        self._finished: deque = deque()
        self.max_finished = max_finished

    def list_scenarios(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self.scenarios.values()]

    # ── Inject / cancel ─────────────────────────────────────────────

    def inject_incident(self, node_id: str, scenario_name: str,
                        options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        node = self._node_lookup(node_id)
        if node is None:
            raise UnknownNodeError(node_id)
        scenario = self.scenarios.get(scenario_name)
        if scenario is None:
            raise UnknownScenarioError(scenario_name)
        phases = apply_incident_options(scenario, options)

        now = self._clock()
        previous = node.current_incident
        if previous is not None and previous.is_active:
            previous.status = "superseded"
            previous.ended_at = now
            self._retire(previous)
            logger.info(f"Incident {previous.id} on {node.name} superseded by new {scenario_name}")

        incident = IncidentInstance(
            id=self._new_id(now, node_id),
            node_id=node_id,
            scenario=scenario_name,
            phases=phases,
            start_time=now,
            options=dict(options or {}),
            phase_started_at=now,
        )
        self._incidents[incident.id] = incident
        node.current_incident = incident
        self._apply_phase(node, incident)

        logger.info(
            f"Injected {scenario_name} into {node.name} ({incident.id}), "
            f"{len(phases)} phases, ~{incident.estimated_duration / 1000:.0f}s"
        )
        return {
            "incidentId": incident.id,
            "message": f"Injected {scenario_name} incident into server {node.name}",
            "estimatedDuration": incident.estimated_duration,
        }

    def cancel_incident(self, incident_id: str) -> Dict[str, str]:
        incident = self._incidents.get(incident_id)
        if incident is None:
            raise IncidentNotFoundError(incident_id)
        if not incident.is_active:
            raise IncidentStateError(incident_id, incident.status)

        node = self._node_lookup(incident.node_id)
        if node is not None and node.current_incident is incident:
            node.status = NodeStatus.ONLINE.value
            node.metrics = improve_metrics(node.metrics, 0.8)
            node.current_incident = None

        incident.status = "cancelled"
        incident.ended_at = self._clock()
        self._retire(incident)
        logger.info(f"Incident {incident_id} cancelled")
        return {"message": f"Incident {incident_id} cancelled"}

    def _new_id(self, now: int, node_id: str) -> str:
        base = f"inj-{now}-{node_id}"
        candidate, n = base, 1
        while candidate in self._incidents:
            n += 1
            candidate = f"{base}-{n}"
        return candidate

    def _retire(self, incident: IncidentInstance):
        """Keep at most `max_finished` ended records; the oldest are forgotten."""
        self._finished.append(incident.id)
        while len(self._finished) > self.max_finished:
            self._incidents.pop(self._finished.popleft(), None)

    # ── Phase arc ───────────────────────────────────────────────────

    def advance(self, now: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Move every active incident forward to `now`.

        Several phases may pass in one call when ticks are coarse. Returns
        one transition record per phase entered.
        """
        now = self._clock() if now is None else now
        transitions = []
        for incident in list(self._incidents.values()):
            if not incident.is_active:
                continue
            node = self._node_lookup(incident.node_id)
            if node is None or node.current_incident is not incident:
                incident.status = "superseded"
                incident.ended_at = now
                self._retire(incident)
                continue

            while incident.is_active:
                phase = incident.current_phase
                if now - incident.phase_started_at < phase.duration_ms:
                    break
                if incident.phase_index >= len(incident.phases) - 1:
                    self._complete(node, incident, incident.phase_started_at + phase.duration_ms)
                    break
                incident.phase_started_at += phase.duration_ms
                incident.phase_index += 1
                self._apply_phase(node, incident)
                transitions.append({
                    "incident_id": incident.id,
                    "node_id": node.id,
                    "phase_index": incident.phase_index,
                    "status": incident.current_phase.status,
                    "description": incident.current_phase.description,
                    "timestamp": incident.phase_started_at,
                })
        return transitions

    def _apply_phase(self, node: Node, incident: IncidentInstance):
        phase = incident.current_phase
        node.status = phase.status
        focus = SCENARIO_FOCUS.get(incident.scenario)

        if phase.status in ("warning", "critical"):
            node.metrics = degrade_metrics(node.metrics, 0.15 if phase.status == "warning" else 0.3)
            if focus:
                name, warning_target, critical_target = focus
                target = warning_target if phase.status == "warning" else critical_target
                setattr(node.metrics, name, max(getattr(node.metrics, name), target))
                node.metrics.clamp()
        elif phase.status == "maintenance":
            node.metrics = improve_metrics(node.metrics, 0.3)
        elif phase.status == "online":
            node.metrics = improve_metrics(node.metrics, 0.6)

    def _complete(self, node: Node, incident: IncidentInstance, at: int):
        node.status = incident.current_phase.status
        node.current_incident = None
        incident.status = "completed"
        incident.ended_at = at
        self._retire(incident)
        logger.info(f"Incident {incident.id} on {node.name} completed")

    # ── Queries ─────────────────────────────────────────────────────

    def get(self, incident_id: str) -> Optional[IncidentInstance]:
        return self._incidents.get(incident_id)

    def get_injected_incidents(self) -> List[Dict[str, Any]]:
        return [i.to_dict() for i in self._incidents.values()]

    def get_active_incidents(self) -> List[Dict[str, Any]]:
        """Active incidents joined with their node, most severe phase first."""
        active = []
        for incident in self._incidents.values():
            if not incident.is_active:
                continue
            node = self._node_lookup(incident.node_id)
            record = incident.to_dict()
            record["current_status"] = incident.current_phase.status
            record["current_description"] = incident.current_phase.description
            if node is not None:
                record["node_name"] = node.name
                record["datacenter"] = node.datacenter
                record["node_type"] = node.type
            active.append(record)
        active.sort(key=lambda r: PHASE_SEVERITY.get(r["current_status"], 0), reverse=True)
        return active
