#!/usr/bin/env python3
"""SimulationWorld: tick ordering, copies handed to observers, facade operations"""

import os
import sys
import threading
import time

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

import pytest

from agents.rca_agent import Hypothesis
from simulator.defaults import load_world_config, DEFAULT_APPLICATIONS
from simulator.errors import UnknownApplicationError, UnknownNodeError
from simulator.world import SimulationWorld

START = 1_700_000_000_000
HEALTH_STATUSES = {"healthy", "warning", "critical", "failure", "unknown"}


@pytest.fixture
def world():
    w = SimulationWorld.from_config(load_world_config(), seed=7, start_time_ms=START)
    yield w
    w.close()


def test_tick_advances_simulated_clock(world):
    snapshot = world.tick()
    assert snapshot.tick == 1
    assert snapshot.timestamp == START + 3000
    assert world.tick(500).timestamp == START + 3500


def test_every_application_gets_a_result(world):
    for snapshot in world.run(20):
        assert set(snapshot.app_health) == {a["name"] for a in DEFAULT_APPLICATIONS}
        for result in snapshot.app_health.values():
            assert result["status"] in HEALTH_STATUSES
            assert 0 <= result["score"] <= 100
            assert result["dependency_penalty"] <= 50


def test_snapshot_nodes_are_copies(world):
    snapshot = world.tick()
    snapshot.nodes[0].status = "offline"
    snapshot.nodes[0].metrics.cpu = 99.0

    live = world.get_node(snapshot.nodes[0].id)
    assert live.metrics.cpu != 99.0 or live.status != "offline"
    assert world.get_nodes()[0] is not world.get_nodes()[0]


def test_callback_receives_each_tick_and_can_be_replaced(world):
    first, second = [], []
    world.set_tick_callback(lambda nodes, fleet, apps, extra: first.append(extra["business_load"]))
    world.tick()
    assert world.drain()

    world.set_tick_callback(lambda nodes, fleet, apps, extra: second.append(len(nodes)))
    world.tick()
    assert world.drain()
    world.tick()
    assert world.drain()

    assert len(first) == 1
    assert second == [33, 33]


def test_failing_callback_does_not_stop_ticks(world):
    def boom(*_):
        raise RuntimeError("observer broke")

    world.set_tick_callback(boom)
    world.run(3)
    assert world.drain()
    assert world.tick_count == 3


def test_slow_callback_does_not_block_tick(world):
    release = threading.Event()
    world.set_tick_callback(lambda *_: release.wait(5))
    world.tick()
    world.tick()
    assert world.tick_count == 2
    release.set()
    assert world.drain()


def test_slow_callback_only_keeps_newest_tick_waiting(world):
    release = threading.Event()
    delivered = []
    world.set_tick_callback(lambda nodes, fleet, apps, extra: delivered.append(fleet["timestamp"]) or release.wait(5))

    world.run(300)
    assert world.pending_dispatches <= 1
    assert world.coalesced_dispatches == 298

    release.set()
    assert world.drain()
    assert delivered == [START + 3000, START + 300 * 3000]
    assert world.pending_dispatches == 0


def test_injected_incident_runs_to_completion(world):
    result = world.inject_incident("db-east-02", "memory_exhaustion")
    assert world.get_node("db-east-02").status == "warning"
    assert [i["id"] for i in world.get_active_incidents()] == [result["incidentId"]]

    world.run(16)
    assert world.get_active_incidents() == []
    record = next(i for i in world.get_injected_incidents() if i["id"] == result["incidentId"])
    assert record["status"] == "completed"


def test_cancel_through_world(world):
    incident_id = world.inject_incident("api-east-01", "cpu_thermal")["incidentId"]
    world.tick()
    world.cancel_incident(incident_id)
    assert world.get_node("api-east-01").current_incident is None


def test_unknown_lookups_raise(world):
    with pytest.raises(UnknownNodeError):
        world.get_node("nope")
    with pytest.raises(UnknownApplicationError):
        world.compute_application_health("nope")


def test_custom_service_changes_resolution(world):
    world.register_custom_service("ledger", {"server_type": "worker", "instances": 1})
    world.add_node({"id": "api-east-09", "name": "ledger-api-01", "type": "api"})
    nodes = world.resolver.resolve("ledger", world.get_nodes())
    assert [n.id for n in nodes] == ["api-east-09"]
    assert "ledger" in world.get_topology()["discovery"]["registered_rules"]


def test_removed_node_leaves_no_state_behind(world):
    incident_id = world.inject_incident("api-east-01", "cpu_thermal")["incidentId"]
    world.tick()
    assert "api-east-01" in world.engine._last_seen

    removed = world.remove_node("api-east-01")
    assert removed.id == "api-east-01"
    assert "api-east-01" not in world.engine._last_seen
    assert world.director.get(incident_id).status == "cancelled"
    with pytest.raises(UnknownNodeError):
        world.get_node("api-east-01")
    with pytest.raises(UnknownNodeError):
        world.remove_node("api-east-01")
    assert len(world.tick().nodes) == 32


def test_history_is_bounded():
    w = SimulationWorld.from_config(load_world_config(), seed=1, start_time_ms=START,
                                    history_max=20, app_health_history_max=5)
    w.run(40)
    sizes = w.history.sizes()
    assert sizes["metric_snapshots"] == 20
    assert sizes["application_health"] == 20
    assert sizes["evolution"] <= 20
    assert all(len(app.health_history) == 5 for app in w.graph.applications())
    w.close()


def test_history_views(world):
    world.run(5)
    assert len(world.get_historical_trend("cpu")) == 5
    assert world.get_historical_summary()["total_snapshots"] == 5
    assert world.export_historical_data("csv").startswith("timestamp,avgCpuUsage")


def test_root_cause_analysis_after_incidents(world):
    for node_id in ("db-east-02", "api-east-02", "queue-east-01"):
        world.inject_incident(node_id, "dependency_cascade")
    world.run(10)

    hypotheses = world.analyze_root_cause()
    assert hypotheses
    assert all(isinstance(h, Hypothesis) for h in hypotheses)
    priorities = [h.priority for h in hypotheses]
    assert priorities == sorted(priorities, reverse=True)
    assert "pattern-cascade" in {h.id for h in hypotheses}


def test_seeded_worlds_are_reproducible():
    def trajectory():
        w = SimulationWorld.from_config(load_world_config(), seed=99, start_time_ms=START)
        snapshots = w.run(15)
        w.close()
        return [(n.id, n.status, round(n.metrics.cpu, 6)) for n in snapshots[-1].nodes]

    assert trajectory() == trajectory()


def test_background_driver_ticks_until_stopped():
    w = SimulationWorld.from_config(load_world_config(), seed=3, start_time_ms=START)
    w.start(interval_ms=10)
    deadline = time.time() + 5
    while w.tick_count < 3 and time.time() < deadline:
        time.sleep(0.01)
    assert w.running
    w.close()
    assert not w.running
    assert w.tick_count >= 3
