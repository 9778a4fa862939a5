#!/usr/bin/env python3
"""History recorder: delta capture, bounded buffers, trends and exports"""

import json
import os
import sys

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

import pytest

from metrics.history import HistoryRecorder, CSV_COLUMNS, aggregate_node_metrics
from simulator.models import Node, NodeMetrics

START = 1_700_000_000_000


class ManualClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def _nodes(status="online", cpu=30.0):
    return [
        Node(id="a", name="api-01", type="api", datacenter="dc-east", status=status,
             metrics=NodeMetrics(cpu=cpu, memory=40, network_latency=20)),
        Node(id="b", name="db-01", type="db", datacenter="dc-west",
             metrics=NodeMetrics(cpu=50, memory=60, network_latency=10)),
    ]


FLEET = {"healthy_pct": 100.0, "total_servers": 2}


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def recorder(clock):
    return HistoryRecorder(max_history_size=100, clock=clock)


def test_first_capture_is_baseline_only(recorder):
    delta = recorder.capture_snapshot(_nodes(), FLEET, {}, 1.0, START)
    assert delta["changes"] == []
    assert recorder.sizes() == {"evolution": 0, "metric_snapshots": 1, "application_health": 1}


def test_status_and_metric_changes_are_recorded(recorder):
    recorder.capture_snapshot(_nodes(), FLEET, {}, 1.0, START)
    delta = recorder.capture_snapshot(_nodes(status="critical", cpu=95), FLEET, {}, 1.0, START + 3000)

    by_type = {c["type"]: c for c in delta["changes"]}
    assert by_type["status_change"]["from"] == "online"
    assert by_type["status_change"]["to"] == "critical"
    assert by_type["metrics_change"]["metrics"]["cpu"] == {"from": 30.0, "to": 95.0}
    assert "memory" not in by_type["metrics_change"]["metrics"]


def test_small_moves_are_not_recorded(recorder):
    recorder.capture_snapshot(_nodes(cpu=30), FLEET, {}, 1.0, START)
    delta = recorder.capture_snapshot(_nodes(cpu=39.9), FLEET, {}, 1.0, START + 3000)
    assert delta["changes"] == []
    assert recorder.sizes()["evolution"] == 0


def test_new_node_is_reported(recorder):
    recorder.capture_snapshot(_nodes()[:1], FLEET, {}, 1.0, START)
    delta = recorder.capture_snapshot(_nodes(), FLEET, {}, 1.0, START + 3000)
    assert [c["type"] for c in delta["changes"]] == ["new_server"]
    assert delta["changes"][0]["node_id"] == "b"


def test_buffers_stay_bounded_over_long_runs():
    recorder = HistoryRecorder(max_history_size=50, clock=lambda: START)
    for i in range(10_000):
        status = "online" if i % 2 == 0 else "warning"
        recorder.capture_snapshot(_nodes(status=status), FLEET, {"shop": {"score": 90, "status": "healthy"}},
                                  1.0, START + i * 3000)

    sizes = recorder.sizes()
    assert sizes["evolution"] == 50
    assert sizes["metric_snapshots"] == 50
    assert sizes["application_health"] == 50


def test_trend_and_aliases(recorder, clock):
    for i, cpu in enumerate((30, 50, 70)):
        recorder.capture_snapshot(_nodes(cpu=cpu), FLEET, {}, 1.2, START + i * 1000)
    clock.now = START + 2000

    cpu = recorder.get_historical_trend("cpu")
    assert [p["value"] for p in cpu] == [40.0, 50.0, 60.0]
    assert recorder.get_historical_trend("latency") == recorder.get_historical_trend("network")
    assert [p["value"] for p in recorder.get_historical_trend("businessLoad")] == [1.2, 1.2, 1.2]
    assert len(recorder.get_historical_trend("cpu", range_ms=1000)) == 2

    with pytest.raises(ValueError):
        recorder.get_historical_trend("temperature")


def test_timeline_is_newest_first(recorder, clock):
    recorder.capture_snapshot(_nodes(), FLEET, {}, 1.0, START)
    recorder.capture_snapshot(_nodes(status="warning"), FLEET, {}, 1.0, START + 1000)
    recorder.capture_snapshot(_nodes(status="critical"), FLEET, {}, 1.0, START + 2000)
    clock.now = START + 2000

    timeline = recorder.get_event_timeline()
    assert [e["timestamp"] for e in timeline] == [START + 2000, START + 1000]


def test_csv_export(recorder):
    recorder.capture_snapshot(_nodes(), FLEET, {}, 1.5, START)
    recorder.capture_snapshot(_nodes(), FLEET, {}, 0.7, START + 3000)

    lines = recorder.export_historical_data("csv").strip().split("\n")
    assert lines[0] == ",".join(CSV_COLUMNS)
    assert len(lines) == 3
    assert lines[1] == "2023-11-14T22:13:20.000Z,40.00,50.00,15.00,100.00,1.50"


def test_json_export_and_summary(recorder):
    recorder.capture_snapshot(_nodes(), FLEET, {}, 1.0, START)
    data = json.loads(recorder.export_historical_data("json"))
    assert set(data) == {"evolutionHistory", "metricSnapshots", "applicationHealthHistory", "exportedAt"}
    assert len(data["metricSnapshots"]) == 1

    summary = recorder.get_historical_summary()
    assert summary["total_snapshots"] == 1
    assert summary["oldest_snapshot"] == START

    with pytest.raises(ValueError):
        recorder.export_historical_data("xml")


def test_application_health_accepts_result_objects(recorder):
    class Result:
        def to_dict(self):
            return {"score": 42.0, "status": "critical", "reason": "x"}

    recorder.capture_snapshot(_nodes(), FLEET, {"shop": Result()}, 1.0, START)
    entry = recorder.get_application_health_history()[0]
    assert entry["applications"] == {"shop": {"score": 42.0, "status": "critical"}}


def test_aggregate_ignores_virtual_nodes():
    nodes = _nodes() + [Node(id="v", name="v", type="api", virtual=True, metrics=NodeMetrics.zeroed())]
    aggregate = aggregate_node_metrics(nodes)
    assert aggregate["total_servers"] == 2
    assert aggregate["avg_cpu_usage"] == 40.0
    assert aggregate["by_datacenter"]["dc-east"]["count"] == 1
