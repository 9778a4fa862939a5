#!/usr/bin/env python3
"""HTTP surface: status codes, error mapping and response shapes"""

import os
import sys
import threading
import time

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

# Settings are read once at import time
os.environ["AUTO_START"] = "false"
os.environ.setdefault("SIMULATION_SEED", "42")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

from api.server import app


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as c:
        yield c


def test_health_reports_stopped_driver(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["tick_driver"] == "stopped"
    assert response.headers["X-Request-ID"]
    assert response.headers["X-Response-Time"].endswith("ms")


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert response.headers["X-Request-ID"] == "abc123"


def test_manual_tick(client):
    response = client.post("/simulation/tick", json={"ticks": 3})
    assert response.status_code == 200
    body = response.json()
    assert body["ticks"] == 3
    assert body["fleet_health"]["total_servers"] == 33

    assert client.post("/simulation/tick").json()["ticks"] == 1
    assert client.post("/simulation/tick", json={"ticks": 0}).status_code == 422


def test_nodes_and_filters(client):
    body = client.get("/nodes").json()
    assert body["total"] == 33
    dbs = client.get("/nodes", params={"type": "db"}).json()
    assert dbs["total"] > 0
    assert all(n["type"] == "db" for n in dbs["nodes"])

    assert client.get("/nodes/db-east-01").json()["name"] == "user-db-01"
    missing = client.get("/nodes/nope")
    assert missing.status_code == 404
    assert missing.json()["error"] == "UnknownNodeError"


def test_fleet_health(client):
    body = client.get("/fleet/health").json()
    assert set(body) == {"fleet", "anomalies", "recent_alerts", "recent_healing"}


def test_applications(client):
    body = client.get("/applications").json()
    assert body["total"] == 10
    health = client.get("/applications/payment-service/health")
    assert health.status_code == 200
    assert health.json()["application"] == "payment-service"
    assert client.get("/applications/nope/health").status_code == 404


def test_topology_and_discovery_rules(client):
    response = client.post("/discovery/rules", json={"name": "ledger", "server_type": "worker", "instances": 2})
    assert response.status_code == 201
    assert response.json()["rule"]["fallback"]["strategy"] == "first_of_type"

    topology = client.get("/topology").json()
    assert "ledger" in topology["discovery"]["registered_rules"]
    assert "payment-service" in topology["applications"]


def test_incident_lifecycle(client):
    assert len(client.get("/scenarios").json()["scenarios"]) == 5

    created = client.post("/incidents", json={"node_id": "db-east-01", "scenario": "memory_exhaustion"})
    assert created.status_code == 201
    body = created.json()
    assert body["estimatedDuration"] == 45000
    incident_id = body["incidentId"]

    active = client.get("/incidents", params={"active_only": True}).json()
    assert incident_id in [i["id"] for i in active["incidents"]]

    assert client.delete(f"/incidents/{incident_id}").status_code == 200
    again = client.delete(f"/incidents/{incident_id}")
    assert again.status_code == 409
    assert again.json()["error"] == "IncidentStateError"
    assert client.delete("/incidents/inj-0-nope").status_code == 404


def test_incident_validation(client):
    unknown = client.post("/incidents", json={"node_id": "db-east-01", "scenario": "meteor_strike"})
    assert unknown.status_code == 404
    bad_duration = client.post("/incidents", json={"node_id": "db-east-01", "scenario": "disk_full", "duration": 0})
    assert bad_duration.status_code == 422
    low = client.post("/incidents", json={"node_id": "api-east-01", "scenario": "memory_exhaustion",
                                          "severity": "low"})
    assert low.json()["estimatedDuration"] == 15000


def test_history_endpoints(client):
    client.post("/simulation/tick", json={"ticks": 2})

    trend = client.get("/history/trend", params={"metric": "cpu"}).json()
    assert trend["points"]
    assert client.get("/history/trend", params={"metric": "temperature"}).status_code == 400

    assert "events" in client.get("/history/timeline").json()
    assert client.get("/history/summary").json()["total_snapshots"] >= 2

    csv_response = client.get("/history/export", params={"format": "csv"})
    assert csv_response.headers["content-type"].startswith("text/csv")
    assert csv_response.text.startswith("timestamp,avgCpuUsage")
    assert "metricSnapshots" in client.get("/history/export").json()
    assert client.get("/history/export", params={"format": "xml"}).status_code == 400


def test_hypotheses(client):
    response = client.get("/analysis/hypotheses", params={"limit": 5})
    assert response.status_code == 200
    body = response.json()
    assert len(body["hypotheses"]) <= 5
    for h in body["hypotheses"]:
        assert set(h["remediation"]) == {"immediate", "short_term", "long_term"}


def test_world_calls_run_off_the_event_loop(client):
    from api import server

    world = server.get_world()
    held, release = threading.Event(), threading.Event()
    results = {}

    def hold_world_lock():
        with world._lock:
            held.set()
            release.wait(10)

    holder = threading.Thread(target=hold_world_lock)
    holder.start()
    assert held.wait(5)

    waiting = threading.Thread(target=lambda: results.setdefault("nodes", client.get("/nodes").status_code))
    waiting.start()
    time.sleep(0.2)
    try:
        quick = threading.Thread(target=lambda: results.setdefault("health", client.get("/health").status_code))
        quick.start()
        quick.join(5)
        assert results.get("health") == 200
        assert "nodes" not in results
    finally:
        release.set()
        holder.join(5)
        waiting.join(5)
    assert results["nodes"] == 200


def test_remove_node(client):
    response = client.delete("/nodes/cache-east-02")
    assert response.status_code == 200
    assert response.json()["node"]["id"] == "cache-east-02"
    assert client.get("/nodes/cache-east-02").status_code == 404
    assert client.delete("/nodes/cache-east-02").status_code == 404
