"""
Fleetwatch — Fleet Health Simulator API
=======================================
FastAPI front door for a running SimulationWorld:
- Request ID tracing (X-Request-ID) and response timing (X-Response-Time)
- Background tick driver started and stopped with the app lifespan
- Simulation errors mapped to 404 / 409, bad input to 400 / 422
- Environment-based configuration

ARCHITECTURE LAYER: Interface Gateway
Read-only views of nodes, applications, history and hypotheses, plus the
few write operations (incident injection, manual ticks, discovery rules).
"""

from datetime import datetime, timezone
from functools import partial
from typing import List, Dict, Any, Optional
from contextlib import asynccontextmanager
import asyncio
import logging
import sys

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from simulator.defaults import load_world_config
from simulator.engine import EvolutionSettings
from simulator.errors import (
    SimulationError,
    UnknownNodeError,
    UnknownScenarioError,
    UnknownApplicationError,
    IncidentNotFoundError,
    IncidentStateError,
)
from simulator.world import SimulationWorld

from api.config import settings
from api.middleware import (
    RequestIDMiddleware,
    TimingMiddleware,
    ErrorHandlerMiddleware,
)

# ═══════════════════════════════════════════════════════════════════════════════
# LOGGING
# ═══════════════════════════════════════════════════════════════════════════════

_LOG_FORMATS = {
    "structured": "%(asctime)s | %(levelname)-7s | %(name)-24s | %(message)s",
    "simple": "%(levelname)s %(name)s: %(message)s",
}


def _setup_logging():
    """Configure root logging from LOG_LEVEL / LOG_FORMAT."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    formatter = logging.Formatter(
        fmt=_LOG_FORMATS.get(settings.LOG_FORMAT, _LOG_FORMATS["structured"]),
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers.clear()
    root.addHandler(handler)

    # Quiet third-party chatter
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

_setup_logging()
logger = logging.getLogger("fleetwatch.api")


# ═══════════════════════════════════════════════════════════════════════════════
# PYDANTIC MODELS (API Contracts)
# ═══════════════════════════════════════════════════════════════════════════════

class IncidentRequest(BaseModel):
    """Inject a scripted incident on one node."""
    node_id: str = Field(..., min_length=1, max_length=128)
    scenario: str = Field(..., min_length=1, max_length=64, description="Scenario name, see GET /scenarios")
    duration: Optional[int] = Field(None, gt=0, description="Total incident length in ms")
    severity: Optional[str] = Field(None, pattern="^(low|normal|high)$")


class DiscoveryRuleRequest(BaseModel):
    """Register a custom service name for dependency resolution."""
    name: str = Field(..., min_length=1, max_length=128)
    kind: str = "service"
    port: int = Field(8080, ge=1, le=65535)
    protocol: str = "http"
    engine: str = "generic"
    category: str = "application"
    server_type: Optional[str] = Field(None, description="Fallback: first N nodes of this type")
    instances: int = Field(1, ge=1, le=100)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    matcher: Optional[Dict[str, Any]] = None
    fallback: Optional[Dict[str, Any]] = None


class TickRequest(BaseModel):
    ticks: int = Field(1, ge=1, le=1000)
    delta_ms: Optional[int] = Field(None, gt=0)


# ═══════════════════════════════════════════════════════════════════════════════
# GLOBAL STATE
# ═══════════════════════════════════════════════════════════════════════════════

_world: Optional[SimulationWorld] = None
_startup_time: Optional[datetime] = None


def get_world() -> SimulationWorld:
    if _world is None:
        raise HTTPException(status_code=503, detail="Simulation world not initialised")
    return _world


async def in_thread(func, *args, **kwargs):
    """Run a lock-taking world call in the default executor, off the event loop."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))


def build_world() -> SimulationWorld:
    """Assemble a world from the current settings."""
    config = load_world_config(settings.WORLD_CONFIG_PATH or None)
    return SimulationWorld.from_config(
        config,
        seed=settings.SIMULATION_SEED,
        tick_interval_ms=settings.TICK_INTERVAL_MS,
        history_max=settings.HISTORY_MAX_SIZE,
        app_health_history_max=settings.APP_HEALTH_HISTORY_MAX,
        evolution_settings=EvolutionSettings(
            business_hours=(settings.BUSINESS_HOURS_START, settings.BUSINESS_HOURS_END),
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: build the world and, with AUTO_START, launch the tick driver.
    Shutdown: stop the driver and flush pending tick callbacks.
    """
    global _world, _startup_time

    _startup_time = datetime.now(timezone.utc)

    logger.info("=" * 60)
    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info("=" * 60)

    _world = build_world()

    if settings.AUTO_START:
        _world.start()
    else:
        logger.info("AUTO_START disabled, advance with POST /simulation/tick")
    logger.info("Server ready — accepting requests")

    yield

    logger.info("Initiating graceful shutdown...")
    _world.close()
    logger.info(f"Shutdown complete. Ran {_world.tick_count} ticks.")


# ═══════════════════════════════════════════════════════════════════════════════
# APP SETUP
# ═══════════════════════════════════════════════════════════════════════════════

app = FastAPI(
    title="Fleetwatch — Fleet Health Simulator API",
    description=(
        "Synthetic server fleet with evolving metrics, scripted incidents, "
        "application health roll-ups and root-cause hypotheses.\n\n"
        "Every response includes `X-Request-ID` and `X-Response-Time` headers."
    ),
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Outermost first
app.add_middleware(ErrorHandlerMiddleware)
app.add_middleware(TimingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)


# ═══════════════════════════════════════════════════════════════════════════════
# EXCEPTION HANDLERS
# ═══════════════════════════════════════════════════════════════════════════════

_ERROR_STATUS = {
    UnknownNodeError: 404,
    UnknownScenarioError: 404,
    UnknownApplicationError: 404,
    IncidentNotFoundError: 404,
    IncidentStateError: 409,
}


def _error_body(request: Request, error: str, status_code: int, message: str) -> Dict[str, Any]:
    return {
        "error": error,
        "status_code": status_code,
        "message": message,
        "request_id": getattr(request.state, "request_id", "unknown"),
    }


@app.exception_handler(SimulationError)
async def simulation_error_handler(request: Request, exc: SimulationError):
    status_code = _ERROR_STATUS.get(type(exc), 400)
    logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(
        status_code=status_code,
        content=_error_body(request, type(exc).__name__, status_code, str(exc)),
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content=_error_body(request, "invalid_request", 400, str(exc)))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Return structured JSON for all HTTP errors."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail if isinstance(exc.detail, str) else "error",
            "status_code": exc.status_code,
            "request_id": getattr(request.state, "request_id", "unknown"),
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error(f"[{request_id}] Unhandled: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "The simulator hit an unexpected error.",
            "request_id": request_id,
        },
    )


# ═══════════════════════════════════════════════════════════════════════════════
# SYSTEM
# ═══════════════════════════════════════════════════════════════════════════════

@app.get("/health", tags=["System"])
async def health_check():
    """Liveness plus a short summary of the simulation driver."""
    now = datetime.now(timezone.utc)
    uptime_seconds = (now - _startup_time).total_seconds() if _startup_time else 0
    world = _world

    return {
        "status": "healthy" if world is not None else "unavailable",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "timestamp": now.isoformat(),
        "uptime_seconds": round(uptime_seconds),
        "tick_driver": "running" if world is not None and world.running else "stopped",
        "ticks_completed": world.tick_count if world is not None else 0,
        "tick_interval_ms": world.tick_interval_ms if world is not None else settings.TICK_INTERVAL_MS,
    }


@app.post("/simulation/tick", tags=["Simulation"])
async def trigger_simulation_tick(request: Optional[TickRequest] = None):
    """Advance the world by hand (useful with AUTO_START=false)."""
    request = request or TickRequest()
    world = get_world()
    snapshots = await in_thread(world.run, request.ticks, request.delta_ms)
    last = snapshots[-1]
    return {
        "ticks": len(snapshots),
        "tick": last.tick,
        "timestamp": last.timestamp,
        "fleet_health": last.fleet_health,
        "alerts": sum(len(s.extra["alerts"]) for s in snapshots),
        "healing_events": sum(len(s.extra["healing_events"]) for s in snapshots),
    }


# ═══════════════════════════════════════════════════════════════════════════════
# NODES & FLEET
# ═══════════════════════════════════════════════════════════════════════════════

@app.get("/nodes", tags=["Fleet"])
async def list_nodes(
    status: Optional[str] = Query(default=None, description="Filter by node status"),
    datacenter: Optional[str] = Query(default=None),
    node_type: Optional[str] = Query(default=None, alias="type"),
):
    nodes = [
        n for n in await in_thread(get_world().get_nodes)
        if (not status or n.status == status)
        and (not datacenter or n.datacenter == datacenter)
        and (not node_type or n.type == node_type)
    ]
    return {"nodes": [n.to_dict() for n in nodes], "total": len(nodes)}


@app.get("/nodes/{node_id}", tags=["Fleet"])
async def get_node(node_id: str):
    node = await in_thread(get_world().get_node, node_id)
    return node.to_dict()


@app.delete("/nodes/{node_id}", tags=["Fleet"])
async def remove_node(node_id: str):
    """Decommission a node; an incident running on it is cancelled first."""
    node = await in_thread(get_world().remove_node, node_id)
    return {"status": "removed", "node": node.to_dict()}


@app.get("/fleet/health", tags=["Fleet"])
async def get_fleet_health():
    world = get_world()

    def collect():
        return {
            "fleet": world.get_fleet_health(),
            "anomalies": world.get_datacenter_anomalies(),
            "recent_alerts": world.get_recent_alerts(limit=20),
            "recent_healing": world.get_healing_events(limit=10),
        }

    return await in_thread(collect)


# ═══════════════════════════════════════════════════════════════════════════════
# APPLICATIONS & TOPOLOGY
# ═══════════════════════════════════════════════════════════════════════════════

@app.get("/applications", tags=["Applications"])
async def list_application_health():
    results = await in_thread(get_world().get_all_application_health)
    return {
        "applications": {name: result.to_dict() for name, result in results.items()},
        "total": len(results),
    }


@app.get("/applications/{name}/health", tags=["Applications"])
async def get_application_health(name: str):
    result = await in_thread(get_world().compute_application_health, name)
    return result.to_dict()


@app.get("/topology", tags=["Applications"])
async def get_topology():
    return await in_thread(get_world().get_topology)


@app.post("/discovery/rules", tags=["Applications"], status_code=201)
async def register_discovery_rule(request: DiscoveryRuleRequest):
    """Register (or replace) a custom service used when resolving dependencies."""
    config = request.model_dump(exclude={"name"}, exclude_none=True)
    rule = await in_thread(get_world().register_custom_service, request.name, config)
    return {"status": "registered", "rule": rule.to_dict()}


# ═══════════════════════════════════════════════════════════════════════════════
# INCIDENTS
# ═══════════════════════════════════════════════════════════════════════════════

@app.get("/scenarios", tags=["Incidents"])
async def list_scenarios():
    return {"scenarios": await in_thread(get_world().list_scenarios)}


@app.post("/incidents", tags=["Incidents"], status_code=201)
async def inject_incident(request: IncidentRequest):
    """
    Start a scripted incident on a node.

    Any incident already active on that node is superseded.
    """
    options = {}
    if request.duration is not None:
        options["duration"] = request.duration
    if request.severity is not None:
        options["severity"] = request.severity
    return await in_thread(get_world().inject_incident, request.node_id, request.scenario, options)


@app.get("/incidents", tags=["Incidents"])
async def list_incidents(active_only: bool = Query(default=False)):
    world = get_world()
    listing = world.get_active_incidents if active_only else world.get_injected_incidents
    incidents = await in_thread(listing)
    return {"incidents": incidents, "total": len(incidents)}


@app.delete("/incidents/{incident_id}", tags=["Incidents"])
async def cancel_incident(incident_id: str):
    return await in_thread(get_world().cancel_incident, incident_id)


# ═══════════════════════════════════════════════════════════════════════════════
# HISTORY
# ═══════════════════════════════════════════════════════════════════════════════

@app.get("/history/trend", tags=["History"])
async def get_history_trend(
    metric: str = Query(default="cpu", description="cpu, memory, network, health or businessLoad"),
    range_ms: int = Query(default=3_600_000, gt=0),
):
    points = await in_thread(get_world().get_historical_trend, metric, range_ms)
    return {"metric": metric, "range_ms": range_ms, "points": points}


@app.get("/history/timeline", tags=["History"])
async def get_history_timeline(
    range_ms: int = Query(default=3_600_000, gt=0),
    limit: int = Query(default=200, ge=1, le=5000),
):
    events = await in_thread(get_world().get_event_timeline, range_ms)
    return {"events": events[:limit], "total": len(events)}


@app.get("/history/export", tags=["History"])
async def export_history(fmt: str = Query(default="json", alias="format")):
    body = await in_thread(get_world().export_historical_data, fmt)
    if fmt == "csv":
        return Response(
            content=body,
            media_type="text/csv",
            headers={"Content-Disposition": "attachment; filename=fleet-history.csv"},
        )
    return Response(content=body, media_type="application/json")


@app.get("/history/summary", tags=["History"])
async def get_history_summary():
    return await in_thread(get_world().get_historical_summary)


# ═══════════════════════════════════════════════════════════════════════════════
# ROOT CAUSE ANALYSIS
# ═══════════════════════════════════════════════════════════════════════════════

@app.get("/analysis/hypotheses", tags=["Analysis"])
async def get_hypotheses(
    range_ms: int = Query(default=3_600_000, gt=0),
    limit: int = Query(default=10, ge=1, le=100),
):
    """Ranked root-cause hypotheses over the recent alert/incident/history window."""
    hypotheses = await in_thread(get_world().analyze_root_cause, range_ms)
    return {
        "hypotheses": [h.to_dict() for h in hypotheses[:limit]],
        "total": len(hypotheses),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.server:app", host=settings.API_HOST, port=settings.API_PORT, reload=settings.DEBUG)
