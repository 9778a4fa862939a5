"""
Fleetwatch Simulation Core
SOURCE OF TRUTH - Node state, organic evolution and scripted incidents.

The world facade lives in simulator.world and is imported from there.
"""

from .models import Node, NodeMetrics, NodeStatus, Application, Personality, IncidentInstance
from .errors import (
    SimulationError,
    UnknownNodeError,
    UnknownScenarioError,
    UnknownApplicationError,
    IncidentNotFoundError,
    IncidentStateError,
)
from .engine import EvolutionEngine, EvolutionSettings
from .incidents import IncidentDirector, SCENARIOS

__all__ = [
    "Node",
    "NodeMetrics",
    "NodeStatus",
    "Application",
    "Personality",
    "IncidentInstance",
    "SimulationError",
    "UnknownNodeError",
    "UnknownScenarioError",
    "UnknownApplicationError",
    "IncidentNotFoundError",
    "IncidentStateError",
    "EvolutionEngine",
    "EvolutionSettings",
    "IncidentDirector",
    "SCENARIOS",
]
