"""
Fleetwatch Simulation Errors
============================
Reported errors raised back to the caller of the simulation API.

None of these leave engine state half-updated: every operation validates
its inputs before it mutates a node or an incident record.
"""


class SimulationError(Exception):
    """Base class for all reported simulation errors."""


class UnknownNodeError(SimulationError):
    def __init__(self, node_id: str):
        super().__init__(f"Unknown node: {node_id}")
        self.node_id = node_id


class UnknownScenarioError(SimulationError):
    def __init__(self, scenario: str):
        super().__init__(f"Unknown scenario: {scenario}")
        self.scenario = scenario


class UnknownApplicationError(SimulationError):
    def __init__(self, name: str):
        super().__init__(f"Unknown application: {name}")
        self.name = name


class IncidentNotFoundError(SimulationError):
    def __init__(self, incident_id: str):
        super().__init__(f"Incident {incident_id} not found")
        self.incident_id = incident_id


class IncidentStateError(SimulationError):
    """Raised when an incident is asked to do something its status forbids."""

    def __init__(self, incident_id: str, status: str):
        super().__init__(f"Incident {incident_id} is already {status}")
        self.incident_id = incident_id
        self.status = status
