"""
Fleetwatch Analysis Agents
==========================
Stateless analyzers that read simulation output and return opinions.

Currently one agent: RootCauseAnalyzer, which ranks failure hypotheses
over an event window.
"""

from .rca_agent import RootCauseAnalyzer, Hypothesis, HypothesisType, RcaEvent, Deployment

__all__ = [
    "RootCauseAnalyzer",
    "Hypothesis",
    "HypothesisType",
    "RcaEvent",
    "Deployment",
]
