"""
Fleetwatch Topology Graph
=========================
Per-application dependency and dependent edges.

Dependencies are logical service names. Some of them are themselves
applications, which is what lets unhealthy downstream applications drag
their callers' health down.
"""

import logging
import threading
from collections import defaultdict
from typing import List, Dict, Any, Optional, Iterable, Set

from simulator.models import Application, CRITICALITIES

logger = logging.getLogger("fleetwatch.topology")


class TopologyGraph:
    def __init__(self, applications: Optional[Iterable[Application]] = None):
        self._apps: Dict[str, Application] = {}
        self._dependents: Dict[str, Set[str]] = defaultdict(set)
        self._lock = threading.RLock()
        for app in applications or []:
            self.add_application(app)

    def add_application(self, app: Application):
        if app.criticality not in CRITICALITIES:
            logger.warning(f"Application {app.name}: unknown criticality '{app.criticality}', using medium")
            app.criticality = "medium"
        with self._lock:
            previous = self._apps.get(app.name)
            if previous is not None:
                for dep in previous.dependencies:
                    self._dependents[dep].discard(app.name)
            self._apps[app.name] = app
            for dep in app.dependencies:
                self._dependents[dep].add(app.name)

    def get(self, name: str) -> Optional[Application]:
        with self._lock:
            return self._apps.get(name)

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._apps

    def names(self) -> List[str]:
        with self._lock:
            return list(self._apps.keys())

    def applications(self) -> List[Application]:
        with self._lock:
            return list(self._apps.values())

    def dependencies_of(self, name: str) -> List[str]:
        app = self.get(name)
        return list(app.dependencies) if app else []

    def dependents_of(self, name: str) -> List[str]:
        with self._lock:
            return sorted(self._dependents.get(name, ()))

    def application_dependencies(self, name: str) -> List[str]:
        """Dependencies of `name` that are registered applications."""
        return [d for d in self.dependencies_of(name) if self.has(d)]

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                name: {
                    "criticality": app.criticality,
                    "dependencies": list(app.dependencies),
                    "dependents": sorted(self._dependents.get(name, ())),
                }
                for name, app in self._apps.items()
            }
