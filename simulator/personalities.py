"""
Fleetwatch Server Personalities
===============================
Behavioural profiles assigned to nodes at seed time.

Most nodes are stable; a minority get a problematic profile drawn from a
short list that depends on the node type (databases tend to burn slowly,
caches spike, API boxes are noisy neighbours).
"""

import random
from typing import Dict, List, Optional

from simulator.models import Personality


PERSONALITIES: Dict[str, Personality] = {
    "stable": Personality("stable", 0.1, 1.0, 1.0, 0.5, 1.0),
    "noisy-neighbor": Personality("noisy-neighbor", 0.3, 1.5, 0.8, 1.2, 1.4),
    "leaky-buffer": Personality("leaky-buffer", 0.15, 1.2, 0.9, 0.8, 1.1),
    "spike-and-crash": Personality("spike-and-crash", 0.8, 0.8, 1.5, 2.0, 2.0),
    "slow-burn": Personality("slow-burn", 0.05, 2.0, 0.3, 0.3, 0.8),
    "resource-hog": Personality("resource-hog", 0.2, 1.3, 0.7, 1.1, 1.6),
}

PROBLEMATIC_BY_TYPE: Dict[str, List[str]] = {
    "db": ["slow-burn", "leaky-buffer", "stable"],
    "cache": ["spike-and-crash", "noisy-neighbor", "stable"],
    "api": ["noisy-neighbor", "resource-hog", "leaky-buffer"],
    "worker": ["resource-hog", "slow-burn", "stable"],
    "web": ["spike-and-crash", "stable", "noisy-neighbor"],
}

PROBLEMATIC_SHARE = 0.3


def get_personality(name: str) -> Personality:
    """Return a fresh copy of a named profile (stable when unknown)."""
    base = PERSONALITIES.get(name, PERSONALITIES["stable"])
    return Personality(
        name=base.name,
        volatility=base.volatility,
        degradation_rate=base.degradation_rate,
        recovery_rate=base.recovery_rate,
        incident_proneness=base.incident_proneness,
        load_sensitivity=base.load_sensitivity,
    )


def assign_personality(node_type: str, rng: Optional[random.Random] = None) -> Personality:
    rng = rng or random.Random()
    if rng.random() < PROBLEMATIC_SHARE:
        options = PROBLEMATIC_BY_TYPE.get(node_type, ["stable"])
        return get_personality(rng.choice(options))
    return get_personality("stable")
