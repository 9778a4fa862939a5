"""
Fleetwatch API Layer — FastAPI transport boundary
"""

from .server import app
from .config import settings

__all__ = ["app", "settings"]
