"""
Fleetwatch Configuration
========================
Every knob comes from the environment (or a local .env file) and is frozen
into one Settings object when the process starts.

Usage:
    from api.config import settings
    world_tick = settings.TICK_INTERVAL_MS
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

# .env has to be applied before the first getenv below
load_dotenv()


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, read once."""

    # ── Service ─────────────────────────────────────────────────
    APP_NAME: str = "Fleetwatch — Fleet Health Simulator"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # ── Simulation ──────────────────────────────────────────────
    TICK_INTERVAL_MS: int = 3000
    AUTO_START: bool = True
    SIMULATION_SEED: Optional[int] = None
    WORLD_CONFIG_PATH: str = ""          # JSON world file; empty = built-in fleet
    BUSINESS_HOURS_START: int = 9
    BUSINESS_HOURS_END: int = 17

    # ── Retention ───────────────────────────────────────────────
    HISTORY_MAX_SIZE: int = 1000
    APP_HEALTH_HISTORY_MAX: int = 100

    # ── HTTP ────────────────────────────────────────────────────
    CORS_ORIGINS: List[str] = field(default_factory=lambda: ["*"])
    CORS_ALLOW_CREDENTIALS: bool = True

    # ── Logs ────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "structured"  # structured | simple


def _env_str(name: str) -> str:
    return os.getenv(name, getattr(Settings, name))


def _env_int(name: str) -> int:
    return int(os.getenv(name, str(getattr(Settings, name))))


def _env_bool(name: str) -> bool:
    default = "true" if getattr(Settings, name) else "false"
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _env_optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return int(raw)


def load_settings() -> Settings:
    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    return Settings(
        APP_NAME=_env_str("APP_NAME"),
        APP_VERSION=_env_str("APP_VERSION"),
        ENVIRONMENT=_env_str("ENVIRONMENT"),
        DEBUG=_env_bool("DEBUG"),
        API_HOST=_env_str("API_HOST"),
        API_PORT=_env_int("API_PORT"),
        TICK_INTERVAL_MS=_env_int("TICK_INTERVAL_MS"),
        AUTO_START=_env_bool("AUTO_START"),
        SIMULATION_SEED=_env_optional_int("SIMULATION_SEED"),
        WORLD_CONFIG_PATH=_env_str("WORLD_CONFIG_PATH"),
        BUSINESS_HOURS_START=_env_int("BUSINESS_HOURS_START"),
        BUSINESS_HOURS_END=_env_int("BUSINESS_HOURS_END"),
        HISTORY_MAX_SIZE=_env_int("HISTORY_MAX_SIZE"),
        APP_HEALTH_HISTORY_MAX=_env_int("APP_HEALTH_HISTORY_MAX"),
        CORS_ORIGINS=origins or ["*"],
        CORS_ALLOW_CREDENTIALS=_env_bool("CORS_ALLOW_CREDENTIALS"),
        LOG_LEVEL=_env_str("LOG_LEVEL"),
        LOG_FORMAT=_env_str("LOG_FORMAT"),
    )


settings = load_settings()
