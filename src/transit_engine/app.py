"""MCP application instance.

This module exists to avoid circular import issues when running with `python -m`.
All tool modules should import `mcp` and `get_engine` from here, not from server.py.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from transit_engine.data.config import InitConfig, get_settings
from transit_engine.engine import TransitEngine
from transit_engine.models.responses import Location

logger = logging.getLogger(__name__)

_engine: TransitEngine | None = None


def get_engine() -> TransitEngine:
    """Engine bound to the running server.

    Raises:
        RuntimeError: If called outside the server lifespan.
    """
    if _engine is None:
        raise RuntimeError("Transit engine not initialized - server lifespan has not started")
    return _engine


def init_config_from_settings() -> InitConfig:
    settings = get_settings()
    location = None
    if settings.lat is not None and settings.lng is not None:
        location = Location(lat=settings.lat, lng=settings.lng)
    return InitConfig(agencies=settings.agencies, location=location)


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[TransitEngine]:
    """Create the engine on startup and close it on shutdown."""
    global _engine
    engine = TransitEngine(get_settings())
    await engine.initialize(init_config_from_settings())
    _engine = engine
    try:
        yield engine
    finally:
        _engine = None
        await engine.close()


# Initialize the MCP server
mcp = FastMCP(
    "Transit Engine",
    instructions=(
        "Multi-agency transit information - trip planning, nearby stops, "
        "departures with live predictions, service alerts and fares"
    ),
    lifespan=lifespan,
)
