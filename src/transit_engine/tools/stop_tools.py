"""MCP tools for finding stops."""

from transit_engine.app import get_engine, mcp
from transit_engine.models.gtfs import Stop
from transit_engine.models.responses import Location


@mcp.tool()
async def find_nearby_stops(
    lat: float,
    lng: float,
    max_distance_meters: int = 500,
) -> list[Stop]:
    """Find transit stops near a location.

    Stops come from the local timetable when available, otherwise from the
    aggregator API. When no source knows any stop, placeholder stops marked
    with provenance "synthesized" are returned.

    Examples:
        find_nearby_stops(lat=37.7749, lng=-122.4194)
        find_nearby_stops(lat=40.7128, lng=-74.006, max_distance_meters=1000)

    Args:
        lat: Latitude of the point to search around.
        lng: Longitude of the point to search around.
        max_distance_meters: Search radius (default 500m, clamped to 1-5000m).

    Returns:
        Up to 10 stops sorted by distance, each with distance_meters.
    """
    # Validate radius
    if max_distance_meters < 1:
        max_distance_meters = 1
    elif max_distance_meters > 5000:
        max_distance_meters = 5000

    return await get_engine().find_nearby_stops(
        Location(lat=lat, lng=lng), max_distance_meters=max_distance_meters
    )
