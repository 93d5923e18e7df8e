from transit_engine.app import get_engine, mcp
from transit_engine.models.responses import Departure


@mcp.tool()
async def get_departures(
    stop_id: str,
    limit: int = 10,
    route_ids: list[str] | None = None,
    time_window_minutes: int | None = None,
) -> list[Departure]:
    """Get upcoming departures at a stop with live predictions.

    Merges the static timetable with GTFS-RT trip updates. Departures with
    realtime=False have no live update and run on their scheduled time.

    Args:
        stop_id: The stop ID (from find_nearby_stops).
        limit: Maximum departures to return (1-50, default: 10).
        route_ids: Only departures on these routes, by ID or short name (e.g. ["38"]).
        time_window_minutes: Only departures scheduled within this many minutes from now.

    Returns:
        Departures sorted by estimated departure time.
    """
    # Clamp limit
    if limit < 1:
        limit = 1
    elif limit > 50:
        limit = 50
    if time_window_minutes is not None and time_window_minutes < 1:
        time_window_minutes = 1

    return await get_engine().get_departures(stop_id, limit, route_ids, time_window_minutes)
