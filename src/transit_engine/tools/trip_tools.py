from datetime import datetime

from transit_engine.app import get_engine, mcp
from transit_engine.models.responses import Itinerary, Location, OptimizeFor, TripOptions


@mcp.tool()
async def plan_trip(
    origin_lat: float,
    origin_lng: float,
    destination_lat: float,
    destination_lng: float,
    departure_time: str | None = None,
    max_walk_distance: int = 500,
    wheelchair: bool = False,
    optimize: OptimizeFor = OptimizeFor.TIME,
) -> list[Itinerary]:
    """Plan a transit trip between two coordinates.

    Finds direct and one-transfer itineraries from the local timetable,
    falling back to a remote planner and finally to an estimated itinerary
    (provenance "synthesized") so the answer is never empty.

    Args:
        origin_lat: Origin latitude.
        origin_lng: Origin longitude.
        destination_lat: Destination latitude.
        destination_lng: Destination longitude.
        departure_time: ISO datetime to leave at (e.g. "2025-03-01T08:30:00", default: now)
        max_walk_distance: Maximum walk to or from a stop in meters (default: 500)
        wheelchair: Only use accessible trips and stops (default: False)
        optimize: "time", "transfers", "walking" or "cost" (default: "time")

    Returns:
        Up to 3 itineraries, best first, each with chained legs and a fare.
    """
    options = TripOptions(
        max_walk_distance=max(1, max_walk_distance),
        wheelchair=wheelchair,
        optimize=optimize,
        departure_time=datetime.fromisoformat(departure_time) if departure_time else None,
    )
    return await get_engine().plan_trip(
        Location(lat=origin_lat, lng=origin_lng),
        Location(lat=destination_lat, lng=destination_lng),
        options,
    )
