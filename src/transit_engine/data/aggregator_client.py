import logging
from datetime import date, datetime, timedelta

import httpx

from transit_engine.geo import haversine_distance
from transit_engine.models.aggregator import (
    AggregatorDeparture,
    AggregatorDeparturesResponse,
    AggregatorStopsResponse,
    PlannerItinerary,
    PlannerLeg,
    PlannerPlace,
    PlannerResponse,
)
from transit_engine.models.gtfs import Stop
from transit_engine.models.responses import (
    Departure,
    Itinerary,
    Leg,
    LegType,
    Location,
    Place,
    Provenance,
)
from transit_engine.services.schedule_service import gtfs_time_to_seconds, service_datetime

logger = logging.getLogger(__name__)

# Planner mode string -> our transit mode name
_PLANNER_MODES = {
    "BUS": "bus",
    "SUBWAY": "subway",
    "RAIL": "rail",
    "TRAM": "tram",
    "FERRY": "ferry",
    "CABLE_CAR": "cable",
    "GONDOLA": "gondola",
    "FUNICULAR": "funicular",
}


class AggregatorClient:
    """Async HTTP client for a Transit.land style aggregator API.

    Usage:
        async with AggregatorClient(base_url, api_key) as client:
            stops = await client.fetch_stops_near(location, 500)
    """

    def __init__(self, base_url: str, api_key: str | None = None, timeout: float = 30.0):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "AggregatorClient":
        """Enter async context - create HTTP client."""
        headers = {}
        if self._api_key:
            headers["apikey"] = self._api_key
        self._client = httpx.AsyncClient(headers=headers, timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context - close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch_stops_near(
        self, location: Location, radius_meters: float, limit: int = 10
    ) -> list[Stop]:
        """Fetch stops around a point, nearest first.

        Raises:
            RuntimeError: If client not initialized.
            httpx.HTTPError: If the HTTP request fails.
        """
        if not self._client:
            raise RuntimeError("Client not initialized - use 'async with'")

        response = await self._client.get(
            f"{self._base_url}/rest/stops",
            params={
                "lat": location.lat,
                "lon": location.lng,
                "radius": radius_meters,
                "limit": limit,
            },
        )
        response.raise_for_status()
        data = AggregatorStopsResponse.model_validate(response.json())

        stops: list[Stop] = []
        for raw in data.stops:
            if len(raw.geometry.coordinates) < 2:
                continue
            lon, lat = raw.geometry.coordinates[0], raw.geometry.coordinates[1]
            stop_id = raw.onestop_id or raw.stop_id
            if stop_id is None:
                continue
            stops.append(
                Stop(
                    stop_id=stop_id,
                    stop_code=raw.stop_code,
                    stop_name=raw.stop_name or stop_id,
                    stop_lat=lat,
                    stop_lon=lon,
                    wheelchair_boarding=raw.wheelchair_boarding,
                    distance_meters=round(haversine_distance(location.lat, location.lng, lat, lon), 1),
                    provenance=Provenance.AGGREGATOR,
                )
            )
        stops.sort(key=lambda stop: stop.distance_meters or 0.0)
        return stops

    async def fetch_departures(self, stop_id: str, limit: int = 10) -> list[Departure]:
        """Fetch upcoming departures for a stop.

        Raises:
            RuntimeError: If client not initialized.
            httpx.HTTPError: If the HTTP request fails.
        """
        if not self._client:
            raise RuntimeError("Client not initialized - use 'async with'")

        response = await self._client.get(
            f"{self._base_url}/rest/stops/{stop_id}/departures",
            params={"limit": limit},
        )
        response.raise_for_status()
        data = AggregatorDeparturesResponse.model_validate(response.json())

        departures: list[Departure] = []
        for stop in data.stops:
            for raw in stop.departures:
                try:
                    departure = _departure_from_wire(stop.stop_id or stop_id, raw)
                except ValueError as e:
                    logger.warning(
                        "Skipping malformed departure %s at %s: %s",
                        raw.trip.trip_id if raw.trip else None,
                        stop.stop_id or stop_id,
                        e,
                    )
                    continue
                if departure is not None:
                    departures.append(departure)
        return departures[:limit]


def _departure_from_wire(stop_id: str, raw: AggregatorDeparture) -> Departure | None:
    times = raw.departure
    scheduled_str = (times.scheduled if times else None) or raw.departure_time
    if scheduled_str is None or raw.trip is None or raw.trip.trip_id is None:
        return None

    service_date = date.fromisoformat(raw.service_date) if raw.service_date else date.today()
    scheduled = service_datetime(service_date, scheduled_str)

    delay = 0
    realtime = False
    if times and times.estimated:
        delay = gtfs_time_to_seconds(times.estimated) - gtfs_time_to_seconds(scheduled_str)
        realtime = True
    elif times and times.delay is not None:
        delay = times.delay
        realtime = True

    route = raw.trip.route
    return Departure(
        stop_id=stop_id,
        trip_id=raw.trip.trip_id,
        route_id=(route.route_id if route else None) or "",
        route_short_name=route.route_short_name if route else None,
        headsign=raw.trip.trip_headsign,
        scheduled=scheduled,
        estimated=scheduled + timedelta(seconds=delay),
        delay_seconds=delay,
        realtime=realtime,
        provenance=Provenance.AGGREGATOR,
    )


class PlannerClient:
    """Async HTTP client for an OpenTripPlanner style /plan endpoint.

    Usage:
        async with PlannerClient(base_url) as client:
            itineraries = await client.plan(origin, destination, departure)
    """

    def __init__(self, base_url: str, timeout: float = 30.0):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "PlannerClient":
        """Enter async context - create HTTP client."""
        self._client = httpx.AsyncClient(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context - close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def plan(
        self,
        origin: Location,
        destination: Location,
        departure: datetime,
        max_walk_distance: float = 500,
        wheelchair: bool = False,
        num_itineraries: int = 3,
    ) -> list[Itinerary]:
        """Query the planner for transit itineraries.

        Returns:
            Parsed itineraries (possibly empty when the planner finds none).

        Raises:
            RuntimeError: If client not initialized.
            httpx.HTTPError: If the HTTP request fails.
        """
        if not self._client:
            raise RuntimeError("Client not initialized - use 'async with'")

        params = {
            "fromPlace": f"{origin.lat},{origin.lng}",
            "toPlace": f"{destination.lat},{destination.lng}",
            "mode": "TRANSIT,WALK",
            "date": departure.strftime("%Y-%m-%d"),
            "time": departure.strftime("%H:%M:%S"),
            "numItineraries": str(num_itineraries),
            "maxWalkDistance": str(int(max_walk_distance)),
            "wheelchair": "true" if wheelchair else "false",
            "arriveBy": "false",
        }
        response = await self._client.get(f"{self._base_url}/otp/routers/default/plan", params=params)
        response.raise_for_status()
        data = PlannerResponse.model_validate(response.json())

        if data.plan is None:
            logger.debug("Planner returned no plan")
            return []
        return [
            itinerary
            for raw in data.plan.itineraries
            if (itinerary := _itinerary_from_wire(raw)) is not None
        ]


def _place_from_wire(place: PlannerPlace) -> Place:
    return Place(lat=place.lat, lng=place.lon, name=place.name, stop_id=place.stop_id)


def _leg_from_wire(raw: PlannerLeg, from_place: Place) -> Leg:
    transit_mode = _PLANNER_MODES.get(raw.mode)
    return Leg(
        type=LegType.TRANSIT if transit_mode else LegType.WALK,
        from_place=from_place,
        to_place=_place_from_wire(raw.to_place),
        start_time=datetime.fromtimestamp(raw.start_time / 1000),
        end_time=datetime.fromtimestamp(raw.end_time / 1000),
        duration_seconds=max(0, int(raw.duration)),
        distance_meters=max(0.0, raw.distance),
        mode=transit_mode,
        route_id=raw.route_id,
        route_short_name=raw.route_short_name,
        trip_id=raw.trip_id,
        headsign=raw.headsign,
    )


def _itinerary_from_wire(raw: PlannerItinerary) -> Itinerary | None:
    if not raw.legs or raw.duration <= 0:
        return None

    legs: list[Leg] = []
    previous_to: Place | None = None
    for raw_leg in raw.legs:
        # each leg starts where the previous one ended
        from_place = previous_to or _place_from_wire(raw_leg.from_place)
        leg = _leg_from_wire(raw_leg, from_place)
        legs.append(leg)
        previous_to = leg.to_place

    transit_legs = [leg for leg in legs if leg.type == LegType.TRANSIT]
    return Itinerary(
        legs=legs,
        start_time=datetime.fromtimestamp(raw.start_time / 1000),
        end_time=datetime.fromtimestamp(raw.end_time / 1000),
        duration_seconds=raw.duration,
        transfers=max(0, len(transit_legs) - 1),
        walk_seconds=raw.walk_time,
        transit_seconds=raw.transit_time,
        waiting_seconds=raw.waiting_time,
        walk_distance_meters=raw.walk_distance,
        provenance=Provenance.AGGREGATOR,
    )
