import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from transit_engine.data.aggregator_client import PlannerClient
from transit_engine.data.cache import TTLCache, TTLClass, make_key
from transit_engine.data.config import EngineSettings
from transit_engine.data.store import StaticStore, StopVisit
from transit_engine.errors import DataNotFound, ProviderUnavailable
from transit_engine.geo import WALKING_SPEED_MPS, haversine_distance, walking_seconds
from transit_engine.models.gtfs import Stop, mode_for_route_type
from transit_engine.models.responses import (
    FareInfo,
    Itinerary,
    Leg,
    LegType,
    Location,
    OptimizeFor,
    Place,
    Provenance,
    TripOptions,
)
from transit_engine.services.fallback import Provider, first_success
from transit_engine.services.schedule_service import seconds_since_midnight
from transit_engine.services.stop_service import StopLocator

logger = logging.getLogger(__name__)

# Time window constants
TIME_WINDOW_HOURS = 2

# Transfer timing constraints
MIN_TRANSFER_TIME_MINUTES = 3
MAX_TRANSFER_TIME_MINUTES = 30
MAX_TRANSFERS_PER_PAIR = 2

# Search bounds
CANDIDATE_STOPS = 3
MAX_ITINERARIES = 3
MAX_SEGMENT_TRIPS = 10

# Synthesized itinerary
SYNTHETIC_SPEED_KMH = 20
SYNTHETIC_MIN_DURATION_SECONDS = 1800
SYNTHETIC_WALK_SECONDS = 300
SYNTHETIC_WAIT_SECONDS = 300

FareLookup = Callable[[str], Awaitable[FareInfo]]


@dataclass
class OutboundSegment:
    """A trip segment from origin to a potential transfer stop."""

    visit: StopVisit  # boarding at origin
    xfer_stop_id: str
    xfer_arrival: int  # seconds since service-day midnight
    xfer_seq: int


@dataclass
class InboundSegment:
    """A trip segment from a potential transfer stop to destination."""

    visit: StopVisit  # alighting at destination
    xfer_stop_id: str
    xfer_departure: int
    xfer_seq: int


@dataclass
class TransferPoint:
    """A valid same-stop transfer between outbound and inbound segments."""

    outbound: OutboundSegment
    inbound: InboundSegment
    wait_seconds: int


@dataclass
class Ride:
    """One boarding-to-alighting ride on a single trip."""

    board: StopVisit
    alight: StopVisit
    board_stop: Stop
    alight_stop: Stop

    @property
    def departure(self) -> int:
        return _departs(self.board)

    @property
    def arrival(self) -> int:
        return _arrives(self.alight)


def _departs(visit: StopVisit) -> int:
    return visit.departure_seconds if visit.departure_seconds is not None else visit.arrival_seconds or 0


def _arrives(visit: StopVisit) -> int:
    return visit.arrival_seconds if visit.arrival_seconds is not None else visit.departure_seconds or 0


def _place(stop: Stop) -> Place:
    return Place(lat=stop.stop_lat, lng=stop.stop_lon, name=stop.stop_name, stop_id=stop.stop_id)


def _location_place(location: Location, name: str) -> Place:
    return Place(lat=location.lat, lng=location.lng, name=name)


def _walk_leg(from_place: Place, to_place: Place, start: datetime) -> Leg:
    distance = haversine_distance(from_place.lat, from_place.lng, to_place.lat, to_place.lng)
    duration = walking_seconds(distance)
    return Leg(
        type=LegType.WALK,
        from_place=from_place,
        to_place=to_place,
        start_time=start,
        end_time=start + timedelta(seconds=duration),
        duration_seconds=duration,
        distance_meters=round(distance, 1),
    )


def _transit_leg(ride: Ride, from_place: Place, midnight: datetime) -> Leg:
    start = midnight + timedelta(seconds=ride.departure)
    end = midnight + timedelta(seconds=ride.arrival)
    to_place = _place(ride.alight_stop)
    route_type = ride.board.route_type if ride.board.route_type is not None else 3
    return Leg(
        type=LegType.TRANSIT,
        from_place=from_place,
        to_place=to_place,
        start_time=start,
        end_time=end,
        duration_seconds=max(0, ride.arrival - ride.departure),
        distance_meters=round(
            haversine_distance(from_place.lat, from_place.lng, to_place.lat, to_place.lng), 1
        ),
        mode=mode_for_route_type(route_type).value,
        route_id=ride.board.route_id,
        route_short_name=ride.board.route_short_name,
        trip_id=ride.board.trip_id,
        headsign=ride.board.headsign,
        num_stops=ride.alight.stop_sequence - ride.board.stop_sequence,
    )


def _wheelchair_flag(rides: list[Ride]) -> bool | None:
    flags = [ride.board.wheelchair_accessible for ride in rides]
    if any(flag == 2 for flag in flags):
        return False
    if flags and all(flag == 1 for flag in flags):
        return True
    return None


def build_itinerary(
    origin: Location,
    destination: Location,
    rides: list[Ride],
    departure: datetime,
    service_date: date,
) -> Itinerary:
    """Assemble walk, transit (one per ride) and walk legs into a chained itinerary."""
    midnight = datetime.combine(service_date, datetime.min.time())

    legs: list[Leg] = []
    first_walk = _walk_leg(_location_place(origin, "Origin"), _place(rides[0].board_stop), departure)
    legs.append(first_walk)

    current = first_walk.to_place
    for ride in rides:
        leg = _transit_leg(ride, current, midnight)
        legs.append(leg)
        current = leg.to_place

    last_walk = _walk_leg(current, _location_place(destination, "Destination"), legs[-1].end_time)
    legs.append(last_walk)

    walk_legs = [leg for leg in legs if leg.type == LegType.WALK]
    walk_seconds_total = sum(leg.duration_seconds for leg in walk_legs)
    transit_seconds = sum(leg.duration_seconds for leg in legs if leg.type == LegType.TRANSIT)
    duration = max(1, int((last_walk.end_time - departure).total_seconds()))

    return Itinerary(
        legs=legs,
        start_time=departure,
        end_time=last_walk.end_time,
        duration_seconds=duration,
        transfers=len(rides) - 1,
        walk_seconds=walk_seconds_total,
        transit_seconds=transit_seconds,
        waiting_seconds=max(0, duration - walk_seconds_total - transit_seconds),
        walk_distance_meters=round(sum(leg.distance_meters for leg in walk_legs), 1),
        wheelchair_accessible=_wheelchair_flag(rides),
        provenance=Provenance.LOCAL,
    )


def synthesize_itinerary(origin: Location, destination: Location, departure: datetime) -> Itinerary:
    """Single placeholder itinerary from straight-line distance at 20 km/h.

    Duration is max(30 min, distance_km / 20 * 3600 s): walk 5 min, wait
    5 min, ride, walk 5 min.
    """
    distance = haversine_distance(origin.lat, origin.lng, destination.lat, destination.lng)
    duration = max(
        SYNTHETIC_MIN_DURATION_SECONDS,
        math.ceil(distance / 1000 / SYNTHETIC_SPEED_KMH * 3600),
    )
    transit_seconds = duration - 2 * SYNTHETIC_WALK_SECONDS - SYNTHETIC_WAIT_SECONDS
    walk_distance = round(SYNTHETIC_WALK_SECONDS * WALKING_SPEED_MPS, 1)

    origin_place = _location_place(origin, "Origin")
    board_place = _location_place(origin, "Nearest stop")
    alight_place = _location_place(destination, "Destination stop")
    destination_place = _location_place(destination, "Destination")

    board_time = departure + timedelta(seconds=SYNTHETIC_WALK_SECONDS + SYNTHETIC_WAIT_SECONDS)
    alight_time = board_time + timedelta(seconds=transit_seconds)
    end_time = departure + timedelta(seconds=duration)

    legs = [
        Leg(
            type=LegType.WALK,
            from_place=origin_place,
            to_place=board_place,
            start_time=departure,
            end_time=departure + timedelta(seconds=SYNTHETIC_WALK_SECONDS),
            duration_seconds=SYNTHETIC_WALK_SECONDS,
            distance_meters=walk_distance,
        ),
        Leg(
            type=LegType.TRANSIT,
            from_place=board_place,
            to_place=alight_place,
            start_time=board_time,
            end_time=alight_time,
            duration_seconds=transit_seconds,
            distance_meters=round(distance, 1),
            mode="bus",
            route_id="38",
            route_short_name="38",
            headsign="Geary Express",
        ),
        Leg(
            type=LegType.WALK,
            from_place=alight_place,
            to_place=destination_place,
            start_time=alight_time,
            end_time=end_time,
            duration_seconds=SYNTHETIC_WALK_SECONDS,
            distance_meters=walk_distance,
        ),
    ]
    return Itinerary(
        legs=legs,
        start_time=departure,
        end_time=end_time,
        duration_seconds=duration,
        transfers=0,
        walk_seconds=2 * SYNTHETIC_WALK_SECONDS,
        transit_seconds=transit_seconds,
        waiting_seconds=SYNTHETIC_WAIT_SECONDS,
        walk_distance_meters=round(2 * walk_distance, 1),
        provenance=Provenance.SYNTHESIZED,
    )


_RANK_KEYS: dict[OptimizeFor, Callable[[Itinerary], tuple]] = {
    OptimizeFor.TIME: lambda it: (it.duration_seconds, it.transfers),
    OptimizeFor.TRANSFERS: lambda it: (it.transfers, it.duration_seconds),
    OptimizeFor.WALKING: lambda it: (it.walk_distance_meters, it.duration_seconds),
    # unpriced itineraries sort last
    OptimizeFor.COST: lambda it: (
        it.fare.regular if it.fare is not None else math.inf,
        it.duration_seconds,
    ),
}


def rank_itineraries(itineraries: list[Itinerary], optimize: OptimizeFor) -> list[Itinerary]:
    """Order itineraries by the optimization criterion, duration breaking ties."""
    return sorted(itineraries, key=_RANK_KEYS[optimize])


class _SearchContext:
    """Per-query memo of store lookups shared by all stop pairs."""

    def __init__(self, store: StaticStore, service_date: date, wheelchair: bool):
        self.store = store
        self.service_date = service_date
        self.wheelchair = wheelchair
        self._services: dict[str, set[str] | None] = {}
        self._trips: dict[tuple[str, str], list[StopVisit]] = {}
        self._stops: dict[tuple[str, str], Stop | None] = {}

    async def runs(self, visit: StopVisit) -> bool:
        """Whether a visit's trip runs on the service date and suits the rider."""
        if self.wheelchair and visit.wheelchair_accessible == 2:
            return False
        if visit.agency_id not in self._services:
            self._services[visit.agency_id] = await self.store.active_service_ids(
                visit.agency_id, self.service_date
            )
        services = self._services[visit.agency_id]
        return services is None or visit.service_id in services

    async def trip_visits(self, visit: StopVisit) -> list[StopVisit]:
        key = (visit.agency_id, visit.trip_id)
        if key not in self._trips:
            self._trips[key] = await self.store.stop_times_for_trip(*key)
        return self._trips[key]

    async def stop(self, agency_id: str, stop_id: str) -> Stop | None:
        key = (agency_id, stop_id)
        if key not in self._stops:
            self._stops[key] = await self.store.get_stop(stop_id, agency_id)
        return self._stops[key]

    async def usable_stop(self, agency_id: str, stop_id: str) -> Stop | None:
        stop = await self.stop(agency_id, stop_id)
        if stop is None or (self.wheelchair and stop.wheelchair_boarding == 2):
            return None
        return stop


class ItineraryPlanner:
    """Point-to-point trip planning with direct and one-transfer search."""

    def __init__(
        self,
        store: StaticStore | None,
        cache: TTLCache,
        settings: EngineSettings,
        locator: StopLocator,
        fare_lookup: FareLookup | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._store = store
        self._cache = cache
        self._settings = settings
        self._locator = locator
        self._fare_lookup = fare_lookup
        self._clock = clock

    async def plan_trip(
        self,
        origin: Location,
        destination: Location,
        options: TripOptions | None = None,
    ) -> list[Itinerary]:
        """Find up to 3 itineraries from origin to destination.

        Tries the local timetable, then the external planner, then a single
        synthesized itinerary, so the result is never empty.
        """
        options = options or TripOptions()
        departure = (options.departure_time or self._clock()).replace(microsecond=0)

        # Without an explicit departure time the current time is not part of the key
        key = make_key("plan_trip", origin=origin, destination=destination, options=options)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        async with self._cache.lock(key):
            # Double-check cache after acquiring lock
            cached = self._cache.get(key)
            if cached is not None:
                return cached

            result = await first_success(
                [
                    Provider(
                        "local timetable",
                        lambda: self._plan_locally(origin, destination, options, departure),
                        Provenance.LOCAL,
                    ),
                    Provider(
                        "external planner",
                        lambda: self._plan_remotely(origin, destination, options, departure),
                        Provenance.AGGREGATOR,
                    ),
                ],
                fallback=Provider(
                    "synthesized itinerary",
                    lambda: self._synthesized(origin, destination, departure),
                    Provenance.SYNTHESIZED,
                ),
            )

            priced = await self._attach_fares(result.value)
            itineraries = rank_itineraries(priced, options.optimize)[:MAX_ITINERARIES]
            if not result.synthesized:
                self._cache.set(key, itineraries, TTLClass.SCHEDULES)
            return itineraries

    async def _plan_locally(
        self,
        origin: Location,
        destination: Location,
        options: TripOptions,
        departure: datetime,
    ) -> list[Itinerary]:
        if self._store is None or not self._store.is_open:
            raise ProviderUnavailable(provider="local timetable", message="store not available")

        origin_stops = await self._candidate_stops(origin, options)
        destination_stops = await self._candidate_stops(destination, options)
        if not origin_stops or not destination_stops:
            raise DataNotFound(provider="local timetable", query="no stops within walking distance")

        ctx = _SearchContext(self._store, departure.date(), options.wheelchair)
        itineraries: list[Itinerary] = []
        seen: set[tuple[str, ...]] = set()

        for origin_stop in origin_stops:
            for destination_stop in destination_stops:
                if origin_stop.agency_id != destination_stop.agency_id:
                    continue
                for rides in await self._search_pair(
                    ctx, origin, origin_stop, destination_stop, departure
                ):
                    trip_key = tuple(f"{r.board.trip_id}@{r.board.stop_id}" for r in rides)
                    if trip_key in seen:
                        continue
                    seen.add(trip_key)
                    itineraries.append(
                        build_itinerary(origin, destination, rides, departure, ctx.service_date)
                    )

        if not itineraries:
            raise DataNotFound(provider="local timetable", query="no trips between candidate stops")
        logger.debug(f"Local search found {len(itineraries)} itineraries")
        return itineraries

    async def _candidate_stops(self, location: Location, options: TripOptions) -> list[Stop]:
        stops = await self._locator.find_nearby_stops(location, options.max_walk_distance)
        usable = [
            stop
            for stop in stops
            if stop.provenance == Provenance.LOCAL
            and not (options.wheelchair and stop.wheelchair_boarding == 2)
        ]
        return usable[:CANDIDATE_STOPS]

    async def _search_pair(
        self,
        ctx: _SearchContext,
        origin: Location,
        origin_stop: Stop,
        destination_stop: Stop,
        departure: datetime,
    ) -> list[list[Ride]]:
        """Direct rides between two stops, else up to 2 one-transfer pairs of rides."""
        walk = walking_seconds(
            haversine_distance(origin.lat, origin.lng, origin_stop.stop_lat, origin_stop.stop_lon)
        )
        earliest = seconds_since_midnight(departure) + walk
        latest = earliest + TIME_WINDOW_HOURS * 3600

        boardings = [
            visit
            for visit in await ctx.store.trips_serving_stop(origin_stop.stop_id, earliest, latest)
            if visit.agency_id == origin_stop.agency_id and await ctx.runs(visit)
        ]
        if not boardings:
            return []

        alightings = [
            visit
            for visit in await ctx.store.trips_serving_stop(destination_stop.stop_id, earliest)
            if visit.agency_id == destination_stop.agency_id and await ctx.runs(visit)
        ]
        if not alightings:
            return []

        direct = self._find_direct(boardings, alightings, origin_stop, destination_stop)
        if direct:
            return direct
        return await self._find_transfers(ctx, boardings, alightings, origin_stop, destination_stop)

    def _find_direct(
        self,
        boardings: list[StopVisit],
        alightings: list[StopVisit],
        origin_stop: Stop,
        destination_stop: Stop,
    ) -> list[list[Ride]]:
        """Trips calling at the origin stop and later at the destination stop."""
        alight_by_trip = {visit.trip_id: visit for visit in alightings}
        rides: list[list[Ride]] = []
        for board in boardings:
            alight = alight_by_trip.get(board.trip_id)
            if alight is None or alight.stop_sequence <= board.stop_sequence:
                continue
            rides.append([Ride(board, alight, origin_stop, destination_stop)])
        return rides

    async def _find_transfers(
        self,
        ctx: _SearchContext,
        boardings: list[StopVisit],
        alightings: list[StopVisit],
        origin_stop: Stop,
        destination_stop: Stop,
    ) -> list[list[Ride]]:
        """Find itineraries with one transfer at a shared intermediate stop."""
        # Step 1: Downstream stops of the first trips leaving the origin
        outbound: list[OutboundSegment] = []
        for board in boardings[:MAX_SEGMENT_TRIPS]:
            for visit in await ctx.trip_visits(board):
                if visit.stop_sequence > board.stop_sequence:
                    outbound.append(
                        OutboundSegment(board, visit.stop_id, _arrives(visit), visit.stop_sequence)
                    )
        if not outbound:
            return []

        # Step 2: Upstream stops of the first trips reaching the destination
        inbound_by_stop: dict[str, list[InboundSegment]] = {}
        for alight in alightings[:MAX_SEGMENT_TRIPS]:
            for visit in await ctx.trip_visits(alight):
                if visit.stop_sequence < alight.stop_sequence:
                    inbound_by_stop.setdefault(visit.stop_id, []).append(
                        InboundSegment(alight, visit.stop_id, _departs(visit), visit.stop_sequence)
                    )

        # Step 3: Same-stop connections on a different route
        transfer_points: list[TransferPoint] = []
        for out_seg in outbound:
            for in_seg in inbound_by_stop.get(out_seg.xfer_stop_id, []):
                if out_seg.visit.route_id == in_seg.visit.route_id:
                    continue
                wait = in_seg.xfer_departure - out_seg.xfer_arrival
                if MIN_TRANSFER_TIME_MINUTES * 60 <= wait <= MAX_TRANSFER_TIME_MINUTES * 60:
                    transfer_points.append(TransferPoint(out_seg, in_seg, wait))
        if not transfer_points:
            return []

        # Step 4: Earliest arrivals first, deduplicated by route combination
        transfer_points.sort(key=lambda t: (_arrives(t.inbound.visit), t.wait_seconds))
        results: list[list[Ride]] = []
        seen: set[tuple[str, str, int]] = set()
        for transfer in transfer_points:
            key = (
                transfer.outbound.visit.route_id,
                transfer.inbound.visit.route_id,
                _departs(transfer.outbound.visit),
            )
            if key in seen:
                continue

            xfer_stop = await ctx.usable_stop(origin_stop.agency_id, transfer.outbound.xfer_stop_id)
            if xfer_stop is None:
                continue
            seen.add(key)

            out_visit = transfer.outbound.visit
            in_visit = transfer.inbound.visit
            xfer_alight = _segment_visit(await ctx.trip_visits(out_visit), transfer.outbound.xfer_seq)
            xfer_board = _segment_visit(await ctx.trip_visits(in_visit), transfer.inbound.xfer_seq)
            if xfer_alight is None or xfer_board is None:
                continue

            results.append(
                [
                    Ride(out_visit, xfer_alight, origin_stop, xfer_stop),
                    Ride(xfer_board, in_visit, xfer_stop, destination_stop),
                ]
            )
            if len(results) >= MAX_TRANSFERS_PER_PAIR:
                break

        return results

    async def _plan_remotely(
        self,
        origin: Location,
        destination: Location,
        options: TripOptions,
        departure: datetime,
    ) -> list[Itinerary]:
        if not self._settings.planner_url:
            raise ProviderUnavailable(provider="external planner", message="no planner configured")
        async with PlannerClient(self._settings.planner_url, self._settings.http_timeout) as client:
            return await client.plan(
                origin,
                destination,
                departure,
                max_walk_distance=options.max_walk_distance,
                wheelchair=options.wheelchair,
                num_itineraries=MAX_ITINERARIES,
            )

    async def _synthesized(
        self, origin: Location, destination: Location, departure: datetime
    ) -> list[Itinerary]:
        return [synthesize_itinerary(origin, destination, departure)]

    async def _attach_fares(self, itineraries: list[Itinerary]) -> list[Itinerary]:
        if self._fare_lookup is None:
            return itineraries
        priced: list[Itinerary] = []
        for itinerary in itineraries:
            route_id = next(
                (leg.route_id for leg in itinerary.legs if leg.type == LegType.TRANSIT and leg.route_id),
                None,
            )
            if route_id is None:
                priced.append(itinerary)
                continue
            fare = await self._fare_lookup(route_id)
            priced.append(itinerary.model_copy(update={"fare": fare}))
        return priced


def _segment_visit(visits: list[StopVisit], stop_sequence: int) -> StopVisit | None:
    for visit in visits:
        if visit.stop_sequence == stop_sequence:
            return visit
    return None
