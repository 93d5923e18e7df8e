"""Nearby-stop lookup: local store, then aggregator, then synthesized stops."""

import logging

from transit_engine.data.aggregator_client import AggregatorClient
from transit_engine.data.cache import TTLCache, TTLClass, make_key
from transit_engine.data.config import EngineSettings
from transit_engine.data.store import StaticStore
from transit_engine.errors import ProviderUnavailable
from transit_engine.geo import haversine_distance
from transit_engine.models.gtfs import Stop
from transit_engine.models.responses import Location, Provenance
from transit_engine.services.fallback import Provider, first_success

logger = logging.getLogger(__name__)

MAX_NEARBY_STOPS = 10
DEFAULT_MAX_DISTANCE_METERS = 500

# (lat offset, lng offset, name, code) of the placeholder stops
_SYNTHETIC_STOPS = [
    (0.002, 0.001, "Main St & 1st Ave", "12345"),
    (-0.003, 0.002, "Transit Center", "12346"),
]


def synthesize_stops(location: Location) -> list[Stop]:
    """Placeholder stops near a point, used when no source has real ones."""
    stops: list[Stop] = []
    for index, (dlat, dlng, name, code) in enumerate(_SYNTHETIC_STOPS, start=1):
        lat = max(-90.0, min(90.0, location.lat + dlat))
        lng = max(-180.0, min(180.0, location.lng + dlng))
        stops.append(
            Stop(
                stop_id=f"synthetic-{index}",
                stop_code=code,
                stop_name=name,
                stop_lat=lat,
                stop_lon=lng,
                distance_meters=round(haversine_distance(location.lat, location.lng, lat, lng), 1),
                provenance=Provenance.SYNTHESIZED,
            )
        )
    stops.sort(key=lambda stop: stop.distance_meters or 0.0)
    return stops


class StopLocator:
    """Finds boarding stops near a location with cache and fallbacks."""

    def __init__(self, store: StaticStore | None, cache: TTLCache, settings: EngineSettings):
        self._store = store
        self._cache = cache
        self._settings = settings

    async def find_nearby_stops(
        self,
        location: Location,
        max_distance_meters: float = DEFAULT_MAX_DISTANCE_METERS,
        limit: int = MAX_NEARBY_STOPS,
    ) -> list[Stop]:
        """Get at most `limit` (<= 10) stops nearest to location.

        Stops from the local store or the aggregator are strictly within
        max_distance_meters and sorted by distance. If neither source has any,
        synthesized stops are returned (not cached, distance unconstrained).
        """
        limit = max(1, min(limit, MAX_NEARBY_STOPS))
        key = make_key(
            "nearby_stops",
            lat=round(location.lat, 6),
            lng=round(location.lng, 6),
            radius=max_distance_meters,
            limit=limit,
        )

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
                        "local store",
                        lambda: self._from_store(location, max_distance_meters, limit),
                        Provenance.LOCAL,
                    ),
                    Provider(
                        "aggregator",
                        lambda: self._from_aggregator(location, max_distance_meters, limit),
                        Provenance.AGGREGATOR,
                    ),
                ],
                fallback=Provider(
                    "synthesized stops",
                    lambda: self._synthesized(location),
                    Provenance.SYNTHESIZED,
                ),
            )
            if not result.synthesized:
                self._cache.set(key, result.value, TTLClass.STOPS)
            return result.value

    async def _from_store(self, location: Location, radius: float, limit: int) -> list[Stop]:
        if self._store is None or not self._store.is_open:
            raise ProviderUnavailable(provider="local store", message="store not available")
        return await self._store.stops_near(location, radius, limit)

    async def _from_aggregator(self, location: Location, radius: float, limit: int) -> list[Stop]:
        if not self._settings.aggregator_url:
            raise ProviderUnavailable(provider="aggregator", message="no aggregator configured")
        async with AggregatorClient(
            self._settings.aggregator_url,
            self._settings.aggregator_api_key,
            self._settings.http_timeout,
        ) as client:
            stops = await client.fetch_stops_near(location, radius, limit)
        within = [
            stop
            for stop in stops
            if stop.distance_meters is not None and stop.distance_meters < radius
        ]
        return within[:limit]

    async def _synthesized(self, location: Location) -> list[Stop]:
        return synthesize_stops(location)
