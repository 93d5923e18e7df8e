"""The transit engine: one object owning the store, cache, services and loops."""

import logging
from collections.abc import Callable
from datetime import datetime

from transit_engine.data.cache import TTLCache
from transit_engine.data.config import (
    DEFAULT_AGGREGATOR_ID,
    KNOWN_AGENCIES,
    EngineSettings,
    InitConfig,
    detect_agencies,
    get_settings,
)
from transit_engine.data.gtfs_loader import GTFSLoader
from transit_engine.data.sources import AggregatorSource, CustomSource, Source, VendorSource
from transit_engine.data.store import StaticStore
from transit_engine.errors import StoreInitFailure
from transit_engine.models.alerts import Alert, Severity
from transit_engine.models.gtfs import Agency, SourceKind, Stop
from transit_engine.models.responses import Departure, FareInfo, Itinerary, Location, TripOptions
from transit_engine.services.alerts_service import AlertService
from transit_engine.services.arrivals_service import DepartureService
from transit_engine.services.fare_service import FareEndpoint, FareService
from transit_engine.services.periodic import PeriodicTask
from transit_engine.services.realtime_service import FeedEndpoint, RealtimeService
from transit_engine.services.stop_service import DEFAULT_MAX_DISTANCE_METERS, StopLocator
from transit_engine.services.trip_planner import ItineraryPlanner

logger = logging.getLogger(__name__)


def resolve_active_agencies(config: InitConfig) -> list[str]:
    """Explicit agencies, then those covering the location, then custom endpoints.

    Falls back to the aggregator when nothing is configured or detected.
    """
    candidates = list(config.agencies)
    if config.location is not None:
        candidates += detect_agencies(config.location)
    candidates += list(config.custom_endpoints)

    active = list(dict.fromkeys(candidates))
    return active or [DEFAULT_AGGREGATOR_ID]


def _source_kind(agency_id: str, config: InitConfig) -> SourceKind:
    if agency_id in config.custom_endpoints:
        return SourceKind.CUSTOM
    if agency_id in KNOWN_AGENCIES:
        return SourceKind.VENDOR
    return SourceKind.AGGREGATOR


class TransitEngine:
    """Entry point for every public transit operation.

    Usage:
        engine = TransitEngine()
        await engine.initialize(InitConfig(location=Location(lat=37.77, lng=-122.42)))
        itineraries = await engine.plan_trip(origin, destination)
        await engine.close()
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings or get_settings()
        self._clock = clock
        self.cache = TTLCache(max_entries=self.settings.cache_max_entries)
        self.store: StaticStore | None = None
        self.loader: GTFSLoader | None = None
        self.config = InitConfig()
        self.active_agencies: list[str] = []
        self.sources: list[Source] = []
        self._tasks: list[PeriodicTask] = []

        self.locator = StopLocator(None, self.cache, self.settings)
        self.realtime = RealtimeService({}, self.cache, self.settings.http_timeout)
        self.alerts = AlertService({}, self.cache, self.settings.http_timeout, clock)
        self.fares = FareService(None, self.cache, {}, timeout=self.settings.http_timeout)
        self.departures = DepartureService(None, self.cache, self.settings, self.realtime, clock)
        self.planner = ItineraryPlanner(
            None, self.cache, self.settings, self.locator, self.fares.get_fare_info, clock
        )

    @property
    def remote_only(self) -> bool:
        """True when the local store could not be opened."""
        return self.store is None or not self.store.is_open

    async def initialize(self, config: InitConfig | None = None) -> list[str]:
        """Resolve the active agencies, open the store, load data and start loops.

        A store that cannot be opened puts the engine in remote-only mode;
        queries then go to the aggregator or are synthesized.

        Returns:
            The active agency ids.
        """
        self.config = config or InitConfig()
        self.active_agencies = resolve_active_agencies(self.config)
        logger.info(f"Active agencies: {', '.join(self.active_agencies)}")

        await self._open_store()
        self._wire_services()

        if self.store is not None:
            await self._register_agencies()
            self.sources = self._build_sources()
            self.loader = GTFSLoader(self.store, self.settings.http_timeout)
            await self.refresh_static()

        self._start_tasks()
        return self.active_agencies

    async def _open_store(self) -> None:
        store = StaticStore(self.settings.db_path)
        try:
            await store.open()
        except StoreInitFailure as e:
            logger.error(f"{e} - continuing in remote-only mode")
            self.store = None
            return
        self.store = store

    def _wire_services(self) -> None:
        api_keys = self.config.api_keys
        trip_update_feeds: dict[str, FeedEndpoint] = {}
        alert_feeds: dict[str, FeedEndpoint] = {}
        fare_endpoints: dict[str, FareEndpoint] = {}

        for agency_id in self.active_agencies:
            key = api_keys.get(agency_id)
            profile = KNOWN_AGENCIES.get(agency_id)
            if profile is not None:
                header = profile.api_key_header
                if profile.realtime_url:
                    trip_update_feeds[agency_id] = FeedEndpoint(
                        agency_id, profile.realtime_url, key, header
                    )
                if profile.alerts_url:
                    alert_feeds[agency_id] = FeedEndpoint(agency_id, profile.alerts_url, key, header)
                if profile.fare_url:
                    fare_endpoints[agency_id] = FareEndpoint(profile.fare_url, key, header)
            if agency_id in self.config.custom_endpoints:
                # A custom endpoint doubles as the agency's API root for fares
                fare_endpoints[agency_id] = FareEndpoint(self.config.custom_endpoints[agency_id], key)

        timeout = self.settings.http_timeout
        self.locator = StopLocator(self.store, self.cache, self.settings)
        self.realtime = RealtimeService(trip_update_feeds, self.cache, timeout)
        self.alerts = AlertService(alert_feeds, self.cache, timeout, self._clock)
        self.fares = FareService(
            self.store, self.cache, fare_endpoints, list(self.active_agencies), timeout
        )
        self.departures = DepartureService(
            self.store, self.cache, self.settings, self.realtime, self._clock
        )
        self.planner = ItineraryPlanner(
            self.store,
            self.cache,
            self.settings,
            self.locator,
            self.fares.get_fare_info,
            self._clock,
        )

    async def _register_agencies(self) -> None:
        for agency_id in self.active_agencies:
            profile = KNOWN_AGENCIES.get(agency_id)
            await self.store.register_agency(
                Agency(
                    agency_id=agency_id,
                    agency_name=profile.name if profile else None,
                    source_kind=_source_kind(agency_id, self.config),
                )
            )

    def _build_sources(self) -> list[Source]:
        sources: list[Source] = []
        for agency_id in self.active_agencies:
            key = self.config.api_keys.get(agency_id)
            profile = KNOWN_AGENCIES.get(agency_id)
            if agency_id in self.config.custom_endpoints:
                sources.append(
                    CustomSource(
                        agency_id=agency_id,
                        url=self.config.custom_endpoints[agency_id],
                        api_key=key,
                    )
                )
            elif profile is not None and profile.static_url:
                sources.append(
                    VendorSource(
                        agency_id=agency_id,
                        url=profile.static_url,
                        api_key=key,
                        api_key_header=profile.api_key_header,
                    )
                )
            else:
                sources.append(
                    AggregatorSource(
                        agency_id=agency_id,
                        base_url=self.settings.aggregator_url,
                        api_key=key or self.settings.aggregator_api_key,
                        location=self.config.location,
                    )
                )
        return sources

    async def refresh_static(self, force: bool = False) -> dict[str, dict[str, int] | None]:
        """Reload every stale agency; failures keep the previous data."""
        if self.loader is None or not self.sources:
            return {}
        return await self.loader.refresh(self.sources, force=force)

    def _start_tasks(self) -> None:
        self._tasks = []
        if self.realtime.agencies:
            self._tasks.append(
                PeriodicTask(
                    "realtime poll", self.settings.realtime_poll_seconds, self.realtime.poll
                )
            )
        if self.loader is not None:
            self._tasks.append(
                PeriodicTask(
                    "static freshness check",
                    self.settings.freshness_check_seconds,
                    self.refresh_static,
                )
            )
        for task in self._tasks:
            task.start()

    # Public operations

    async def plan_trip(
        self,
        origin: Location,
        destination: Location,
        options: TripOptions | None = None,
    ) -> list[Itinerary]:
        return await self.planner.plan_trip(origin, destination, options)

    async def find_nearby_stops(
        self,
        location: Location,
        max_distance_meters: float = DEFAULT_MAX_DISTANCE_METERS,
    ) -> list[Stop]:
        return await self.locator.find_nearby_stops(location, max_distance_meters)

    async def get_departures(
        self,
        stop_id: str,
        limit: int = 10,
        route_ids: list[str] | None = None,
        time_window_minutes: int | None = None,
    ) -> list[Departure]:
        return await self.departures.get_departures(stop_id, limit, route_ids, time_window_minutes)

    async def get_alerts(
        self,
        route_ids: list[str] | None = None,
        stop_ids: list[str] | None = None,
        severity: Severity | None = None,
        agency_ids: list[str] | None = None,
    ) -> list[Alert]:
        return await self.alerts.get_alerts(route_ids, stop_ids, severity, agency_ids)

    async def get_fare_info(self, route_id: str) -> FareInfo:
        return await self.fares.get_fare_info(route_id)

    async def close(self) -> None:
        """Stop background loops and release the store."""
        for task in self._tasks:
            await task.stop()
        self._tasks = []
        if self.store is not None:
            await self.store.close()
        logger.info("Transit engine closed")
