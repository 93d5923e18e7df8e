"""Real-time service for fetching per-agency GTFS-RT trip updates with caching.

All errors are caught and logged - fetches return None on failure so callers
can fall back to the static schedule.
"""

import asyncio
import logging
from dataclasses import dataclass

from transit_engine.data.cache import TTLCache, TTLClass, make_key
from transit_engine.data.gtfsrt_client import GTFSRTClient
from transit_engine.models.realtime import RealtimeUpdate, StopTimeEvent, TripUpdatesData

logger = logging.getLogger(__name__)


@dataclass
class FeedEndpoint:
    """A GTFS-RT feed of one agency."""

    agency_id: str
    url: str
    api_key: str | None = None
    api_key_header: str = "x-api-key"


def _event_delay(event: StopTimeEvent | None) -> int | None:
    return event.delay if event is not None else None


def _event_time(event: StopTimeEvent | None) -> int | None:
    return event.time if event is not None else None


def build_trip_update_index(
    trip_updates: TripUpdatesData,
    stop_id: str,
) -> dict[str, RealtimeUpdate]:
    """Build index of live predictions for a specific stop.

    Delay comes from the departure event, else the arrival event. The
    predicted absolute time is kept for feeds that publish no delay.

    Returns:
        Dict mapping trip_id -> RealtimeUpdate for this stop.
    """
    index: dict[str, RealtimeUpdate] = {}

    for trip_update in trip_updates.trip_updates:
        trip_id = trip_update.trip.trip_id
        if trip_id is None:
            continue

        for stu in trip_update.stop_time_update:
            if stu.stop_id != stop_id:
                continue
            delay = _event_delay(stu.departure)
            if delay is None:
                delay = _event_delay(stu.arrival)
            predicted = _event_time(stu.departure) or _event_time(stu.arrival)
            if delay is None and predicted is None:
                break
            index[trip_id] = RealtimeUpdate(
                trip_id=trip_id,
                stop_id=stop_id,
                delay_seconds=delay,
                predicted_time=predicted,
                timestamp=trip_update.timestamp or trip_updates.header.timestamp,
            )
            break  # Only one update per stop per trip

    return index


class RealtimeService:
    """Cached, best-effort access to every agency's trip updates feed."""

    def __init__(self, feeds: dict[str, FeedEndpoint], cache: TTLCache, timeout: float = 30.0):
        self._feeds = feeds
        self._cache = cache
        self._timeout = timeout

    @property
    def agencies(self) -> list[str]:
        return list(self._feeds)

    def is_realtime_available(self, agency_id: str) -> bool:
        return agency_id in self._feeds

    async def get_trip_updates(
        self, agency_id: str, force_refresh: bool = False
    ) -> TripUpdatesData | None:
        """Fetch one agency's trip updates with caching.

        Args:
            agency_id: Agency whose feed to read.
            force_refresh: If True, bypass cache and fetch fresh data.

        Returns:
            TripUpdatesData if successful, None if unavailable or error.
        """
        feed = self._feeds.get(agency_id)
        if feed is None:
            logger.debug(f"No trip updates feed configured for {agency_id}")
            return None

        key = make_key("trip_updates", agency=agency_id)

        # Check cache first (unless force refresh)
        if not force_refresh:
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        # Acquire lock to prevent concurrent fetches
        async with self._cache.lock(key):
            # Double-check cache after acquiring lock
            if not force_refresh:
                cached = self._cache.get(key)
                if cached is not None:
                    return cached

            try:
                async with GTFSRTClient(
                    agency_id, feed.api_key, feed.api_key_header, self._timeout
                ) as client:
                    data = await client.fetch_trip_updates(feed.url)
            except Exception as e:
                logger.warning(f"Failed to fetch trip updates for {agency_id}: {e}")
                return None

            self._cache.set(key, data, TTLClass.REALTIME)
            logger.debug(f"Fetched {len(data.trip_updates)} trip updates for {agency_id}")
            return data

    async def updates_for_stop(self, agency_id: str, stop_id: str) -> dict[str, RealtimeUpdate]:
        """Live predictions at a stop, keyed by trip id; empty when unavailable."""
        data = await self.get_trip_updates(agency_id)
        if data is None:
            return {}
        return build_trip_update_index(data, stop_id)

    async def poll(self) -> int:
        """Refresh every configured feed; used by the background loop.

        Returns:
            Number of feeds refreshed successfully.
        """
        results = await asyncio.gather(
            *(self.get_trip_updates(agency_id, force_refresh=True) for agency_id in self._feeds)
        )
        refreshed = sum(1 for result in results if result is not None)
        logger.debug(f"Real-time poll refreshed {refreshed}/{len(self._feeds)} feeds")
        return refreshed
