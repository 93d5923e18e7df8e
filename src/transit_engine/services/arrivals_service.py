"""Departures service for merging the scheduled timetable with live predictions.

Implements "schedule-first" with "graceful degradation":
- Scheduled departures come from the local store, then the aggregator, then
  a synthesized timetable
- Live updates are overlaid best-effort; a feed failure leaves departures
  on their scheduled times
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta

from transit_engine.data.aggregator_client import AggregatorClient
from transit_engine.data.cache import TTLCache, TTLClass, make_key
from transit_engine.data.config import EngineSettings
from transit_engine.data.store import StaticStore, StopVisit
from transit_engine.errors import DataNotFound, ProviderUnavailable
from transit_engine.models.realtime import RealtimeUpdate
from transit_engine.models.responses import Departure, Provenance
from transit_engine.services.fallback import Provider, first_success
from transit_engine.services.realtime_service import RealtimeService
from transit_engine.services.schedule_service import seconds_since_midnight

logger = logging.getLogger(__name__)

MAX_DEPARTURES = 50
# Scheduled visits read per cache window; the window is the current hour
SCHEDULE_FETCH_LIMIT = 200
SYNTHETIC_INTERVAL = timedelta(minutes=5)
DAY_SECONDS = 24 * 3600


def apply_delay(scheduled: datetime, delay_seconds: int) -> datetime:
    """Apply a delay (positive=late, negative=early) to a scheduled time."""
    return scheduled + timedelta(seconds=delay_seconds)


def resolve_delay(scheduled: datetime, update: RealtimeUpdate) -> int | None:
    """Delay of a live update relative to the scheduled departure.

    Uses the published delay if present, otherwise the difference between
    the predicted absolute time and the scheduled time.
    """
    if update.delay_seconds is not None:
        return update.delay_seconds
    if update.predicted_time is not None:
        return int(update.predicted_time - scheduled.timestamp())
    return None


def merge_departure_with_realtime(departure: Departure, update: RealtimeUpdate | None) -> Departure:
    """Overlay a live update on a scheduled departure.

    Without an update the departure keeps delay 0 and estimated=scheduled.
    """
    if update is None:
        return departure

    delay = resolve_delay(departure.scheduled, update)
    if delay is None:
        return departure

    return departure.model_copy(
        update={
            "estimated": apply_delay(departure.scheduled, delay),
            "delay_seconds": delay,
            "realtime": True,
            "provenance": Provenance.LIVE,
        }
    )


def filter_departures(
    departures: list[Departure],
    route_ids: list[str] | None = None,
    until: datetime | None = None,
) -> list[Departure]:
    """Keep departures on any of the given routes scheduled no later than ``until``.

    A route matches by route_id or by its public short name.
    """
    routes = set(route_ids) if route_ids else None
    return [
        d
        for d in departures
        if (routes is None or d.route_id in routes or d.route_short_name in routes)
        and (until is None or d.scheduled <= until)
    ]


def sort_departures(departures: list[Departure]) -> list[Departure]:
    """Sort by estimated departure, ties by scheduled time (stable)."""
    return sorted(departures, key=lambda d: (d.estimated, d.scheduled))


def synthesize_departures(stop_id: str, limit: int, now: datetime) -> list[Departure]:
    """Placeholder departures every 5 minutes from now."""
    base = now.replace(microsecond=0)
    departures: list[Departure] = []
    for i in range(limit):
        scheduled = base + SYNTHETIC_INTERVAL * (i + 1)
        departures.append(
            Departure(
                stop_id=stop_id,
                trip_id=f"trip_{i}",
                route_id=f"route_{i % 3}",
                route_short_name=str(38 + i),
                headsign="Downtown",
                scheduled=scheduled,
                estimated=scheduled,
                provenance=Provenance.SYNTHESIZED,
            )
        )
    return departures


def _departure_from_visit(visit: StopVisit, service_date: date) -> Departure:
    seconds = visit.departure_seconds if visit.departure_seconds is not None else visit.arrival_seconds
    midnight = datetime.combine(service_date, datetime.min.time())
    scheduled = midnight + timedelta(seconds=seconds or 0)
    return Departure(
        stop_id=visit.stop_id,
        trip_id=visit.trip_id,
        route_id=visit.route_id,
        agency_id=visit.agency_id,
        route_short_name=visit.route_short_name,
        headsign=visit.headsign,
        scheduled=scheduled,
        estimated=scheduled,
        provenance=Provenance.LOCAL,
    )


class DepartureService:
    """Upcoming departures at a stop with live predictions overlaid."""

    def __init__(
        self,
        store: StaticStore | None,
        cache: TTLCache,
        settings: EngineSettings,
        realtime: RealtimeService,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._store = store
        self._cache = cache
        self._settings = settings
        self._realtime = realtime
        self._clock = clock

    async def get_departures(
        self,
        stop_id: str,
        limit: int = 10,
        route_ids: list[str] | None = None,
        time_window_minutes: int | None = None,
    ) -> list[Departure]:
        """Get the next departures at a stop.

        Args:
            stop_id: Stop to query.
            limit: Maximum number of departures (1-50).
            route_ids: Only departures on these routes (id or short name).
            time_window_minutes: Only departures scheduled within this many minutes.

        Returns:
            Non-empty list sorted by estimated departure time.
        """
        limit = max(1, min(limit, MAX_DEPARTURES))
        now = self._clock()
        until = (
            now.replace(microsecond=0) + timedelta(minutes=time_window_minutes)
            if time_window_minutes is not None
            else None
        )

        # Filters apply to the timetable providers only; placeholders are never filtered out
        result = await first_success(
            [
                Provider(
                    "local schedule",
                    lambda: self._from_store(stop_id, now, limit, route_ids, until),
                    Provenance.LOCAL,
                ),
                Provider(
                    "aggregator departures",
                    lambda: self._from_aggregator(stop_id, limit, route_ids, until),
                    Provenance.AGGREGATOR,
                ),
            ],
            fallback=Provider(
                "synthesized departures",
                lambda: self._synthesized(stop_id, limit, now),
                Provenance.SYNTHESIZED,
            ),
        )

        departures = result.value
        if result.provenance == Provenance.LOCAL:
            departures = await self._overlay_realtime(stop_id, departures)

        return sort_departures(departures)[:limit]

    async def _scheduled_window(self, stop_id: str, now: datetime) -> list[Departure]:
        """Scheduled departures from the start of the current hour, cached 1h.

        Includes trips of the previous service day still running past midnight.
        """
        today = now.date()
        hour_start = now.hour * 3600
        key = make_key("scheduled_departures", stop_id=stop_id, date=today, hour=now.hour)

        cached = self._cache.get(key)
        if cached is not None:
            return cached

        async with self._cache.lock(key):
            # Double-check cache after acquiring lock
            cached = self._cache.get(key)
            if cached is not None:
                return cached

            yesterday = today - timedelta(days=1)
            today_visits, overnight_visits = await asyncio.gather(
                self._store.scheduled_departures(
                    stop_id, today, hour_start, SCHEDULE_FETCH_LIMIT
                ),
                self._store.scheduled_departures(
                    stop_id, yesterday, hour_start + DAY_SECONDS, SCHEDULE_FETCH_LIMIT
                ),
            )
            departures = [_departure_from_visit(v, today) for v in today_visits]
            departures += [_departure_from_visit(v, yesterday) for v in overnight_visits]
            departures = sort_departures(departures)

            self._cache.set(key, departures, TTLClass.SCHEDULES)
            return departures

    async def _from_store(
        self,
        stop_id: str,
        now: datetime,
        limit: int,
        route_ids: list[str] | None = None,
        until: datetime | None = None,
    ) -> list[Departure]:
        if self._store is None or not self._store.is_open:
            raise ProviderUnavailable(provider="local schedule", message="store not available")

        window = await self._scheduled_window(stop_id, now)
        upcoming = [d for d in window if d.scheduled >= now.replace(microsecond=0)]
        upcoming = filter_departures(upcoming, route_ids, until)
        if not upcoming:
            raise DataNotFound(
                provider="local schedule",
                query=f"stop {stop_id} after {seconds_since_midnight(now)}s",
            )
        # Over-fetch so live delays can reorder departures before truncation
        return upcoming[: limit * 2]

    async def _from_aggregator(
        self,
        stop_id: str,
        limit: int,
        route_ids: list[str] | None = None,
        until: datetime | None = None,
    ) -> list[Departure]:
        if not self._settings.aggregator_url:
            raise ProviderUnavailable(provider="aggregator", message="no aggregator configured")

        # Filters run after the fetch, so take a full page
        if route_ids or until is not None:
            limit = MAX_DEPARTURES

        key = make_key("aggregator_departures", stop_id=stop_id, limit=limit)
        cached = self._cache.get(key)
        if cached is not None:
            return filter_departures(cached, route_ids, until)

        async with AggregatorClient(
            self._settings.aggregator_url,
            self._settings.aggregator_api_key,
            self._settings.http_timeout,
        ) as client:
            departures = await client.fetch_departures(stop_id, limit)

        if departures:
            self._cache.set(key, departures, TTLClass.REALTIME)
        return filter_departures(departures, route_ids, until)

    async def _synthesized(self, stop_id: str, limit: int, now: datetime) -> list[Departure]:
        return synthesize_departures(stop_id, limit, now)

    async def _overlay_realtime(self, stop_id: str, departures: list[Departure]) -> list[Departure]:
        agencies = {
            d.agency_id
            for d in departures
            if d.agency_id is not None and self._realtime.is_realtime_available(d.agency_id)
        }
        if not agencies:
            return departures

        ordered = sorted(agencies)
        results = await asyncio.gather(
            *(self._realtime.updates_for_stop(agency_id, stop_id) for agency_id in ordered)
        )
        indexes = dict(zip(ordered, results))

        merged: list[Departure] = []
        for departure in departures:
            index = indexes.get(departure.agency_id or "", {})
            merged.append(merge_departure_with_realtime(departure, index.get(departure.trip_id)))

        live = sum(1 for d in merged if d.realtime)
        logger.debug(f"Overlaid {live} live updates on {len(merged)} departures at {stop_id}")
        return merged
