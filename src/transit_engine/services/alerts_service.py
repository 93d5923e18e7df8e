"""Service for fetching GTFS-RT service alerts from every active agency with caching.

All errors are caught and logged - get_alerts returns an empty list on failure.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from transit_engine.data.cache import TTLCache, TTLClass, make_key
from transit_engine.data.gtfsrt_client import GTFSRTClient
from transit_engine.models.alerts import Alert, Severity
from transit_engine.services.realtime_service import FeedEndpoint

logger = logging.getLogger(__name__)


def filter_alerts(
    alerts: list[Alert],
    route_ids: list[str] | None,
    stop_ids: list[str] | None,
    now: datetime,
    severity: Severity | None = None,
    agency_ids: list[str] | None = None,
) -> list[Alert]:
    """Drop ended alerts and keep those touching any requested route or stop.

    Severity and agency narrow the result further; they are not part of the
    route/stop union.
    """
    routes = set(route_ids) if route_ids else None
    stops = set(stop_ids) if stop_ids else None
    agencies = set(agency_ids) if agency_ids else None
    return [
        alert
        for alert in alerts
        if not alert.has_expired(now)
        and alert.matches(routes, stops)
        and (severity is None or alert.severity == severity)
        and (agencies is None or alert.agency_id in agencies)
    ]


class AlertService:
    """Cached, best-effort service alerts across agencies."""

    def __init__(
        self,
        feeds: dict[str, FeedEndpoint],
        cache: TTLCache,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._feeds = feeds
        self._cache = cache
        self._timeout = timeout
        self._clock = clock

    async def get_alerts(
        self,
        route_ids: list[str] | None = None,
        stop_ids: list[str] | None = None,
        severity: Severity | None = None,
        agency_ids: list[str] | None = None,
    ) -> list[Alert]:
        """Get current service alerts, optionally filtered by route or stop.

        Args:
            route_ids: Keep alerts affecting any of these routes.
            stop_ids: Keep alerts affecting any of these stops.
            severity: Keep only alerts of this severity.
            agency_ids: Keep only alerts published by these agencies.

        Returns:
            Matching alerts; empty when no feed is reachable.
        """
        try:
            alerts = await self._all_alerts()
        except Exception as e:
            logger.error(f"Failed to gather alerts: {e}")
            return []
        return filter_alerts(alerts, route_ids, stop_ids, self._clock(), severity, agency_ids)

    async def _all_alerts(self, force_refresh: bool = False) -> list[Alert]:
        key = make_key("alerts", agencies=sorted(self._feeds))

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

            agency_ids = list(self._feeds)
            results = await asyncio.gather(
                *(self._fetch(agency_id) for agency_id in agency_ids),
                return_exceptions=True,
            )

            alerts: list[Alert] = []
            failures = 0
            for agency_id, result in zip(agency_ids, results):
                if isinstance(result, BaseException):
                    failures += 1
                    logger.warning(f"Failed to fetch alerts for {agency_id}: {result}")
                    continue
                alerts.extend(result)

            # Keep retrying next call when every feed failed
            if agency_ids and failures == len(agency_ids):
                return []

            self._cache.set(key, alerts, TTLClass.ALERTS)
            logger.debug(f"Fetched {len(alerts)} alerts from {len(agency_ids) - failures} agencies")
            return alerts

    async def _fetch(self, agency_id: str) -> list[Alert]:
        feed = self._feeds[agency_id]
        async with GTFSRTClient(
            agency_id, feed.api_key, feed.api_key_header, self._timeout
        ) as client:
            return await client.fetch_alerts(feed.url)
