import time
from collections.abc import Sequence
from datetime import UTC, datetime

import httpx
from google.transit import gtfs_realtime_pb2

from transit_engine.models.alerts import Alert, Severity
from transit_engine.models.realtime import (
    FeedHeader,
    StopTimeEvent,
    StopTimeUpdate,
    TripDescriptor,
    TripUpdate,
    TripUpdatesData,
)

# GTFS-RT severity_level name -> our three-level severity
_SEVERITY_LEVELS = {
    "UNKNOWN_SEVERITY": Severity.INFO,
    "INFO": Severity.INFO,
    "WARNING": Severity.WARNING,
    "SEVERE": Severity.SEVERE,
}

# Effects that make an alert at least a warning when no severity is published
_DISRUPTIVE_EFFECTS = {"NO_SERVICE", "REDUCED_SERVICE", "SIGNIFICANT_DELAYS", "DETOUR"}


def select_active_period(
    periods: Sequence[gtfs_realtime_pb2.TimeRange], now: float
) -> "gtfs_realtime_pb2.TimeRange | None":
    """Pick the period in force at ``now``, else the next one to start.

    When every period has ended, the one that ended last is returned so the
    alert reads as expired. A zero bound is open.
    """
    if not periods:
        return None
    pending = [period for period in periods if not period.end or period.end >= now]
    if pending:
        return min(pending, key=lambda period: period.start)
    return max(periods, key=lambda period: period.end)


class GTFSRTClient:
    """Async HTTP client for fetching one agency's GTFS-RT feeds.

    Usage:
        async with GTFSRTClient("NYC-MTA", api_key="...") as client:
            trip_updates = await client.fetch_trip_updates(url)
    """

    def __init__(
        self,
        agency_id: str,
        api_key: str | None = None,
        api_key_header: str = "x-api-key",
        timeout: float = 30.0,
    ):
        """Initialize the client.

        Args:
            agency_id: Agency the feeds belong to.
            api_key: Optional key sent with every request.
            api_key_header: Header carrying the key.
            timeout: HTTP timeout in seconds.
        """
        self._agency_id = agency_id
        self._api_key = api_key
        self._api_key_header = api_key_header
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "GTFSRTClient":
        """Enter async context - create HTTP client."""
        headers = {}
        if self._api_key:
            headers[self._api_key_header] = self._api_key
        self._client = httpx.AsyncClient(headers=headers, timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context - close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _fetch_feed(self, url: str) -> gtfs_realtime_pb2.FeedMessage:
        if not self._client:
            raise RuntimeError("Client not initialized - use 'async with'")

        response = await self._client.get(url)
        response.raise_for_status()

        feed = gtfs_realtime_pb2.FeedMessage()
        feed.ParseFromString(response.content)
        return feed

    async def fetch_trip_updates(self, url: str) -> TripUpdatesData:
        """Fetch and parse a trip updates feed.

        Raises:
            RuntimeError: If client not initialized.
            httpx.HTTPError: If the HTTP request fails.
            google.protobuf.message.DecodeError: If the payload is not GTFS-RT.
        """
        feed = await self._fetch_feed(url)
        return self._parse_trip_updates(feed)

    async def fetch_alerts(self, url: str) -> list[Alert]:
        """Fetch and parse a service alerts feed.

        Raises:
            RuntimeError: If client not initialized.
            httpx.HTTPError: If the HTTP request fails.
            google.protobuf.message.DecodeError: If the payload is not GTFS-RT.
        """
        feed = await self._fetch_feed(url)
        return self._parse_alerts(feed)

    def _parse_trip_updates(self, feed: gtfs_realtime_pb2.FeedMessage) -> TripUpdatesData:
        """Parse protobuf feed message into TripUpdatesData model."""
        header = FeedHeader(
            gtfs_realtime_version=feed.header.gtfs_realtime_version,
            timestamp=feed.header.timestamp,
        )

        trip_updates: list[TripUpdate] = []
        for entity in feed.entity:
            if entity.HasField("trip_update"):
                trip_updates.append(self._parse_trip_update(entity.trip_update))

        return TripUpdatesData(
            agency_id=self._agency_id,
            header=header,
            trip_updates=trip_updates,
            fetched_at=datetime.now(UTC),
        )

    def _parse_trip_update(self, tu: gtfs_realtime_pb2.TripUpdate) -> TripUpdate:
        """Parse a single trip update entity."""
        trip = TripDescriptor(
            trip_id=tu.trip.trip_id or None,
            route_id=tu.trip.route_id or None,
            start_date=tu.trip.start_date or None,
        )
        return TripUpdate(
            trip=trip,
            stop_time_update=[self._parse_stop_time_update(stu) for stu in tu.stop_time_update],
            timestamp=tu.timestamp or None,
        )

    def _parse_stop_time_update(
        self, stu: gtfs_realtime_pb2.TripUpdate.StopTimeUpdate
    ) -> StopTimeUpdate:
        """Parse a single stop time update."""
        arrival = None
        if stu.HasField("arrival"):
            arrival = self._parse_event(stu.arrival)

        departure = None
        if stu.HasField("departure"):
            departure = self._parse_event(stu.departure)

        return StopTimeUpdate(
            stop_sequence=stu.stop_sequence if stu.HasField("stop_sequence") else None,
            stop_id=stu.stop_id or None,
            arrival=arrival,
            departure=departure,
        )

    def _parse_event(self, event: gtfs_realtime_pb2.TripUpdate.StopTimeEvent) -> StopTimeEvent:
        # delay=0 is meaningful (on time) so presence is checked, not truthiness
        return StopTimeEvent(
            delay=event.delay if event.HasField("delay") else None,
            time=event.time if event.HasField("time") else None,
        )

    def _parse_alerts(self, feed: gtfs_realtime_pb2.FeedMessage) -> list[Alert]:
        alerts: list[Alert] = []
        for entity in feed.entity:
            if entity.HasField("alert"):
                alerts.append(self._parse_alert(entity.id, entity.alert))
        return alerts

    def _parse_alert(self, alert_id: str, alert: gtfs_realtime_pb2.Alert) -> Alert:
        """Parse a single alert entity."""
        route_ids: list[str] = []
        stop_ids: list[str] = []
        for informed in alert.informed_entity:
            if informed.route_id and informed.route_id not in route_ids:
                route_ids.append(informed.route_id)
            if informed.stop_id and informed.stop_id not in stop_ids:
                stop_ids.append(informed.stop_id)

        cause = gtfs_realtime_pb2.Alert.Cause.Name(alert.cause) if alert.HasField("cause") else None
        effect = (
            gtfs_realtime_pb2.Alert.Effect.Name(alert.effect) if alert.HasField("effect") else None
        )

        severity = Severity.INFO
        if alert.HasField("severity_level"):
            level = gtfs_realtime_pb2.Alert.SeverityLevel.Name(alert.severity_level)
            severity = _SEVERITY_LEVELS.get(level, Severity.INFO)
        elif effect in _DISRUPTIVE_EFFECTS:
            severity = Severity.WARNING

        active_start = None
        active_end = None
        period = select_active_period(alert.active_period, time.time())
        if period is not None:
            if period.start:
                active_start = datetime.fromtimestamp(period.start)
            if period.end:
                active_end = datetime.fromtimestamp(period.end)

        return Alert(
            alert_id=alert_id,
            agency_id=self._agency_id,
            route_ids=route_ids,
            stop_ids=stop_ids,
            severity=severity,
            cause=cause,
            effect=effect,
            header=self._first_translation(alert.header_text),
            description=self._first_translation(alert.description_text),
            url=self._first_translation(alert.url),
            active_start=active_start,
            active_end=active_end,
        )

    def _first_translation(self, text: gtfs_realtime_pb2.TranslatedString) -> str | None:
        if text.translation:
            return text.translation[0].text or None
        return None
