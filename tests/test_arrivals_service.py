"""Tests for the departures service (static schedule + live merge)."""

from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from transit_engine.data.cache import TTLCache
from transit_engine.data.config import EngineSettings
from transit_engine.data.gtfs_loader import GTFSLoader
from transit_engine.data.store import StaticStore
from transit_engine.models.realtime import RealtimeUpdate
from transit_engine.models.responses import Departure, Provenance
from transit_engine.services.arrivals_service import (
    DepartureService,
    apply_delay,
    filter_departures,
    merge_departure_with_realtime,
    resolve_delay,
    sort_departures,
    synthesize_departures,
)
from transit_engine.services.realtime_service import FeedEndpoint, RealtimeService

AGENCY_ID = "SF-MUNI"
MONDAY_8AM = datetime(2025, 3, 3, 8, 0)


def make_departure(trip_id: str, scheduled: datetime, **kwargs) -> Departure:
    return Departure(
        stop_id="M1",
        trip_id=trip_id,
        route_id=kwargs.pop("route_id", "R49"),
        agency_id=AGENCY_ID,
        scheduled=scheduled,
        estimated=kwargs.pop("estimated", scheduled),
        **kwargs,
    )


def make_service(
    store: StaticStore | None,
    settings: EngineSettings,
    now: datetime,
    feeds: dict[str, FeedEndpoint] | None = None,
) -> tuple[DepartureService, RealtimeService]:
    cache = TTLCache()
    realtime = RealtimeService(feeds or {}, cache)
    return DepartureService(store, cache, settings, realtime, clock=lambda: now), realtime


@pytest.fixture
def sf_feeds() -> dict[str, FeedEndpoint]:
    return {AGENCY_ID: FeedEndpoint(AGENCY_ID, "https://example.com/sf/trip_updates")}


# ============================================================================
# Unit Tests for Helper Functions
# ============================================================================


class TestApplyDelay:
    def test_positive_delay(self) -> None:
        """Test adding positive delay (late)."""
        assert apply_delay(MONDAY_8AM, 120) == datetime(2025, 3, 3, 8, 2)

    def test_negative_delay(self) -> None:
        """Test adding negative delay (early)."""
        assert apply_delay(MONDAY_8AM, -120) == datetime(2025, 3, 3, 7, 58)

    def test_crosses_midnight(self) -> None:
        assert apply_delay(datetime(2025, 3, 3, 23, 58), 300) == datetime(2025, 3, 4, 0, 3)


class TestResolveDelay:
    def test_published_delay_wins(self) -> None:
        update = RealtimeUpdate(trip_id="T1", stop_id="M1", delay_seconds=60, predicted_time=0)

        assert resolve_delay(MONDAY_8AM, update) == 60

    def test_from_predicted_time(self) -> None:
        predicted = int((MONDAY_8AM + timedelta(minutes=3)).timestamp())
        update = RealtimeUpdate(trip_id="T1", stop_id="M1", predicted_time=predicted)

        assert resolve_delay(MONDAY_8AM, update) == 180

    def test_nothing_usable(self) -> None:
        assert resolve_delay(MONDAY_8AM, RealtimeUpdate(trip_id="T1", stop_id="M1")) is None


class TestMergeDepartureWithRealtime:
    def test_static_only(self) -> None:
        departure = make_departure("T1", MONDAY_8AM)

        merged = merge_departure_with_realtime(departure, None)

        assert merged.estimated == merged.scheduled
        assert merged.delay_seconds == 0
        assert not merged.realtime
        assert merged.provenance == Provenance.LOCAL

    def test_with_delay(self) -> None:
        departure = make_departure("T1", MONDAY_8AM)
        update = RealtimeUpdate(trip_id="T1", stop_id="M1", delay_seconds=240)

        merged = merge_departure_with_realtime(departure, update)

        assert merged.estimated == datetime(2025, 3, 3, 8, 4)
        assert merged.scheduled == MONDAY_8AM
        assert merged.delay_seconds == 240
        assert merged.realtime
        assert merged.provenance == Provenance.LIVE

    def test_update_without_prediction(self) -> None:
        departure = make_departure("T1", MONDAY_8AM)

        merged = merge_departure_with_realtime(departure, RealtimeUpdate(trip_id="T1", stop_id="M1"))

        assert merged == departure


class TestSortDepartures:
    def test_by_estimated_time(self) -> None:
        late = make_departure("T1", MONDAY_8AM, estimated=MONDAY_8AM + timedelta(minutes=15))
        on_time = make_departure("T2", MONDAY_8AM + timedelta(minutes=5))

        assert [d.trip_id for d in sort_departures([late, on_time])] == ["T2", "T1"]

    def test_ties_broken_by_scheduled(self) -> None:
        estimated = MONDAY_8AM + timedelta(minutes=10)
        delayed = make_departure("T1", MONDAY_8AM, estimated=estimated)
        scheduled = make_departure("T2", estimated)

        assert [d.trip_id for d in sort_departures([scheduled, delayed])] == ["T1", "T2"]


def test_synthesize_departures() -> None:
    now = datetime(2025, 3, 3, 8, 0, 30, 123456)

    departures = synthesize_departures("15001", 4, now)

    assert [d.trip_id for d in departures] == ["trip_0", "trip_1", "trip_2", "trip_3"]
    assert [d.route_id for d in departures] == ["route_0", "route_1", "route_2", "route_0"]
    assert departures[0].route_short_name == "38"
    assert departures[0].scheduled == datetime(2025, 3, 3, 8, 5, 30)
    assert departures[1].scheduled - departures[0].scheduled == timedelta(minutes=5)
    assert all(d.provenance == Provenance.SYNTHESIZED for d in departures)
    assert all(d.headsign == "Downtown" for d in departures)


# ============================================================================
# Integration Tests for get_departures
# ============================================================================


class TestGetDepartures:
    """Integration tests against the sample feed."""

    async def test_scheduled_departures_sorted(
        self, store: StaticStore, settings: EngineSettings
    ) -> None:
        service, _ = make_service(store, settings, MONDAY_8AM)

        departures = await service.get_departures("M1")

        assert [d.trip_id for d in departures] == ["T1", "T2", "T3"]
        assert departures[0].scheduled == datetime(2025, 3, 3, 8, 10)
        assert departures[0].route_short_name == "49"
        assert all(d.provenance == Provenance.LOCAL for d in departures)
        assert all(d.estimated == d.scheduled for d in departures)

    async def test_inactive_service_excluded(
        self, store: StaticStore, settings: EngineSettings
    ) -> None:
        service, _ = make_service(store, settings, datetime(2025, 3, 3, 7, 58))

        departures = await service.get_departures("O1")

        assert [d.trip_id for d in departures] == ["T1"]

    async def test_limit(self, store: StaticStore, settings: EngineSettings) -> None:
        service, _ = make_service(store, settings, MONDAY_8AM)

        assert len(await service.get_departures("M1", limit=2)) == 2
        # clamped up to at least one
        assert len(await service.get_departures("M1", limit=0)) == 1

    async def test_realtime_reorders_departures(
        self,
        store: StaticStore,
        settings: EngineSettings,
        sf_feeds: dict[str, FeedEndpoint],
    ) -> None:
        service, realtime = make_service(store, settings, MONDAY_8AM, sf_feeds)
        updates = {"T1": RealtimeUpdate(trip_id="T1", stop_id="M1", delay_seconds=300)}

        with patch.object(realtime, "updates_for_stop", AsyncMock(return_value=updates)):
            departures = await service.get_departures("M1")

        # T1 is now due at 08:15, after T2 at 08:12
        assert [d.trip_id for d in departures] == ["T2", "T1", "T3"]
        delayed = departures[1]
        assert delayed.realtime
        assert delayed.delay_seconds == 300
        assert delayed.provenance == Provenance.LIVE
        assert not departures[0].realtime

    async def test_realtime_feed_down_keeps_schedule(
        self,
        store: StaticStore,
        settings: EngineSettings,
        sf_feeds: dict[str, FeedEndpoint],
    ) -> None:
        service, realtime = make_service(store, settings, MONDAY_8AM, sf_feeds)

        with patch.object(realtime, "get_trip_updates", AsyncMock(return_value=None)):
            departures = await service.get_departures("M1")

        assert [d.trip_id for d in departures] == ["T1", "T2", "T3"]
        assert not any(d.realtime for d in departures)

    async def test_overnight_trips_from_previous_day(
        self, store: StaticStore, settings: EngineSettings, sample_gtfs_dir: Path
    ) -> None:
        with open(sample_gtfs_dir / "trips.txt", "a") as f:
            f.write("R49,DAILY,OWL,Fisherman's Wharf,0,1\n")
        with open(sample_gtfs_dir / "stop_times.txt", "a") as f:
            f.write("OWL,25:15:00,25:15:00,M1,1\n")
            f.write("OWL,25:30:00,25:30:00,D1,2\n")
        await GTFSLoader(store).ingest_path(AGENCY_ID, sample_gtfs_dir)
        service, _ = make_service(store, settings, datetime(2025, 3, 4, 1, 0))

        departures = await service.get_departures("M1")

        assert departures[0].trip_id == "OWL"
        assert departures[0].scheduled == datetime(2025, 3, 4, 1, 15)

    async def test_aggregator_when_stop_unknown(
        self, store: StaticStore, settings: EngineSettings
    ) -> None:
        payload = {
            "stops": [
                {
                    "stop_id": "s-remote",
                    "departures": [
                        {
                            "service_date": "2025-03-03",
                            "trip": {"trip_id": "X9", "route": {"route_id": "R9"}},
                            "departure": {"scheduled": "08:20:00", "delay": 60},
                        }
                    ],
                }
            ]
        }
        mock_response = MagicMock()
        mock_response.json.return_value = payload
        service, _ = make_service(store, settings, MONDAY_8AM)

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = AsyncMock()
            mock_client.get = AsyncMock(return_value=mock_response)
            mock_client_class.return_value = mock_client

            departures = await service.get_departures("s-remote")

        assert [d.trip_id for d in departures] == ["X9"]
        assert departures[0].provenance == Provenance.AGGREGATOR
        assert departures[0].delay_seconds == 60

    async def test_synthesized_when_everything_fails(self, settings: EngineSettings) -> None:
        settings.aggregator_url = ""
        service, _ = make_service(None, settings, MONDAY_8AM)

        departures = await service.get_departures("15001", limit=3)

        assert len(departures) == 3
        assert all(d.provenance == Provenance.SYNTHESIZED for d in departures)
        assert departures[0].scheduled == MONDAY_8AM + timedelta(minutes=5)

    async def test_schedule_window_cached(
        self, store: StaticStore, settings: EngineSettings
    ) -> None:
        service, _ = make_service(store, settings, MONDAY_8AM)
        await service.get_departures("M1")

        with patch.object(store, "scheduled_departures", AsyncMock(return_value=[])) as scheduled:
            departures = await service.get_departures("M1")

        scheduled.assert_not_called()
        assert len(departures) == 3


class TestDepartureFilters:
    """Route and time-window filters on the departure board."""

    def test_filter_departures(self) -> None:
        departures = [
            make_departure("T1", MONDAY_8AM + timedelta(minutes=10)),
            make_departure("T2", MONDAY_8AM + timedelta(minutes=12), route_id="R47", route_short_name="47"),
            make_departure("T3", MONDAY_8AM + timedelta(minutes=20), route_id="R19"),
        ]

        by_route = filter_departures(departures, ["R49", "47"])
        assert [d.trip_id for d in by_route] == ["T1", "T2"]

        by_time = filter_departures(departures, until=MONDAY_8AM + timedelta(minutes=12))
        assert [d.trip_id for d in by_time] == ["T1", "T2"]

        assert filter_departures(departures) == departures

    async def test_route_filter_by_id_or_short_name(
        self, store: StaticStore, settings: EngineSettings
    ) -> None:
        service, _ = make_service(store, settings, MONDAY_8AM)

        departures = await service.get_departures("M1", route_ids=["R49", "19"])

        assert [d.trip_id for d in departures] == ["T1", "T3"]
        assert all(d.provenance == Provenance.LOCAL for d in departures)

    async def test_time_window(self, store: StaticStore, settings: EngineSettings) -> None:
        service, _ = make_service(store, settings, MONDAY_8AM)

        departures = await service.get_departures("M1", time_window_minutes=15)

        assert [d.trip_id for d in departures] == ["T1", "T2"]

    async def test_filters_combine(self, store: StaticStore, settings: EngineSettings) -> None:
        settings.aggregator_url = ""
        service, _ = make_service(store, settings, MONDAY_8AM)

        departures = await service.get_departures("M1", route_ids=["19"], time_window_minutes=15)

        # T3 leaves at 08:20, outside the window, so nothing local matches
        assert departures
        assert all(d.provenance == Provenance.SYNTHESIZED for d in departures)

    async def test_no_match_still_returns_placeholders(
        self, store: StaticStore, settings: EngineSettings
    ) -> None:
        settings.aggregator_url = ""
        service, _ = make_service(store, settings, MONDAY_8AM)

        departures = await service.get_departures("M1", limit=3, route_ids=["99"])

        assert len(departures) == 3
        assert all(d.provenance == Provenance.SYNTHESIZED for d in departures)

    async def test_aggregator_results_filtered(
        self, store: StaticStore, settings: EngineSettings
    ) -> None:
        payload = {
            "stops": [
                {
                    "stop_id": "s-remote",
                    "departures": [
                        {
                            "service_date": "2025-03-03",
                            "trip": {"trip_id": "X9", "route": {"route_id": "R9"}},
                            "departure": {"scheduled": "08:20:00"},
                        },
                        {
                            "service_date": "2025-03-03",
                            "trip": {"trip_id": "X38", "route": {"route_id": "R38", "route_short_name": "38"}},
                            "departure": {"scheduled": "08:25:00"},
                        },
                    ],
                }
            ]
        }
        mock_response = MagicMock()
        mock_response.json.return_value = payload
        service, _ = make_service(store, settings, MONDAY_8AM)

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = AsyncMock()
            mock_client.get = AsyncMock(return_value=mock_response)
            mock_client_class.return_value = mock_client

            departures = await service.get_departures("s-remote", limit=5, route_ids=["38"])

        assert [d.trip_id for d in departures] == ["X38"]
        # the full page is requested so the filter has enough to work with
        assert mock_client.get.call_args.kwargs["params"]["limit"] == 50
