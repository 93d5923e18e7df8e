"""Tests for engine wiring, initialization and remote-only mode."""

from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from transit_engine.data.config import EngineSettings, InitConfig
from transit_engine.data.gtfs_loader import GTFSLoader
from transit_engine.data.sources import AggregatorSource, CustomSource, VendorSource
from transit_engine.data.store import StaticStore
from transit_engine.engine import TransitEngine, resolve_active_agencies
from transit_engine.models.gtfs import Agency
from transit_engine.models.responses import Location, Provenance

SAN_FRANCISCO = Location(lat=37.7749, lng=-122.4194)


class TestResolveActiveAgencies:
    def test_explicit_agencies(self) -> None:
        assert resolve_active_agencies(InitConfig(agencies=["NYC-MTA"])) == ["NYC-MTA"]

    def test_detected_from_location(self) -> None:
        assert resolve_active_agencies(InitConfig(location=SAN_FRANCISCO)) == ["SF-MUNI"]

    def test_custom_endpoints_and_dedup(self) -> None:
        config = InitConfig(
            agencies=["SF-MUNI"],
            location=SAN_FRANCISCO,
            custom_endpoints={"CITY": "https://city.example.com/gtfs.json"},
        )

        assert resolve_active_agencies(config) == ["SF-MUNI", "CITY"]

    def test_default_aggregator(self) -> None:
        assert resolve_active_agencies(InitConfig()) == ["TRANSIT_LAND"]
        assert resolve_active_agencies(InitConfig(location=Location(lat=0.0, lng=0.0))) == [
            "TRANSIT_LAND"
        ]


def offline_client() -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.get = AsyncMock(side_effect=ConnectionError("offline"))
    return mock_client


async def preload(db_path: Path, gtfs_dir: Path) -> None:
    store = StaticStore(db_path)
    await store.open()
    try:
        await store.register_agency(Agency(agency_id="SF-MUNI"))
        await GTFSLoader(store).ingest_path("SF-MUNI", gtfs_dir)
    finally:
        await store.close()


class TestTransitEngine:
    """End-to-end tests through the engine's public operations."""

    async def test_initialize_with_fresh_local_data(
        self,
        settings: EngineSettings,
        sample_gtfs_dir: Path,
        origin: Location,
        destination: Location,
        monday_morning: datetime,
    ) -> None:
        await preload(settings.db_path, sample_gtfs_dir)
        engine = TransitEngine(settings, clock=lambda: monday_morning)

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client_class.return_value = offline_client()

            active = await engine.initialize(InitConfig(agencies=["SF-MUNI"]))
            try:
                assert active == ["SF-MUNI"]
                assert not engine.remote_only
                assert isinstance(engine.sources[0], VendorSource)
                assert engine.realtime.is_realtime_available("SF-MUNI")
                tasks = list(engine._tasks)
                assert [task.name for task in tasks] == ["realtime poll", "static freshness check"]

                stops = await engine.find_nearby_stops(origin)
                assert [stop.stop_id for stop in stops] == ["O1", "O2"]

                departures = await engine.get_departures("M1")
                assert [d.trip_id for d in departures] == ["T1", "T2", "T3"]
                # live feed unreachable, schedule is kept
                assert not any(d.realtime for d in departures)

                itineraries = await engine.plan_trip(origin, destination)
                assert itineraries[0].provenance == Provenance.LOCAL
                # no fare endpoint for this agency
                assert itineraries[0].fare.provenance == Provenance.SYNTHESIZED

                assert await engine.get_alerts() == []
                fare = await engine.get_fare_info("R49")
                assert fare.regular == 3.25
            finally:
                await engine.close()

        assert all(not task.running for task in tasks)

    async def test_remote_only_when_store_cannot_open(
        self,
        settings: EngineSettings,
        tmp_path: Path,
        origin: Location,
        destination: Location,
    ) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        settings.db_path = blocker / "transit.db"
        settings.aggregator_url = ""
        engine = TransitEngine(settings)

        active = await engine.initialize()
        try:
            assert active == ["TRANSIT_LAND"]
            assert engine.remote_only
            assert engine.loader is None

            stops = await engine.find_nearby_stops(origin)
            assert all(stop.provenance == Provenance.SYNTHESIZED for stop in stops)

            departures = await engine.get_departures("15001", limit=5)
            assert len(departures) == 5
            assert departures[0].provenance == Provenance.SYNTHESIZED

            itineraries = await engine.plan_trip(origin, destination)
            assert len(itineraries) == 1
            assert itineraries[0].provenance == Provenance.SYNTHESIZED
        finally:
            await engine.close()

    async def test_custom_endpoint_loaded(self, settings: EngineSettings) -> None:
        document = {
            "stops": [
                {"stop_id": "C1", "stop_name": "City Hall", "stop_lat": 37.7793, "stop_lon": -122.4193}
            ],
            "routes": [],
            "trips": [],
            "stop_times": [],
        }
        mock_response = MagicMock()
        mock_response.headers = {"content-type": "application/json"}
        mock_response.json.return_value = document
        engine = TransitEngine(settings)

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = AsyncMock()
            mock_client.get = AsyncMock(return_value=mock_response)
            mock_client_class.return_value = mock_client

            await engine.initialize(
                InitConfig(custom_endpoints={"CITY": "https://city.example.com/feed.json"})
            )
            try:
                assert isinstance(engine.sources[0], CustomSource)
                assert (await engine.store.counts("CITY"))["stops"] == 1
                stops = await engine.find_nearby_stops(Location(lat=37.7790, lng=-122.4190))
                assert [stop.stop_id for stop in stops] == ["C1"]
            finally:
                await engine.close()

    async def test_unknown_agency_uses_aggregator_source(self, settings: EngineSettings) -> None:
        engine = TransitEngine(settings)

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client_class.return_value = offline_client()

            await engine.initialize(InitConfig(location=Location(lat=0.0, lng=0.0)))
            try:
                assert isinstance(engine.sources[0], AggregatorSource)
                # failed load leaves the agency without data
                assert await engine.store.freshness("TRANSIT_LAND") is None
            finally:
                await engine.close()


async def test_close_is_idempotent(settings: EngineSettings) -> None:
    engine = TransitEngine(settings)

    await engine.close()
    await engine.close()


@pytest.mark.parametrize("agency_id", ["NYC-MTA", "DC-WMATA"])
def test_known_agencies_wire_feeds(settings: EngineSettings, agency_id: str) -> None:
    engine = TransitEngine(settings)
    engine.config = InitConfig(agencies=[agency_id], api_keys={agency_id: "secret"})
    engine.active_agencies = [agency_id]

    engine._wire_services()

    assert engine.realtime.is_realtime_available(agency_id)
