"""Shared fixtures: a small San Francisco GTFS feed and an open store.

Network (all trips on the DAILY service unless noted):
    T1  route 49   O1 08:00 -> M1 08:10 -> D1 08:25
    T2  route 47   O2 08:05 -> M1 08:12
    T3  route 19   M1 08:20 -> D2 08:35
    T5  route 49   O1 08:02 -> D1 08:20   (NEVER service, inactive)
"""

from datetime import datetime
from pathlib import Path

import pytest

from transit_engine.data.config import EngineSettings
from transit_engine.data.gtfs_loader import GTFSLoader
from transit_engine.data.store import StaticStore
from transit_engine.models.gtfs import Agency
from transit_engine.models.responses import Location

AGENCY_ID = "SF-MUNI"


class FakeClock:
    """Manually advanced monotonic time source for TTL caches."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def write_sample_gtfs(gtfs_dir: Path) -> Path:
    gtfs_dir.mkdir(parents=True, exist_ok=True)

    (gtfs_dir / "agency.txt").write_text(
        "agency_id,agency_name,agency_url,agency_timezone\n"
        "SFMTA,San Francisco Municipal Transportation Agency,https://www.sfmta.com,America/Los_Angeles\n"
    )

    (gtfs_dir / "routes.txt").write_text(
        "route_id,agency_id,route_short_name,route_long_name,route_type,route_color,route_text_color\n"
        "R49,SFMTA,49,Van Ness-Mission,3,005B95,FFFFFF\n"
        "R47,SFMTA,47,Van Ness,3,,\n"
        "R19,SFMTA,19,Polk,3,,\n"
    )

    (gtfs_dir / "stops.txt").write_text(
        "stop_id,stop_code,stop_name,stop_lat,stop_lon,location_type,parent_station,wheelchair_boarding\n"
        "O1,15001,Market St & 8th St,37.7752,-122.4190,0,,1\n"
        "O2,15002,Mission St & 8th St,37.7740,-122.4200,0,,1\n"
        "M1,15003,Van Ness Ave & Geary Blvd,37.7855,-122.4211,0,,1\n"
        "D1,15004,North Point St & Polk St,37.8075,-122.4180,0,,1\n"
        "D2,15005,Bay St & Polk St,37.8050,-122.4185,0,,2\n"
        "FAR,15006,Daly City Station,37.7060,-122.4690,0,,1\n"
        "STATION,,Civic Center Station,37.7795,-122.4140,1,,1\n"
    )

    (gtfs_dir / "calendar.txt").write_text(
        "service_id,monday,tuesday,wednesday,thursday,friday,saturday,sunday,start_date,end_date\n"
        "DAILY,1,1,1,1,1,1,1,20240101,20301231\n"
        "NEVER,0,0,0,0,0,0,0,20240101,20301231\n"
    )

    (gtfs_dir / "calendar_dates.txt").write_text(
        "service_id,date,exception_type\n"
        "DAILY,20251225,2\n"
    )

    (gtfs_dir / "trips.txt").write_text(
        "route_id,service_id,trip_id,trip_headsign,direction_id,wheelchair_accessible\n"
        "R49,DAILY,T1,Fisherman's Wharf,0,1\n"
        "R47,DAILY,T2,Van Ness,0,1\n"
        "R19,DAILY,T3,Bay St,0,1\n"
        "R49,NEVER,T5,Fisherman's Wharf,0,1\n"
    )

    (gtfs_dir / "stop_times.txt").write_text(
        "trip_id,arrival_time,departure_time,stop_id,stop_sequence\n"
        "T1,08:00:00,08:00:00,O1,1\n"
        "T1,08:10:00,08:10:00,M1,2\n"
        "T1,08:25:00,08:25:00,D1,3\n"
        "T2,08:05:00,08:05:00,O2,1\n"
        "T2,08:12:00,08:12:00,M1,2\n"
        "T3,08:20:00,08:20:00,M1,1\n"
        "T3,08:35:00,08:35:00,D2,2\n"
        "T5,08:02:00,08:02:00,O1,1\n"
        "T5,08:20:00,08:20:00,D1,2\n"
    )

    return gtfs_dir


@pytest.fixture
def sample_gtfs_dir(tmp_path: Path) -> Path:
    """Create a sample GTFS directory with a tiny San Francisco network."""
    return write_sample_gtfs(tmp_path / "gtfs")


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    """Settings isolated from the environment and any .env file."""
    return EngineSettings(
        _env_file=None,
        db_path=tmp_path / "transit.db",
        aggregator_url="https://aggregator.example.com/api/v2",
        planner_url=None,
    )


@pytest.fixture
async def store(tmp_path: Path, sample_gtfs_dir: Path):
    """An open store loaded with the sample feed."""
    static_store = StaticStore(tmp_path / "store.db")
    await static_store.open()
    await static_store.register_agency(Agency(agency_id=AGENCY_ID))
    await GTFSLoader(static_store).ingest_path(AGENCY_ID, sample_gtfs_dir)
    yield static_store
    await static_store.close()


@pytest.fixture
def origin() -> Location:
    """Near Market St & 8th St, San Francisco."""
    return Location(lat=37.7749, lng=-122.4194)


@pytest.fixture
def destination() -> Location:
    """Near North Point St & Polk St, San Francisco."""
    return Location(lat=37.8080, lng=-122.4177)


@pytest.fixture
def monday_morning() -> datetime:
    """A Monday at 07:55, local time."""
    return datetime(2025, 3, 3, 7, 55)


@pytest.fixture
def cache_clock() -> FakeClock:
    return FakeClock()
