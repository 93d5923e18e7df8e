from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from transit_engine.models.responses import Location

# Agency id used when neither configuration nor location picks an operator
DEFAULT_AGGREGATOR_ID = "TRANSIT_LAND"


class EngineSettings(BaseSettings):
    """Runtime settings for the transit engine.

    Automatically loads from TRANSIT_* environment variables and .env file.
    """

    model_config = SettingsConfigDict(env_prefix="TRANSIT_", env_file=".env", extra="ignore")

    db_path: Path = Path("data/transit.db")
    http_timeout: float = 30.0
    user_agent: str = "transit-engine/0.1"

    # Aggregator (Transit.land style REST API)
    aggregator_url: str = "https://api.transitland.org/api/v2"
    aggregator_api_key: str | None = None

    # Remote itinerary planner (OpenTripPlanner style); disabled when unset
    planner_url: str | None = None

    realtime_poll_seconds: float = 30.0
    freshness_check_seconds: float = 3600.0
    cache_max_entries: int = 100

    # Used by the MCP server lifespan to build the initial InitConfig
    agencies: list[str] = Field(default_factory=list)
    lat: float | None = None
    lng: float | None = None


@lru_cache
def get_settings() -> EngineSettings:
    """Get engine settings (cached singleton).

    Returns:
        EngineSettings with values from .env file or environment variables.
    """
    return EngineSettings()


class Bounds(BaseModel):
    """Rectangular coverage area of an agency."""

    north: float
    south: float
    east: float
    west: float

    def contains(self, location: Location) -> bool:
        return (
            self.south <= location.lat <= self.north
            and self.west <= location.lng <= self.east
        )


class AgencyProfile(BaseModel):
    """Known endpoints for one transit operator."""

    agency_id: str
    name: str
    static_url: str | None = None
    realtime_url: str | None = None
    alerts_url: str | None = None
    fare_url: str | None = None
    api_key_header: str = "x-api-key"
    bounds: Bounds | None = None


KNOWN_AGENCIES: dict[str, AgencyProfile] = {
    "NYC-MTA": AgencyProfile(
        agency_id="NYC-MTA",
        name="MTA New York City Transit",
        static_url="http://web.mta.info/developers/data/nyct/subway/google_transit.zip",
        realtime_url="https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs",
        alerts_url="https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/camsys%2Fall-alerts",
        bounds=Bounds(north=41.0, south=40.4, east=-73.7, west=-74.3),
    ),
    "SF-MUNI": AgencyProfile(
        agency_id="SF-MUNI",
        name="San Francisco Municipal Transportation Agency",
        static_url="https://gtfs.sfmta.com/transitdata/google_transit.zip",
        realtime_url="https://api.511.org/transit/tripupdates?agency=SF",
        alerts_url="https://api.511.org/transit/servicealerts?agency=SF",
        bounds=Bounds(north=37.8, south=37.7, east=-122.3, west=-122.5),
    ),
    "LA-METRO": AgencyProfile(
        agency_id="LA-METRO",
        name="Los Angeles County Metropolitan Transportation Authority",
        static_url="https://gitlab.com/LACMTA/gtfs_bus/-/raw/master/gtfs_bus.zip",
        bounds=Bounds(north=34.8, south=33.7, east=-117.6, west=-118.9),
    ),
    "DC-WMATA": AgencyProfile(
        agency_id="DC-WMATA",
        name="Washington Metropolitan Area Transit Authority",
        static_url="https://opendata.dc.gov/datasets/wmata-gtfs.zip",
        realtime_url="https://api.wmata.com/gtfs/bus-gtfsrt-tripupdates.pb",
        alerts_url="https://api.wmata.com/gtfs/rail-gtfsrt-alerts.pb",
        api_key_header="api_key",
        bounds=Bounds(north=39.0, south=38.8, east=-76.9, west=-77.2),
    ),
    "LONDON-TFL": AgencyProfile(
        agency_id="LONDON-TFL",
        name="Transport for London",
        static_url="https://tfl.gov.uk/tfl/syndication/feeds/gtfs.zip",
        bounds=Bounds(north=51.7, south=51.28, east=0.33, west=-0.51),
    ),
    "TORONTO-TTC": AgencyProfile(
        agency_id="TORONTO-TTC",
        name="Toronto Transit Commission",
        static_url=(
            "https://opendata.toronto.ca/dataset/ttc-routes-and-schedules/resource/"
            "e271cdae-8788-4980-96ce-6a5c95bc6618/download/gtfs.zip"
        ),
        bounds=Bounds(north=43.86, south=43.58, east=-79.11, west=-79.64),
    ),
}


def detect_agencies(location: Location) -> list[str]:
    """Return ids of known agencies whose coverage contains the location."""
    return [
        agency_id
        for agency_id, profile in KNOWN_AGENCIES.items()
        if profile.bounds is not None and profile.bounds.contains(location)
    ]


class InitConfig(BaseModel):
    """Input to TransitEngine.initialize()."""

    agencies: list[str] = Field(default_factory=list)
    api_keys: dict[str, str] = Field(default_factory=dict)
    custom_endpoints: dict[str, str] = Field(default_factory=dict)
    location: Location | None = None
