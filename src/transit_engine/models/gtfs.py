"""Pydantic models for GTFS entities."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from transit_engine.models.responses import Provenance
from transit_engine.services.schedule_service import parse_gtfs_time


class TransitMode(str, Enum):
    """Vehicle mode derived from GTFS route_type."""

    TRAM = "tram"
    SUBWAY = "subway"
    RAIL = "rail"
    BUS = "bus"
    FERRY = "ferry"
    CABLE = "cable"
    GONDOLA = "gondola"
    FUNICULAR = "funicular"


ROUTE_TYPE_MODES: dict[int, TransitMode] = {
    0: TransitMode.TRAM,
    1: TransitMode.SUBWAY,
    2: TransitMode.RAIL,
    3: TransitMode.BUS,
    4: TransitMode.FERRY,
    5: TransitMode.CABLE,
    6: TransitMode.GONDOLA,
    7: TransitMode.FUNICULAR,
}


def mode_for_route_type(route_type: int) -> TransitMode:
    """Map a GTFS route_type (basic or extended) to a TransitMode."""
    if route_type in ROUTE_TYPE_MODES:
        return ROUTE_TYPE_MODES[route_type]
    # Extended route types: 100-199 rail, 400-499 urban rail, 700-799 bus, 900-999 tram
    family = route_type // 100
    return {
        1: TransitMode.RAIL,
        4: TransitMode.SUBWAY,
        7: TransitMode.BUS,
        9: TransitMode.TRAM,
        10: TransitMode.FERRY,
        13: TransitMode.GONDOLA,
        14: TransitMode.FUNICULAR,
    }.get(family, TransitMode.BUS)


class SourceKind(str, Enum):
    VENDOR = "vendor"
    AGGREGATOR = "aggregator"
    CUSTOM = "custom"


class Agency(BaseModel):
    """A configured or detected transit operator."""

    agency_id: str
    agency_name: str | None = None
    source_kind: SourceKind = SourceKind.VENDOR
    freshness: datetime | None = None


class Route(BaseModel):
    """GTFS route entity."""

    route_id: str
    agency_id: str | None = None
    route_short_name: str | None = None
    route_long_name: str | None = None
    route_type: int = 3
    route_color: str = "0078D4"
    route_text_color: str = "FFFFFF"

    @property
    def mode(self) -> TransitMode:
        return mode_for_route_type(self.route_type)


class Stop(BaseModel):
    """GTFS stop entity."""

    stop_id: str
    stop_code: str | None = None
    stop_name: str
    stop_lat: float = Field(ge=-90, le=90)
    stop_lon: float = Field(ge=-180, le=180)
    wheelchair_boarding: int | None = None  # 0=no info, 1=accessible, 2=not accessible

    # Query-time annotations
    agency_id: str | None = None
    distance_meters: float | None = None
    provenance: Provenance = Provenance.LOCAL


class Calendar(BaseModel):
    """GTFS calendar entity for service patterns."""

    service_id: str
    monday: int
    tuesday: int
    wednesday: int
    thursday: int
    friday: int
    saturday: int
    sunday: int
    start_date: str  # YYYYMMDD
    end_date: str  # YYYYMMDD


class CalendarDate(BaseModel):
    """GTFS calendar_dates entity for service exceptions."""

    service_id: str
    date: str  # YYYYMMDD
    exception_type: int  # 1=added, 2=removed


class Trip(BaseModel):
    """GTFS trip entity."""

    trip_id: str
    route_id: str
    service_id: str | None = None
    trip_headsign: str | None = None
    direction_id: int | None = Field(default=None, ge=0, le=1)
    wheelchair_accessible: int | None = None


class StopTime(BaseModel):
    """GTFS stop_times entity."""

    trip_id: str
    arrival_time: str | None = None  # HH:MM:SS (can exceed 24:00:00)
    departure_time: str | None = None
    stop_id: str
    stop_sequence: int = Field(ge=0)

    @field_validator("arrival_time", "departure_time")
    @classmethod
    def _check_time(cls, value: str | None) -> str | None:
        if value is not None:
            parse_gtfs_time(value)
        return value


class GTFSBundle(BaseModel):
    """Canonical static data for one agency, as produced by a source adapter."""

    agency_id: str
    stops: list[Stop] = Field(default_factory=list)
    routes: list[Route] = Field(default_factory=list)
    trips: list[Trip] = Field(default_factory=list)
    stop_times: list[StopTime] = Field(default_factory=list)
    calendar: list[Calendar] = Field(default_factory=list)
    calendar_dates: list[CalendarDate] = Field(default_factory=list)
    skipped: int = 0

    def counts(self) -> dict[str, int]:
        return {
            "stops": len(self.stops),
            "routes": len(self.routes),
            "trips": len(self.trips),
            "stop_times": len(self.stop_times),
            "calendar": len(self.calendar),
            "calendar_dates": len(self.calendar_dates),
        }

    def is_empty(self) -> bool:
        return not self.stops and not self.routes and not self.trips
