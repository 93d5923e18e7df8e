from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field

# grams of CO2 per passenger meter
TRANSIT_CO2_PER_METER = 0.05
CAR_CO2_PER_METER = 0.2


class Provenance(str, Enum):
    """Where a result came from."""

    LOCAL = "local"
    AGGREGATOR = "aggregator"
    LIVE = "live"
    SYNTHESIZED = "synthesized"


class Location(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class Place(BaseModel):
    """A named point at either end of a leg."""

    lat: float
    lng: float
    name: str | None = None
    stop_id: str | None = None


class LegType(str, Enum):
    WALK = "WALK"
    TRANSIT = "TRANSIT"


class Leg(BaseModel):
    """One homogeneous segment of an itinerary (walking or a single trip)."""

    type: LegType
    from_place: Place
    to_place: Place
    start_time: datetime
    end_time: datetime
    duration_seconds: int = Field(ge=0)
    distance_meters: float = Field(ge=0)

    # Transit legs only
    mode: str | None = Field(default=None, description="bus, rail, subway, tram, ...")
    route_id: str | None = None
    route_short_name: str | None = None
    trip_id: str | None = None
    headsign: str | None = None
    num_stops: int | None = None


class FareResponse(BaseModel):
    """Fare document served by an agency fare endpoint; every field is optional."""

    model_config = ConfigDict(extra="ignore")

    adult_price: float | None = None
    senior_price: float | None = None
    currency: str | None = None
    payment_methods: list[str] | None = None


class FareInfo(BaseModel):
    regular: float
    reduced: float
    currency: str
    payment_methods: list[str]
    provenance: Provenance = Provenance.SYNTHESIZED


class CarbonFootprint(BaseModel):
    co2_grams: int
    savings_vs_car_percent: int = Field(ge=0, le=100)


class Itinerary(BaseModel):
    """Complete journey from origin to destination."""

    legs: list[Leg] = Field(description="Ordered, chained legs")
    start_time: datetime
    end_time: datetime
    duration_seconds: int = Field(gt=0)
    transfers: int = Field(ge=0)

    # Summary
    walk_seconds: int = 0
    transit_seconds: int = 0
    waiting_seconds: int = 0
    walk_distance_meters: float = 0.0
    wheelchair_accessible: bool | None = None

    fare: FareInfo | None = None
    provenance: Provenance = Provenance.LOCAL

    @computed_field
    @property
    def carbon_footprint(self) -> CarbonFootprint:
        """Estimated emissions of the transit legs compared with driving them."""
        distance = sum(leg.distance_meters for leg in self.legs if leg.type == LegType.TRANSIT)
        if distance <= 0:
            return CarbonFootprint(co2_grams=0, savings_vs_car_percent=100)
        co2 = distance * TRANSIT_CO2_PER_METER
        car = distance * CAR_CO2_PER_METER
        savings = round((car - co2) / car * 100)
        return CarbonFootprint(co2_grams=round(co2), savings_vs_car_percent=max(0, savings))


class OptimizeFor(str, Enum):
    TIME = "time"
    TRANSFERS = "transfers"
    WALKING = "walking"
    COST = "cost"


class TripOptions(BaseModel):
    """Options accepted by plan_trip."""

    max_walk_distance: float = Field(default=500, gt=0)
    wheelchair: bool = False
    optimize: OptimizeFor = OptimizeFor.TIME
    departure_time: datetime | None = None


class Departure(BaseModel):
    """Scheduled departure at a stop, merged with live predictions."""

    stop_id: str
    trip_id: str
    route_id: str
    agency_id: str | None = None
    route_short_name: str | None = None
    headsign: str | None = None
    scheduled: datetime
    estimated: datetime
    delay_seconds: int = 0
    realtime: bool = False
    provenance: Provenance = Provenance.LOCAL
