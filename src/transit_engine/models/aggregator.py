"""Wire models for the aggregator REST API and the remote itinerary planner.

Only the fields we read are modelled; everything else is ignored.
"""

from pydantic import BaseModel, ConfigDict, Field


class Geometry(BaseModel):
    """GeoJSON point; coordinates are [lon, lat]."""

    model_config = ConfigDict(extra="ignore")

    type: str = "Point"
    coordinates: list[float]


class AggregatorStop(BaseModel):
    model_config = ConfigDict(extra="ignore")

    onestop_id: str | None = None
    stop_id: str | None = None
    stop_name: str | None = None
    stop_code: str | None = None
    wheelchair_boarding: int | None = None
    geometry: Geometry


class AggregatorStopsResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    stops: list[AggregatorStop] = []


class AggregatorRoute(BaseModel):
    model_config = ConfigDict(extra="ignore")

    route_id: str | None = None
    route_short_name: str | None = None


class AggregatorTrip(BaseModel):
    model_config = ConfigDict(extra="ignore")

    trip_id: str | None = None
    trip_headsign: str | None = None
    route: AggregatorRoute | None = None


class AggregatorTimes(BaseModel):
    model_config = ConfigDict(extra="ignore")

    scheduled: str | None = None  # HH:MM:SS
    estimated: str | None = None
    delay: int | None = None


class AggregatorDeparture(BaseModel):
    model_config = ConfigDict(extra="ignore")

    service_date: str | None = None  # YYYY-MM-DD
    departure_time: str | None = None
    trip: AggregatorTrip | None = None
    departure: AggregatorTimes | None = None


class AggregatorStopDepartures(BaseModel):
    model_config = ConfigDict(extra="ignore")

    stop_id: str | None = None
    departures: list[AggregatorDeparture] = []


class AggregatorDeparturesResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    stops: list[AggregatorStopDepartures] = []


class PlannerPlace(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str | None = None
    lat: float
    lon: float
    stop_id: str | None = Field(default=None, alias="stopId")


class PlannerLeg(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    mode: str = "WALK"
    from_place: PlannerPlace = Field(alias="from")
    to_place: PlannerPlace = Field(alias="to")
    start_time: int = Field(alias="startTime")  # epoch milliseconds
    end_time: int = Field(alias="endTime")
    distance: float = 0.0
    duration: float = 0.0
    route_id: str | None = Field(default=None, alias="routeId")
    route_short_name: str | None = Field(default=None, alias="routeShortName")
    trip_id: str | None = Field(default=None, alias="tripId")
    headsign: str | None = None


class PlannerItinerary(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    duration: int
    start_time: int = Field(alias="startTime")
    end_time: int = Field(alias="endTime")
    walk_time: int = Field(default=0, alias="walkTime")
    transit_time: int = Field(default=0, alias="transitTime")
    waiting_time: int = Field(default=0, alias="waitingTime")
    walk_distance: float = Field(default=0.0, alias="walkDistance")
    transfers: int = 0
    legs: list[PlannerLeg] = []


class PlannerPlan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    itineraries: list[PlannerItinerary] = []


class PlannerResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan: PlannerPlan | None = None
