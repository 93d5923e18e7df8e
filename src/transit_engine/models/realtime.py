"""Pydantic models for GTFS-RT data.

These models represent the subset of GTFS-RT fields we actually use.
GTFS-RT feeds carry many more fields, but we only model what we need.
"""

from datetime import datetime

from pydantic import BaseModel


class StopTimeEvent(BaseModel):
    """Predicted arrival or departure time at a stop."""

    delay: int | None = None  # seconds late (positive) or early (negative)
    time: int | None = None  # predicted unix timestamp


class StopTimeUpdate(BaseModel):
    """Update for a single stop in a trip."""

    stop_sequence: int | None = None
    stop_id: str | None = None
    arrival: StopTimeEvent | None = None
    departure: StopTimeEvent | None = None


class TripDescriptor(BaseModel):
    """Identifies a trip for real-time updates."""

    trip_id: str | None = None
    route_id: str | None = None
    start_date: str | None = None  # YYYYMMDD


class TripUpdate(BaseModel):
    """Real-time update for a single trip."""

    trip: TripDescriptor
    stop_time_update: list[StopTimeUpdate] = []
    timestamp: int | None = None


class FeedHeader(BaseModel):
    """Header information from GTFS-RT feed."""

    gtfs_realtime_version: str
    timestamp: int


class TripUpdatesData(BaseModel):
    """Complete trip updates feed data for one agency."""

    agency_id: str
    header: FeedHeader
    trip_updates: list[TripUpdate] = []
    fetched_at: datetime


class RealtimeUpdate(BaseModel):
    """Live prediction for one trip at one stop."""

    trip_id: str
    stop_id: str
    delay_seconds: int | None = None
    predicted_time: int | None = None  # unix timestamp
    timestamp: int | None = None
