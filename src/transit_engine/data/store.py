"""Durable per-agency storage of static GTFS entities on SQLite."""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import BaseModel

from transit_engine.data.database import connect
from transit_engine.errors import StoreInitFailure
from transit_engine.geo import bounding_box, haversine_distance
from transit_engine.models.gtfs import Agency, GTFSBundle, Route, SourceKind, Stop, Trip
from transit_engine.models.responses import Location
from transit_engine.services.schedule_service import (
    WEEKDAY_COLUMNS,
    date_to_gtfs_format,
    gtfs_time_to_seconds,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS agencies (
    agency_id TEXT PRIMARY KEY,
    agency_name TEXT,
    source_kind TEXT NOT NULL,
    freshness TEXT
);

CREATE TABLE IF NOT EXISTS stops (
    agency_id TEXT NOT NULL,
    stop_id TEXT NOT NULL,
    stop_code TEXT,
    stop_name TEXT NOT NULL,
    stop_lat REAL NOT NULL,
    stop_lon REAL NOT NULL,
    wheelchair_boarding INTEGER,
    PRIMARY KEY (agency_id, stop_id)
);

CREATE TABLE IF NOT EXISTS routes (
    agency_id TEXT NOT NULL,
    route_id TEXT NOT NULL,
    route_short_name TEXT,
    route_long_name TEXT,
    route_type INTEGER NOT NULL,
    route_color TEXT,
    route_text_color TEXT,
    PRIMARY KEY (agency_id, route_id)
);

CREATE TABLE IF NOT EXISTS trips (
    agency_id TEXT NOT NULL,
    trip_id TEXT NOT NULL,
    route_id TEXT NOT NULL,
    service_id TEXT,
    trip_headsign TEXT,
    direction_id INTEGER,
    wheelchair_accessible INTEGER,
    PRIMARY KEY (agency_id, trip_id)
);

CREATE TABLE IF NOT EXISTS stop_times (
    agency_id TEXT NOT NULL,
    trip_id TEXT NOT NULL,
    stop_sequence INTEGER NOT NULL,
    stop_id TEXT NOT NULL,
    arrival_time TEXT,
    departure_time TEXT,
    arrival_seconds INTEGER,
    departure_seconds INTEGER,
    PRIMARY KEY (agency_id, trip_id, stop_sequence)
);

CREATE TABLE IF NOT EXISTS calendar (
    agency_id TEXT NOT NULL,
    service_id TEXT NOT NULL,
    monday INTEGER,
    tuesday INTEGER,
    wednesday INTEGER,
    thursday INTEGER,
    friday INTEGER,
    saturday INTEGER,
    sunday INTEGER,
    start_date TEXT,
    end_date TEXT,
    PRIMARY KEY (agency_id, service_id)
);

CREATE TABLE IF NOT EXISTS calendar_dates (
    agency_id TEXT NOT NULL,
    service_id TEXT NOT NULL,
    date TEXT NOT NULL,
    exception_type INTEGER NOT NULL,
    PRIMARY KEY (agency_id, service_id, date)
);

CREATE INDEX IF NOT EXISTS idx_stops_location ON stops(stop_lat, stop_lon);
CREATE INDEX IF NOT EXISTS idx_stops_id ON stops(stop_id);
CREATE INDEX IF NOT EXISTS idx_routes_id ON routes(route_id);
CREATE INDEX IF NOT EXISTS idx_trips_id ON trips(trip_id);
CREATE INDEX IF NOT EXISTS idx_stop_times_stop ON stop_times(stop_id, departure_seconds);
"""

# Entity kind -> stored columns (agency_id is always prepended)
ENTITY_COLUMNS: dict[str, list[str]] = {
    "stops": [
        "stop_id",
        "stop_code",
        "stop_name",
        "stop_lat",
        "stop_lon",
        "wheelchair_boarding",
    ],
    "routes": [
        "route_id",
        "route_short_name",
        "route_long_name",
        "route_type",
        "route_color",
        "route_text_color",
    ],
    "trips": [
        "trip_id",
        "route_id",
        "service_id",
        "trip_headsign",
        "direction_id",
        "wheelchair_accessible",
    ],
    "stop_times": [
        "trip_id",
        "stop_sequence",
        "stop_id",
        "arrival_time",
        "departure_time",
        "arrival_seconds",
        "departure_seconds",
    ],
    "calendar": ["service_id", *WEEKDAY_COLUMNS, "start_date", "end_date"],
    "calendar_dates": ["service_id", "date", "exception_type"],
}

_VISIT_SELECT = """
    SELECT st.agency_id, st.trip_id, st.stop_id, st.stop_sequence,
           st.arrival_seconds, st.departure_seconds,
           t.route_id, t.service_id, t.trip_headsign, t.wheelchair_accessible,
           r.route_short_name, r.route_type
    FROM stop_times st
    JOIN trips t ON t.agency_id = st.agency_id AND t.trip_id = st.trip_id
    LEFT JOIN routes r ON r.agency_id = t.agency_id AND r.route_id = t.route_id
"""


@dataclass
class StopVisit:
    """One trip calling at one stop."""

    agency_id: str
    trip_id: str
    route_id: str
    service_id: str | None
    stop_id: str
    stop_sequence: int
    arrival_seconds: int | None
    departure_seconds: int | None
    headsign: str | None = None
    route_short_name: str | None = None
    route_type: int | None = None
    wheelchair_accessible: int | None = None


def _visit_from_row(row: aiosqlite.Row) -> StopVisit:
    return StopVisit(
        agency_id=row["agency_id"],
        trip_id=row["trip_id"],
        route_id=row["route_id"],
        service_id=row["service_id"],
        stop_id=row["stop_id"],
        stop_sequence=int(row["stop_sequence"]),
        arrival_seconds=row["arrival_seconds"],
        departure_seconds=row["departure_seconds"],
        headsign=row["trip_headsign"],
        route_short_name=row["route_short_name"],
        route_type=int(row["route_type"]) if row["route_type"] is not None else None,
        wheelchair_accessible=row["wheelchair_accessible"],
    )


def _stop_from_row(row: aiosqlite.Row, distance: float | None = None) -> Stop:
    return Stop(
        stop_id=row["stop_id"],
        stop_code=row["stop_code"],
        stop_name=row["stop_name"],
        stop_lat=float(row["stop_lat"]),
        stop_lon=float(row["stop_lon"]),
        wheelchair_boarding=row["wheelchair_boarding"],
        agency_id=row["agency_id"],
        distance_meters=distance,
    )


def _row_values(kind: str, agency_id: str, record: BaseModel) -> tuple[Any, ...]:
    data = record.model_dump()
    if kind == "stop_times":
        arrival = data.get("arrival_time") or data.get("departure_time")
        departure = data.get("departure_time") or arrival
        data["arrival_seconds"] = gtfs_time_to_seconds(arrival) if arrival else None
        data["departure_seconds"] = gtfs_time_to_seconds(departure) if departure else None
    return (agency_id, *(data.get(col) for col in ENTITY_COLUMNS[kind]))


def _insert_sql(kind: str) -> str:
    columns = ["agency_id", *ENTITY_COLUMNS[kind]]
    placeholders = ",".join(["?"] * len(columns))
    return f"INSERT OR REPLACE INTO {kind} ({','.join(columns)}) VALUES ({placeholders})"


class StaticStore:
    """Per-agency GTFS tables with id and spatial lookups.

    Usage:
        store = StaticStore(db_path)
        await store.open()
        stops = await store.stops_near(Location(lat=..., lng=...), 500)
        await store.close()
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        # Reads and writes use separate connections so that, under WAL,
        # readers only ever see committed data.
        self._db: aiosqlite.Connection | None = None
        self._writer: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._db is not None and self._writer is not None

    async def open(self) -> None:
        """Open the database and create the schema.

        Raises:
            StoreInitFailure: If the file cannot be opened or migrated.
        """
        try:
            writer = await connect(self.db_path)
        except Exception as e:
            raise StoreInitFailure(path=str(self.db_path), message=str(e)) from e
        try:
            await writer.executescript(SCHEMA_SQL)
            await writer.commit()
            reader = await connect(self.db_path)
        except Exception as e:
            await writer.close()
            raise StoreInitFailure(path=str(self.db_path), message=str(e)) from e
        self._writer = writer
        self._db = reader
        logger.info(f"Static store ready at {self.db_path}")

    async def close(self) -> None:
        for db in (self._db, self._writer):
            if db is not None:
                await db.close()
        self._db = None
        self._writer = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store not open - call open() first")
        return self._db

    def _write_conn(self) -> aiosqlite.Connection:
        if self._writer is None:
            raise RuntimeError("Store not open - call open() first")
        return self._writer

    # Agencies

    async def register_agency(self, agency: Agency) -> None:
        """Insert an agency, or update its name and source kind keeping freshness."""
        db = self._write_conn()
        async with self._write_lock:
            await db.execute(
                """
                INSERT INTO agencies (agency_id, agency_name, source_kind, freshness)
                VALUES (?, ?, ?, NULL)
                ON CONFLICT(agency_id) DO UPDATE SET
                    agency_name = COALESCE(excluded.agency_name, agencies.agency_name),
                    source_kind = excluded.source_kind
                """,
                (agency.agency_id, agency.agency_name, agency.source_kind.value),
            )
            await db.commit()

    async def list_agencies(self) -> list[Agency]:
        db = self._conn()
        async with db.execute(
            "SELECT agency_id, agency_name, source_kind, freshness FROM agencies ORDER BY agency_id"
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            Agency(
                agency_id=row["agency_id"],
                agency_name=row["agency_name"],
                source_kind=SourceKind(row["source_kind"]),
                freshness=datetime.fromisoformat(row["freshness"]) if row["freshness"] else None,
            )
            for row in rows
        ]

    async def freshness(self, agency_id: str) -> datetime | None:
        db = self._conn()
        async with db.execute(
            "SELECT freshness FROM agencies WHERE agency_id = ?", (agency_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None or row["freshness"] is None:
            return None
        return datetime.fromisoformat(row["freshness"])

    async def set_freshness(self, agency_id: str, ts: datetime) -> None:
        db = self._write_conn()
        async with self._write_lock:
            await db.execute(
                """
                INSERT INTO agencies (agency_id, source_kind, freshness) VALUES (?, ?, ?)
                ON CONFLICT(agency_id) DO UPDATE SET freshness = excluded.freshness
                """,
                (agency_id, SourceKind.VENDOR.value, ts.isoformat()),
            )
            await db.commit()

    # Writes

    async def upsert_entities(
        self, agency_id: str, kind: str, records: Sequence[BaseModel]
    ) -> int:
        """Insert or replace records of one kind in a single transaction.

        On failure the transaction is rolled back and existing rows are kept.

        Returns:
            Number of records written.
        """
        if kind not in ENTITY_COLUMNS:
            raise ValueError(f"Unknown entity kind: {kind}")
        db = self._write_conn()
        rows = [_row_values(kind, agency_id, record) for record in records]
        async with self._write_lock:
            try:
                await db.executemany(_insert_sql(kind), rows)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return len(rows)

    async def replace_agency_data(self, bundle: GTFSBundle) -> dict[str, int]:
        """Replace every table of one agency with the bundle's contents.

        Runs as one transaction: readers see either the prior or the new data.
        """
        db = self._write_conn()
        agency_id = bundle.agency_id
        counts: dict[str, int] = {}
        async with self._write_lock:
            try:
                for kind in ENTITY_COLUMNS:
                    await db.execute(f"DELETE FROM {kind} WHERE agency_id = ?", (agency_id,))
                    records: list[BaseModel] = getattr(bundle, kind)
                    rows = [_row_values(kind, agency_id, record) for record in records]
                    if rows:
                        await db.executemany(_insert_sql(kind), rows)
                    counts[kind] = len(rows)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        logger.info(f"Stored {agency_id}: {counts}")
        return counts

    # Reads

    async def stops_near(
        self, location: Location, radius_meters: float, limit: int | None = None
    ) -> list[Stop]:
        """Stops within radius_meters of location, nearest first.

        Uses a bounding box filter in SQL, then exact haversine distance.
        """
        db = self._conn()
        min_lat, max_lat, min_lon, max_lon = bounding_box(location.lat, location.lng, radius_meters)
        sql = """
            SELECT agency_id, stop_id, stop_code, stop_name, stop_lat, stop_lon,
                   wheelchair_boarding
            FROM stops
            WHERE stop_lat BETWEEN ? AND ?
              AND stop_lon BETWEEN ? AND ?
        """
        async with db.execute(sql, (min_lat, max_lat, min_lon, max_lon)) as cursor:
            rows = await cursor.fetchall()

        stops_with_distance: list[tuple[aiosqlite.Row, float]] = []
        for row in rows:
            distance = haversine_distance(location.lat, location.lng, row["stop_lat"], row["stop_lon"])
            if distance < radius_meters:
                stops_with_distance.append((row, distance))

        stops_with_distance.sort(key=lambda x: x[1])
        if limit is not None:
            stops_with_distance = stops_with_distance[:limit]
        return [_stop_from_row(row, round(distance, 1)) for row, distance in stops_with_distance]

    async def get_stop(self, stop_id: str, agency_id: str | None = None) -> Stop | None:
        db = self._conn()
        sql = """
            SELECT agency_id, stop_id, stop_code, stop_name, stop_lat, stop_lon,
                   wheelchair_boarding
            FROM stops WHERE stop_id = ?
        """
        params: list[str] = [stop_id]
        if agency_id is not None:
            sql += " AND agency_id = ?"
            params.append(agency_id)
        async with db.execute(sql + " LIMIT 1", params) as cursor:
            row = await cursor.fetchone()
        return _stop_from_row(row) if row else None

    async def get_route(self, route_id: str, agency_id: str | None = None) -> Route | None:
        db = self._conn()
        sql = """
            SELECT agency_id, route_id, route_short_name, route_long_name, route_type,
                   route_color, route_text_color
            FROM routes WHERE route_id = ?
        """
        params: list[str] = [route_id]
        if agency_id is not None:
            sql += " AND agency_id = ?"
            params.append(agency_id)
        async with db.execute(sql + " LIMIT 1", params) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return Route(
            route_id=row["route_id"],
            agency_id=row["agency_id"],
            route_short_name=row["route_short_name"],
            route_long_name=row["route_long_name"],
            route_type=int(row["route_type"]),
            route_color=row["route_color"] or "0078D4",
            route_text_color=row["route_text_color"] or "FFFFFF",
        )

    async def get_trip(self, trip_id: str, agency_id: str | None = None) -> Trip | None:
        db = self._conn()
        sql = """
            SELECT trip_id, route_id, service_id, trip_headsign, direction_id,
                   wheelchair_accessible
            FROM trips WHERE trip_id = ?
        """
        params: list[str] = [trip_id]
        if agency_id is not None:
            sql += " AND agency_id = ?"
            params.append(agency_id)
        async with db.execute(sql + " LIMIT 1", params) as cursor:
            row = await cursor.fetchone()
        return Trip(**dict(row)) if row else None

    async def trips_serving_stop(
        self,
        stop_id: str,
        after_seconds: int | None = None,
        before_seconds: int | None = None,
    ) -> list[StopVisit]:
        """Trips calling at a stop, ordered by departure time.

        Args:
            stop_id: Stop to look up (in every agency that has it).
            after_seconds: Earliest departure, seconds since service-day midnight.
            before_seconds: Latest departure, seconds since service-day midnight.
        """
        db = self._conn()
        sql = _VISIT_SELECT + " WHERE st.stop_id = ?"
        params: list[str | int] = [stop_id]
        if after_seconds is not None:
            sql += " AND st.departure_seconds >= ?"
            params.append(after_seconds)
        if before_seconds is not None:
            sql += " AND st.departure_seconds <= ?"
            params.append(before_seconds)
        sql += " ORDER BY st.departure_seconds, st.trip_id"

        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [_visit_from_row(row) for row in rows]

    async def stop_times_for_trip(self, agency_id: str, trip_id: str) -> list[StopVisit]:
        """Every call of one trip, ascending by stop_sequence."""
        db = self._conn()
        sql = _VISIT_SELECT + " WHERE st.agency_id = ? AND st.trip_id = ? ORDER BY st.stop_sequence"
        async with db.execute(sql, (agency_id, trip_id)) as cursor:
            rows = await cursor.fetchall()
        return [_visit_from_row(row) for row in rows]

    async def active_service_ids(self, agency_id: str, query_date: date) -> set[str] | None:
        """Get service IDs of one agency active on a given date.

        Implements the GTFS service day algorithm:
        1. Services from calendar whose date range covers the date and whose
           weekday flag is 1
        2. calendar_dates exceptions (exception_type=1 adds, 2 removes)

        Returns:
            Set of active service IDs, or None when the agency publishes no
            calendar at all (every trip runs every day).
        """
        db = self._conn()
        date_str = date_to_gtfs_format(query_date)
        weekday_col = WEEKDAY_COLUMNS[query_date.weekday()]

        async with db.execute(
            """
            SELECT (SELECT COUNT(*) FROM calendar WHERE agency_id = ?)
                 + (SELECT COUNT(*) FROM calendar_dates WHERE agency_id = ?)
            """,
            (agency_id, agency_id),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None or row[0] == 0:
            return None

        sql = f"""
            SELECT service_id
            FROM calendar
            WHERE agency_id = ?
              AND ? BETWEEN start_date AND end_date
              AND {weekday_col} = 1
        """
        async with db.execute(sql, (agency_id, date_str)) as cursor:
            rows = await cursor.fetchall()
        services = {row["service_id"] for row in rows}

        sql = """
            SELECT service_id, exception_type
            FROM calendar_dates
            WHERE agency_id = ? AND date = ?
        """
        async with db.execute(sql, (agency_id, date_str)) as cursor:
            exceptions = await cursor.fetchall()

        for row in exceptions:
            if int(row["exception_type"]) == 2:
                services.discard(row["service_id"])
            elif int(row["exception_type"]) == 1:
                services.add(row["service_id"])

        return services

    async def scheduled_departures(
        self,
        stop_id: str,
        service_date: date,
        after_seconds: int,
        limit: int,
        before_seconds: int | None = None,
    ) -> list[StopVisit]:
        """Departures from a stop on a service date, skipping inactive services."""
        visits = await self.trips_serving_stop(stop_id, after_seconds, before_seconds)
        active: dict[str, set[str] | None] = {}
        result: list[StopVisit] = []
        for visit in visits:
            if visit.agency_id not in active:
                active[visit.agency_id] = await self.active_service_ids(visit.agency_id, service_date)
            services = active[visit.agency_id]
            if services is not None and visit.service_id not in services:
                continue
            result.append(visit)
            if len(result) >= limit:
                break
        return result

    async def route_agency(self, route_id: str) -> str | None:
        db = self._conn()
        async with db.execute(
            "SELECT agency_id FROM routes WHERE route_id = ? LIMIT 1", (route_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return row["agency_id"] if row else None

    async def counts(self, agency_id: str | None = None) -> dict[str, int]:
        """Row counts per entity table, optionally for one agency."""
        db = self._conn()
        counts: dict[str, int] = {}
        for kind in ENTITY_COLUMNS:
            sql = f"SELECT COUNT(*) FROM {kind}"
            params: tuple[str, ...] = ()
            if agency_id is not None:
                sql += " WHERE agency_id = ?"
                params = (agency_id,)
            async with db.execute(sql, params) as cursor:
                row = await cursor.fetchone()
            counts[kind] = row[0] if row else 0
        return counts
