"""GTFS CSV/ZIP/JSON parsing into canonical bundles."""

import csv
import io
import logging
import zipfile
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path, PurePosixPath
from typing import Any

from pydantic import BaseModel, ValidationError

from transit_engine.errors import FeedParseError
from transit_engine.models.gtfs import (
    Calendar,
    CalendarDate,
    GTFSBundle,
    Route,
    Stop,
    StopTime,
    Trip,
)

logger = logging.getLogger(__name__)

# bundle field -> (csv_filename, model, columns)
FILE_DEFINITIONS: dict[str, tuple[str, type[BaseModel], list[str]]] = {
    "stops": (
        "stops.txt",
        Stop,
        [
            "stop_id",
            "stop_code",
            "stop_name",
            "stop_lat",
            "stop_lon",
            "location_type",
            "wheelchair_boarding",
        ],
    ),
    "routes": (
        "routes.txt",
        Route,
        [
            "route_id",
            "agency_id",
            "route_short_name",
            "route_long_name",
            "route_type",
            "route_color",
            "route_text_color",
        ],
    ),
    "trips": (
        "trips.txt",
        Trip,
        [
            "trip_id",
            "route_id",
            "service_id",
            "trip_headsign",
            "direction_id",
            "wheelchair_accessible",
        ],
    ),
    "stop_times": (
        "stop_times.txt",
        StopTime,
        ["trip_id", "arrival_time", "departure_time", "stop_id", "stop_sequence"],
    ),
    "calendar": (
        "calendar.txt",
        Calendar,
        [
            "service_id",
            "monday",
            "tuesday",
            "wednesday",
            "thursday",
            "friday",
            "saturday",
            "sunday",
            "start_date",
            "end_date",
        ],
    ),
    "calendar_dates": (
        "calendar_dates.txt",
        CalendarDate,
        ["service_id", "date", "exception_type"],
    ),
}

# Columns that must be present in the header for the file to be usable
REQUIRED_COLUMNS: dict[str, list[str]] = {
    "stops": ["stop_id", "stop_name", "stop_lat", "stop_lon"],
    "routes": ["route_id", "route_type"],
    "trips": ["trip_id", "route_id"],
    "stop_times": ["trip_id", "stop_id", "stop_sequence"],
    "calendar": [
        "service_id",
        "monday",
        "tuesday",
        "wednesday",
        "thursday",
        "friday",
        "saturday",
        "sunday",
        "start_date",
        "end_date",
    ],
    "calendar_dates": ["service_id", "date", "exception_type"],
}

# Files without which an agency cannot be planned over
CORE_FILES = ("stops", "routes", "trips", "stop_times")

# Only this many skipped records per file are logged individually
MAX_LOGGED_SKIPS = 10


class GTFSParser:
    """Parses GTFS CSV files into a GTFSBundle, skipping malformed records."""

    def __init__(self, agency_id: str):
        self.agency_id = agency_id
        self._skipped = 0

    def parse_path(self, gtfs_path: Path) -> GTFSBundle:
        """Parse a GTFS directory or ZIP file.

        Raises:
            FileNotFoundError: If the path doesn't exist.
            ValueError: If a core GTFS file is missing or unusable.
        """
        gtfs_path = Path(gtfs_path)
        if not gtfs_path.exists():
            raise FileNotFoundError(f"GTFS path not found: {gtfs_path}")

        if gtfs_path.is_file() and gtfs_path.suffix == ".zip":
            return self.parse_zip_bytes(gtfs_path.read_bytes())

        def open_member(filename: str) -> io.TextIOBase | None:
            csv_path = gtfs_path / filename
            if not csv_path.exists():
                return None
            return open(csv_path, encoding="utf-8-sig", newline="")

        return self._parse(open_member)

    def parse_zip_bytes(self, content: bytes) -> GTFSBundle:
        """Parse an in-memory GTFS ZIP archive.

        Raises:
            ValueError: If the payload is not a ZIP or a core file is missing.
        """
        try:
            zf = zipfile.ZipFile(io.BytesIO(content))
        except zipfile.BadZipFile as e:
            raise ValueError(f"{self.agency_id}: payload is not a GTFS ZIP archive") from e

        with zf:
            # feeds sometimes nest files in a top-level folder
            members = {PurePosixPath(name).name: name for name in zf.namelist()}

            def open_member(filename: str) -> io.TextIOBase | None:
                if filename not in members:
                    return None
                return io.TextIOWrapper(zf.open(members[filename]), encoding="utf-8-sig", newline="")

            return self._parse(open_member)

    def parse_document(self, document: dict[str, Any]) -> GTFSBundle:
        """Parse a JSON document with one list of records per GTFS file."""
        self._skipped = 0
        tables: dict[str, list[BaseModel]] = {}
        for field, (filename, model, _) in FILE_DEFINITIONS.items():
            raw_records = document.get(field) or []
            tables[field] = list(self._validate_records(filename, model, raw_records))
        return self._finish(tables)

    def _parse(self, open_member: Callable[[str], io.TextIOBase | None]) -> GTFSBundle:
        self._skipped = 0
        tables: dict[str, list[BaseModel]] = {}
        for field, (filename, model, columns) in FILE_DEFINITIONS.items():
            handle = open_member(filename)
            if handle is None:
                if field in CORE_FILES:
                    raise ValueError(f"{self.agency_id}: required file {filename} not found")
                logger.debug(f"{self.agency_id}: optional file {filename} not found")
                tables[field] = []
                continue
            with handle:
                reader = csv.reader(handle)
                header_index = self._build_header_index(reader, field, columns, filename)
                rows = (self._row_from_index(row, header_index) for row in reader)
                tables[field] = list(self._validate_records(filename, model, rows))
        return self._finish(tables)

    def _validate_records(
        self, filename: str, model: type[BaseModel], rows: Iterable[dict[str, Any]]
    ) -> Iterator[BaseModel]:
        logged = 0
        skipped = 0
        for line_no, row in enumerate(rows, start=2):
            try:
                record = self._build_record(filename, model, row)
            except FeedParseError as e:
                skipped += 1
                if logged < MAX_LOGGED_SKIPS:
                    logger.warning(f"{self.agency_id}: skipping line {line_no}: {e}")
                    logged += 1
                continue
            if record is not None:
                yield record
        if skipped:
            logger.info(f"{self.agency_id}: skipped {skipped:,} invalid rows in {filename}")
            self._skipped += skipped

    def _build_record(
        self, filename: str, model: type[BaseModel], row: dict[str, Any]
    ) -> BaseModel | None:
        values = {key: self._convert_value(value) for key, value in row.items()}
        if model is Stop:
            # stations, entrances and nodes are not boarding locations
            if values.get("location_type") not in (None, "0", 0):
                return None
            values.pop("location_type", None)
        if model is Route:
            values.pop("agency_id", None)
        values = {key: value for key, value in values.items() if value is not None}
        try:
            return model.model_validate(values)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or "record"
            raise FeedParseError(
                source=filename, record=str(row), message=f"{field}: {first['msg']}"
            ) from e

    def _finish(self, tables: dict[str, list[BaseModel]]) -> GTFSBundle:
        bundle = GTFSBundle(
            agency_id=self.agency_id,
            stops=tables.get("stops", []),
            routes=tables.get("routes", []),
            trips=tables.get("trips", []),
            stop_times=self._ordered_stop_times(tables.get("stop_times", []), tables.get("trips", [])),
            calendar=tables.get("calendar", []),
            calendar_dates=tables.get("calendar_dates", []),
        )
        bundle.skipped = self._skipped
        return bundle

    def _ordered_stop_times(
        self, stop_times: list[BaseModel], trips: list[BaseModel]
    ) -> list[StopTime]:
        """Keep stop times of known trips with strictly increasing sequences."""
        known_trips = {trip.trip_id for trip in trips}
        by_trip: dict[str, list[StopTime]] = {}
        orphans = 0
        for stop_time in stop_times:
            if stop_time.trip_id not in known_trips:
                orphans += 1
                continue
            by_trip.setdefault(stop_time.trip_id, []).append(stop_time)

        ordered: list[StopTime] = []
        duplicates = 0
        for trip_id, calls in by_trip.items():
            calls.sort(key=lambda st: st.stop_sequence)
            previous: int | None = None
            for call in calls:
                if previous is not None and call.stop_sequence <= previous:
                    duplicates += 1
                    continue
                ordered.append(call)
                previous = call.stop_sequence

        if orphans:
            logger.warning(f"{self.agency_id}: dropped {orphans:,} stop_times of unknown trips")
        if duplicates:
            logger.warning(f"{self.agency_id}: dropped {duplicates:,} duplicate stop_sequence rows")
        self._skipped += orphans + duplicates
        return ordered

    def _convert_value(self, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            if value == "":
                return None
        return value

    def _normalize_header(self, name: str, expected: set[str]) -> str:
        """Normalize CSV header field names."""
        cleaned = name.strip().strip('"').lower()
        if cleaned in expected:
            return cleaned
        for col in expected:
            if cleaned.endswith(col):
                return col
        return cleaned

    def _build_header_index(
        self, reader: Any, field: str, columns: list[str], filename: str
    ) -> dict[str, int]:
        """Build header index mapping for a CSV reader.

        Raises:
            ValueError: If the file is empty or misses a required column.
        """
        header = next(reader, None)
        if header is None:
            raise ValueError(f"{self.agency_id}: {filename} is empty")
        expected = set(columns)
        header_index: dict[str, int] = {}
        for idx, name in enumerate(header):
            normalized = self._normalize_header(name, expected)
            if normalized in expected and normalized not in header_index:
                header_index[normalized] = idx
        missing = [col for col in REQUIRED_COLUMNS[field] if col not in header_index]
        if missing:
            raise ValueError(f"{self.agency_id}: {filename} missing columns: {', '.join(missing)}")
        return header_index

    def _row_from_index(self, row: list[str], header_index: dict[str, int]) -> dict[str, str]:
        return {col: (row[idx] if idx < len(row) else "") for col, idx in header_index.items()}
