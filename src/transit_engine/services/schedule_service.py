"""GTFS time and date helpers shared by the planner and the departure merger."""

from datetime import date, datetime, timedelta

# GTFS weekday column names indexed by weekday (0=Monday, 6=Sunday)
WEEKDAY_COLUMNS = [
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
]


def parse_gtfs_time(time_str: str) -> tuple[int, int, int]:
    """Parse a GTFS time string into hours, minutes, seconds.

    GTFS times can exceed 24:00:00 for trips that extend past midnight.
    For example, "25:30:00" means 1:30 AM the next day.

    Raises:
        ValueError: If the time string is invalid.
    """
    parts = time_str.strip().split(":")
    if len(parts) != 3:
        raise ValueError(f"Invalid GTFS time format: {time_str}")

    try:
        hours, minutes, seconds = (int(part) for part in parts)
    except ValueError as e:
        raise ValueError(f"Invalid GTFS time format: {time_str}") from e

    if hours < 0 or not 0 <= minutes < 60 or not 0 <= seconds < 60:
        raise ValueError(f"Invalid GTFS time format: {time_str}")

    return hours, minutes, seconds


def gtfs_time_to_seconds(time_str: str) -> int:
    """Convert a GTFS time string to seconds since service-day midnight.

    Can exceed 86400 for next-day times.
    """
    hours, minutes, seconds = parse_gtfs_time(time_str)
    return hours * 3600 + minutes * 60 + seconds


def date_to_gtfs_format(d: date) -> str:
    return d.strftime("%Y%m%d")


def service_datetime(service_date: date, time_str: str) -> datetime:
    """Resolve a GTFS time on a service date to a wall-clock datetime."""
    midnight = datetime.combine(service_date, datetime.min.time())
    return midnight + timedelta(seconds=gtfs_time_to_seconds(time_str))


def seconds_since_midnight(dt: datetime) -> int:
    return dt.hour * 3600 + dt.minute * 60 + dt.second
