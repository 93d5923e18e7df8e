from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Severity(str, Enum):
    """Alert severity, collapsed from the GTFS-RT severity_level enum."""

    INFO = "INFO"
    WARNING = "WARNING"
    SEVERE = "SEVERE"


class Alert(BaseModel):
    """A service alert affecting routes and/or stops."""

    alert_id: str
    agency_id: str | None = None
    route_ids: list[str] = Field(default_factory=list)
    stop_ids: list[str] = Field(default_factory=list)
    severity: Severity = Severity.INFO
    cause: str | None = None
    effect: str | None = None
    header: str | None = None
    description: str | None = None
    url: str | None = None

    # Validity window; either end may be open
    active_start: datetime | None = None
    active_end: datetime | None = None

    def has_expired(self, now: datetime) -> bool:
        """True once the validity window has ended. Upcoming alerts are kept."""
        return self.active_end is not None and now > self.active_end

    def matches(self, route_ids: set[str] | None, stop_ids: set[str] | None) -> bool:
        """Union filter: match any requested route or any requested stop."""
        if not route_ids and not stop_ids:
            return True
        if route_ids and route_ids.intersection(self.route_ids):
            return True
        if stop_ids and stop_ids.intersection(self.stop_ids):
            return True
        return False
