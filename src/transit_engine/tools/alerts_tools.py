from transit_engine.app import get_engine, mcp
from transit_engine.models.alerts import Alert, Severity
from transit_engine.models.responses import FareInfo


@mcp.tool()
async def get_alerts(
    route_ids: list[str] | None = None,
    stop_ids: list[str] | None = None,
    severity: Severity | None = None,
    agency_ids: list[str] | None = None,
) -> list[Alert]:
    """Get service alerts for the active transit agencies.

    Alerts whose validity window has ended are left out. With filters, an
    alert is kept when it affects any of the given routes or any of the
    given stops. Severity and agency filters narrow that result further.

    Args:
        route_ids: Route IDs to filter by (e.g. ["38", "N"]).
        stop_ids: Stop IDs to filter by.
        severity: Only alerts of this severity (INFO, WARNING or SEVERE).
        agency_ids: Only alerts from these agencies (e.g. ["SF-MUNI"]).

    Returns:
        Matching alerts; an empty list when no alert feed is reachable.
    """
    return await get_engine().get_alerts(route_ids, stop_ids, severity, agency_ids)


@mcp.tool()
async def get_fare_info(route_id: str) -> FareInfo:
    """Get fare information for a route.

    Falls back to a standard fare (3.25 regular, 1.60 reduced, USD) when
    the operating agency publishes no fare data.

    Args:
        route_id: The route ID (e.g. "38").

    Returns:
        FareInfo with regular and reduced prices and payment methods.
    """
    return await get_engine().get_fare_info(route_id)
