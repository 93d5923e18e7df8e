"""Tests for the alerts service."""

from datetime import datetime
from unittest.mock import AsyncMock, patch

from transit_engine.data.cache import TTLCache
from transit_engine.models.alerts import Alert, Severity
from transit_engine.services.alerts_service import AlertService, filter_alerts
from transit_engine.services.realtime_service import FeedEndpoint

NOW = datetime(2025, 3, 3, 8, 0)

FEEDS = {
    "SF-MUNI": FeedEndpoint("SF-MUNI", "https://example.com/sf/alerts"),
    "NYC-MTA": FeedEndpoint("NYC-MTA", "https://example.com/nyc/alerts", api_key="k"),
}


def _create_alert(
    alert_id: str,
    route_ids: list[str] | None = None,
    stop_ids: list[str] | None = None,
    **kwargs,
) -> Alert:
    """Create an alert for the given routes and stops."""
    return Alert(
        alert_id=alert_id,
        route_ids=route_ids or [],
        stop_ids=stop_ids or [],
        header=f"Alert {alert_id}",
        **kwargs,
    )


SF_ALERTS = [
    _create_alert("detour-38", route_ids=["38"], severity=Severity.WARNING),
    _create_alert("elevator", stop_ids=["15001"]),
    _create_alert("ended", route_ids=["38"], active_end=datetime(2025, 3, 1, 0, 0)),
]
NYC_ALERTS = [
    _create_alert("upcoming", route_ids=["A"], active_start=datetime(2025, 3, 10, 0, 0)),
]


def _service(cache: TTLCache | None = None) -> AlertService:
    return AlertService(FEEDS, cache or TTLCache(), clock=lambda: NOW)


# =============================================================================
# Filtering
# =============================================================================


def test_filter_drops_expired_alerts():
    alerts = filter_alerts(SF_ALERTS + NYC_ALERTS, None, None, NOW)

    # upcoming alerts are kept, ended ones dropped
    assert [a.alert_id for a in alerts] == ["detour-38", "elevator", "upcoming"]


def test_filter_alerts_by_route():
    alerts = filter_alerts(SF_ALERTS, ["38"], None, NOW)

    assert [a.alert_id for a in alerts] == ["detour-38"]


def test_filter_alerts_by_stop():
    alerts = filter_alerts(SF_ALERTS, None, ["15001"], NOW)

    assert [a.alert_id for a in alerts] == ["elevator"]


def test_filter_is_a_union():
    alerts = filter_alerts(SF_ALERTS, ["38"], ["15001"], NOW)

    assert [a.alert_id for a in alerts] == ["detour-38", "elevator"]


def test_filter_no_match():
    assert filter_alerts(SF_ALERTS, ["1"], ["99999"], NOW) == []


def test_filter_by_severity():
    alerts = filter_alerts(SF_ALERTS, None, None, NOW, severity=Severity.WARNING)

    assert [a.alert_id for a in alerts] == ["detour-38"]


def test_severity_narrows_the_union():
    alerts = filter_alerts(SF_ALERTS, ["38"], ["15001"], NOW, severity=Severity.INFO)

    assert [a.alert_id for a in alerts] == ["elevator"]


def test_filter_by_agency():
    tagged = [
        _create_alert("sf", route_ids=["38"], agency_id="SF-MUNI"),
        _create_alert("nyc", route_ids=["A"], agency_id="NYC-MTA"),
        _create_alert("unknown", route_ids=["38"]),
    ]

    nyc = filter_alerts(tagged, None, None, NOW, agency_ids=["NYC-MTA"])
    sf_route = filter_alerts(tagged, ["38"], None, NOW, agency_ids=["SF-MUNI"])

    assert [a.alert_id for a in nyc] == ["nyc"]
    assert [a.alert_id for a in sf_route] == ["sf"]


# =============================================================================
# Graceful degradation tests
# =============================================================================


async def test_get_alerts_merges_agencies():
    service = _service()

    with patch.object(
        service, "_fetch", AsyncMock(side_effect=[SF_ALERTS, NYC_ALERTS])
    ):
        alerts = await service.get_alerts()

    assert [a.alert_id for a in alerts] == ["detour-38", "elevator", "upcoming"]


async def test_one_feed_failing_keeps_the_others():
    service = _service()

    with patch.object(
        service, "_fetch", AsyncMock(side_effect=[SF_ALERTS, ConnectionError("down")])
    ):
        alerts = await service.get_alerts(route_ids=["38", "A"])

    assert [a.alert_id for a in alerts] == ["detour-38"]


async def test_all_feeds_failing_returns_empty():
    cache = TTLCache()
    service = _service(cache)

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.get = AsyncMock(side_effect=ConnectionError("offline"))
        mock_client_class.return_value = mock_client

        alerts = await service.get_alerts()

    assert alerts == []
    # nothing cached, so the next call retries
    assert len(cache) == 0


async def test_no_feeds_configured():
    service = AlertService({}, TTLCache())

    assert await service.get_alerts(route_ids=["38"]) == []


async def test_cache_is_used():
    """Test that cached alerts are returned without refetching."""
    service = _service()
    fetch = AsyncMock(side_effect=[SF_ALERTS, NYC_ALERTS])

    with patch.object(service, "_fetch", fetch):
        first = await service.get_alerts(route_ids=["38"])
        second = await service.get_alerts(stop_ids=["15001"])

    assert fetch.call_count == 2  # one per agency, only on the first call
    assert [a.alert_id for a in first] == ["detour-38"]
    assert [a.alert_id for a in second] == ["elevator"]


async def test_get_alerts_severity_and_agency():
    service = _service()
    sf = [alert.model_copy(update={"agency_id": "SF-MUNI"}) for alert in SF_ALERTS]
    nyc = [alert.model_copy(update={"agency_id": "NYC-MTA"}) for alert in NYC_ALERTS]

    with patch.object(service, "_fetch", AsyncMock(side_effect=[sf, nyc])):
        warnings = await service.get_alerts(severity=Severity.WARNING)
        nyc_only = await service.get_alerts(agency_ids=["NYC-MTA"])

    assert [a.alert_id for a in warnings] == ["detour-38"]
    assert [a.alert_id for a in nyc_only] == ["upcoming"]
