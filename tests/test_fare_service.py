"""Tests for fare lookup."""

from unittest.mock import AsyncMock, MagicMock, patch

from transit_engine.data.cache import TTL_SECONDS, TTLCache, TTLClass
from transit_engine.data.store import StaticStore
from transit_engine.models.responses import FareResponse, Provenance
from transit_engine.services.fare_service import (
    DEFAULT_PAYMENT_METHODS,
    FareEndpoint,
    FareService,
    default_fare,
    fare_from_response,
)

SF_ENDPOINT = {"SF-MUNI": FareEndpoint("https://api.sfmta.example.com/v1", api_key="k")}


def mock_fare_client(payload: dict) -> AsyncMock:
    mock_response = MagicMock()
    mock_response.json.return_value = payload

    mock_client = AsyncMock()
    mock_client.get = AsyncMock(return_value=mock_response)
    return mock_client


def test_default_fare():
    fare = default_fare()

    assert fare.regular == 3.25
    assert fare.reduced == 1.60
    assert fare.currency == "USD"
    assert fare.payment_methods == DEFAULT_PAYMENT_METHODS
    assert fare.provenance == Provenance.SYNTHESIZED


def test_fare_from_response_fills_gaps():
    fare = fare_from_response(FareResponse(adult_price=2.50, currency="CAD"))

    assert fare.regular == 2.50
    assert fare.reduced == 1.60
    assert fare.currency == "CAD"
    assert fare.payment_methods == ["cash", "card", "mobile"]
    assert fare.provenance == Provenance.LIVE


async def test_endpoint_fare(store: StaticStore):
    service = FareService(store, TTLCache(), SF_ENDPOINT)
    payload = {
        "adult_price": 2.75,
        "senior_price": 1.35,
        "currency": "USD",
        "payment_methods": ["clipper"],
        "zones": ["SF"],
    }

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = mock_fare_client(payload)
        mock_client_class.return_value = mock_client

        fare = await service.get_fare_info("R49")

    assert fare.regular == 2.75
    assert fare.reduced == 1.35
    assert fare.payment_methods == ["clipper"]
    assert fare.provenance == Provenance.LIVE
    mock_client.get.assert_called_once_with("https://api.sfmta.example.com/v1/routes/R49/fares")
    assert mock_client_class.call_args.kwargs["headers"] == {"x-api-key": "k"}


async def test_endpoint_missing_fields(store: StaticStore):
    service = FareService(store, TTLCache(), SF_ENDPOINT)

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = mock_fare_client({})

        fare = await service.get_fare_info("R49")

    assert fare.regular == 3.25
    assert fare.currency == "USD"
    assert fare.provenance == Provenance.LIVE


async def test_endpoint_error_returns_default(store: StaticStore):
    service = FareService(store, TTLCache(), SF_ENDPOINT)

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.get = AsyncMock(side_effect=ConnectionError("offline"))
        mock_client_class.return_value = mock_client

        fare = await service.get_fare_info("R49")

    assert fare == default_fare()


async def test_unknown_route_without_single_agency(store: StaticStore):
    service = FareService(store, TTLCache(), SF_ENDPOINT, active_agencies=["SF-MUNI", "NYC-MTA"])

    assert await service.get_fare_info("UNKNOWN") == default_fare()


async def test_unknown_route_uses_sole_active_agency():
    service = FareService(None, TTLCache(), SF_ENDPOINT, active_agencies=["SF-MUNI"])

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = mock_fare_client({"adult_price": 2.50})

        fare = await service.get_fare_info("38")

    assert fare.regular == 2.50


async def test_fare_cached(store: StaticStore):
    service = FareService(store, TTLCache(), SF_ENDPOINT)

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = mock_fare_client({"adult_price": 2.75})
        mock_client_class.return_value = mock_client

        first = await service.get_fare_info("R49")
        second = await service.get_fare_info("R49")

    assert first is second
    mock_client.get.assert_called_once()


async def test_default_fare_not_cached(store: StaticStore):
    """A failed lookup should be retried instead of pinning the default fare."""
    cache = TTLCache()
    service = FareService(store, cache, SF_ENDPOINT)
    mock_response = MagicMock()
    mock_response.json.return_value = {"adult_price": 2.75}

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.get = AsyncMock(side_effect=[ConnectionError("offline"), mock_response])
        mock_client_class.return_value = mock_client

        first = await service.get_fare_info("R49")
        assert len(cache) == 0
        second = await service.get_fare_info("R49")

    assert first.provenance == Provenance.SYNTHESIZED
    assert second.regular == 2.75
    assert second.provenance == Provenance.LIVE
    assert mock_client.get.call_count == 2


async def test_fare_refetched_after_ttl(store: StaticStore, cache_clock):
    clock = cache_clock
    service = FareService(store, TTLCache(clock=clock), SF_ENDPOINT)

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = mock_fare_client({"adult_price": 2.75})
        mock_client_class.return_value = mock_client

        await service.get_fare_info("R49")
        clock.advance(TTL_SECONDS[TTLClass.ROUTES] - 1)
        await service.get_fare_info("R49")
        assert mock_client.get.call_count == 1

        clock.advance(1)
        await service.get_fare_info("R49")

    assert mock_client.get.call_count == 2
