"""Fare lookup per route with agency endpoint, cache and default fare."""

import logging
from dataclasses import dataclass, field

from transit_engine.data.cache import TTLCache, TTLClass, make_key
from transit_engine.data.fare_client import FareClient
from transit_engine.data.store import StaticStore
from transit_engine.models.responses import FareInfo, FareResponse, Provenance

logger = logging.getLogger(__name__)

DEFAULT_REGULAR_FARE = 3.25
DEFAULT_REDUCED_FARE = 1.60
DEFAULT_CURRENCY = "USD"
DEFAULT_PAYMENT_METHODS = ["cash", "card", "mobile"]


def default_fare() -> FareInfo:
    return FareInfo(
        regular=DEFAULT_REGULAR_FARE,
        reduced=DEFAULT_REDUCED_FARE,
        currency=DEFAULT_CURRENCY,
        payment_methods=list(DEFAULT_PAYMENT_METHODS),
        provenance=Provenance.SYNTHESIZED,
    )


def fare_from_response(response: FareResponse) -> FareInfo:
    """Fill fields the endpoint left out with the default fare."""
    return FareInfo(
        regular=response.adult_price or DEFAULT_REGULAR_FARE,
        reduced=response.senior_price or DEFAULT_REDUCED_FARE,
        currency=response.currency or DEFAULT_CURRENCY,
        payment_methods=response.payment_methods or list(DEFAULT_PAYMENT_METHODS),
        provenance=Provenance.LIVE,
    )


@dataclass
class FareEndpoint:
    url: str
    api_key: str | None = None
    api_key_header: str = "x-api-key"


@dataclass
class FareService:
    """Resolves a route's owning agency and asks its fare endpoint."""

    store: StaticStore | None
    cache: TTLCache
    endpoints: dict[str, FareEndpoint]
    active_agencies: list[str] = field(default_factory=list)
    timeout: float = 30.0

    async def get_fare_info(self, route_id: str) -> FareInfo:
        """Fare for a route; the default fare when nothing better is known. Never raises."""
        key = make_key("fare", route_id=route_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        async with self.cache.lock(key):
            # Double-check cache after acquiring lock
            cached = self.cache.get(key)
            if cached is not None:
                return cached

            fare = await self._lookup(route_id)
            # The default fare is a placeholder; ask the endpoint again next time
            if fare.provenance != Provenance.SYNTHESIZED:
                self.cache.set(key, fare, TTLClass.ROUTES)
            return fare

    async def _lookup(self, route_id: str) -> FareInfo:
        try:
            agency_id = await self._owning_agency(route_id)
        except Exception as e:
            logger.warning(f"Could not resolve agency of route {route_id}: {e}")
            return default_fare()

        endpoint = self.endpoints.get(agency_id) if agency_id else None
        if endpoint is None:
            logger.debug(f"No fare endpoint for route {route_id}, using default fare")
            return default_fare()

        try:
            async with FareClient(
                endpoint.url, endpoint.api_key, endpoint.api_key_header, self.timeout
            ) as client:
                response = await client.fetch_route_fare(route_id)
        except Exception as e:
            logger.warning(f"Fare lookup failed for route {route_id} ({agency_id}): {e}")
            return default_fare()

        return fare_from_response(response)

    async def _owning_agency(self, route_id: str) -> str | None:
        if self.store is not None and self.store.is_open:
            agency_id = await self.store.route_agency(route_id)
            if agency_id is not None:
                return agency_id
        if len(self.active_agencies) == 1:
            return self.active_agencies[0]
        return None
