"""Static data sources, one per agency.

Each source kind knows how to fetch its payload and normalize it into a
GTFSBundle; the loader treats them uniformly.
"""

import asyncio
import logging
from typing import Annotated, Literal

from pydantic import BaseModel, Field

from transit_engine.data.aggregator_client import AggregatorClient
from transit_engine.data.config import DEFAULT_AGGREGATOR_ID
from transit_engine.data.gtfs_parser import GTFSParser
from transit_engine.data.static_client import StaticFeedClient
from transit_engine.errors import DataNotFound
from transit_engine.models.gtfs import GTFSBundle
from transit_engine.models.responses import Location

logger = logging.getLogger(__name__)


class VendorSource(BaseModel):
    """Agency-published GTFS ZIP package."""

    kind: Literal["vendor"] = "vendor"
    agency_id: str
    url: str
    api_key: str | None = None
    api_key_header: str = "x-api-key"

    async def fetch(self, timeout: float) -> GTFSBundle:
        async with StaticFeedClient(timeout, self.api_key, self.api_key_header) as client:
            content = await client.fetch_bytes(self.url)
        return await asyncio.to_thread(GTFSParser(self.agency_id).parse_zip_bytes, content)


class AggregatorSource(BaseModel):
    """Stops around a location from the aggregator API."""

    kind: Literal["aggregator"] = "aggregator"
    agency_id: str = DEFAULT_AGGREGATOR_ID
    base_url: str
    api_key: str | None = None
    location: Location | None = None
    radius_meters: float = 2000
    limit: int = 100

    async def fetch(self, timeout: float) -> GTFSBundle:
        if self.location is None:
            raise DataNotFound(provider=self.agency_id, query="no location configured")
        async with AggregatorClient(self.base_url, self.api_key, timeout) as client:
            stops = await client.fetch_stops_near(self.location, self.radius_meters, self.limit)
        if not stops:
            raise DataNotFound(provider=self.agency_id, query=f"stops near {self.location}")
        for stop in stops:
            stop.distance_meters = None
        return GTFSBundle(agency_id=self.agency_id, stops=stops)


class CustomSource(BaseModel):
    """User-supplied endpoint serving either a GTFS ZIP or a JSON document."""

    kind: Literal["custom"] = "custom"
    agency_id: str
    url: str
    api_key: str | None = None

    async def fetch(self, timeout: float) -> GTFSBundle:
        async with StaticFeedClient(timeout, self.api_key) as client:
            response = await client.fetch(self.url)
        parser = GTFSParser(self.agency_id)
        content_type = response.headers.get("content-type", "")
        if "json" in content_type or self.url.endswith(".json"):
            return await asyncio.to_thread(parser.parse_document, response.json())
        return await asyncio.to_thread(parser.parse_zip_bytes, response.content)


Source = Annotated[VendorSource | AggregatorSource | CustomSource, Field(discriminator="kind")]
