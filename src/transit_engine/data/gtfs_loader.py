"""Per-agency loader that keeps the static store fresh."""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

from transit_engine.data.cache import TTL_SECONDS, TTLClass
from transit_engine.data.gtfs_parser import GTFSParser
from transit_engine.data.sources import Source
from transit_engine.data.store import StaticStore
from transit_engine.models.gtfs import GTFSBundle

logger = logging.getLogger(__name__)

# Static data older than this triggers a refresh
FRESHNESS_WINDOW = timedelta(seconds=TTL_SECONDS[TTLClass.STATIC_FRESHNESS])


def needs_refresh(freshness: datetime | None, now: datetime | None = None) -> bool:
    """True when an agency has never loaded or its data is at least 7 days old."""
    if freshness is None:
        return True
    now = now or datetime.now(UTC)
    if freshness.tzinfo is None:
        freshness = freshness.replace(tzinfo=UTC)
    return now - freshness >= FRESHNESS_WINDOW


class GTFSLoader:
    """Populates and refreshes the static store, one source per agency."""

    def __init__(self, store: StaticStore, timeout: float = 30.0):
        """Initialize the loader.

        Args:
            store: Open static store to write into.
            timeout: HTTP timeout for remote sources, in seconds.
        """
        self.store = store
        self.timeout = timeout

    async def ingest_path(self, agency_id: str, gtfs_path: Path) -> dict[str, int]:
        """Load a local GTFS directory or ZIP file for one agency.

        Returns:
            Dictionary with row counts per table.
        """
        # Parsing a large feed is CPU bound; keep it off the event loop
        bundle = await asyncio.to_thread(GTFSParser(agency_id).parse_path, gtfs_path)
        self._check_bundle(bundle)
        counts = await self.store.replace_agency_data(bundle)
        await self.store.set_freshness(agency_id, datetime.now(UTC))
        return counts

    async def load(self, source: Source, force: bool = False) -> dict[str, int] | None:
        """Fetch, parse and store one agency if its data is stale.

        Returns:
            Row counts, or None when the stored data was still fresh.

        Raises:
            Exception: Any fetch or parse failure; stored data is left untouched.
        """
        agency_id = source.agency_id
        if not force and not needs_refresh(await self.store.freshness(agency_id)):
            logger.debug(f"{agency_id}: static data is fresh, skipping load")
            return None

        logger.info(f"{agency_id}: loading static data from {source.kind} source")
        bundle = await source.fetch(self.timeout)
        self._check_bundle(bundle)
        counts = await self.store.replace_agency_data(bundle)
        await self.store.set_freshness(agency_id, datetime.now(UTC))
        return counts

    async def refresh(
        self, sources: list[Source], force: bool = False
    ) -> dict[str, dict[str, int] | None]:
        """Load every stale agency concurrently.

        A failing agency keeps its previous data and is logged; the others
        are unaffected.

        Returns:
            agency_id -> row counts (None if skipped as fresh). Failed agencies
            are absent.
        """
        results = await asyncio.gather(
            *(self.load(source, force=force) for source in sources),
            return_exceptions=True,
        )
        outcome: dict[str, dict[str, int] | None] = {}
        for source, result in zip(sources, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(
                    f"{source.agency_id}: static load failed, keeping existing data: {result}"
                )
                continue
            outcome[source.agency_id] = result
        return outcome

    def _check_bundle(self, bundle: GTFSBundle) -> None:
        if not bundle.stops:
            raise ValueError(f"{bundle.agency_id}: no stops loaded - check GTFS data")
