import argparse
import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel

from transit_engine.app import mcp
from transit_engine.data.config import get_settings


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: str


@mcp.tool()
def health() -> HealthResponse:
    """Check if the transit engine server is running and healthy.

    Returns the server status, version, and current timestamp.
    """
    from transit_engine import __version__

    return HealthResponse(
        status="ok",
        version=__version__,
        timestamp=datetime.now(UTC).isoformat(),
    )


async def run_ingest(gtfs_path: Path, agency_id: str, db_path: Path) -> dict[str, int]:
    """Run GTFS ingestion for one agency."""
    from transit_engine.data.gtfs_loader import GTFSLoader
    from transit_engine.data.store import StaticStore
    from transit_engine.models.gtfs import Agency, SourceKind

    store = StaticStore(db_path)
    await store.open()
    try:
        await store.register_agency(Agency(agency_id=agency_id, source_kind=SourceKind.CUSTOM))
        loader = GTFSLoader(store)
        row_counts = await loader.ingest_path(agency_id, gtfs_path)
    finally:
        await store.close()

    print(f"\nIngestion complete for {agency_id}. Row counts:")
    for table, count in row_counts.items():
        print(f"  {table}: {count:,}")
    return row_counts


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="transit-engine",
        description="Transit Engine MCP Server",
    )
    subparsers = parser.add_subparsers(dest="command")

    # ingest command
    ingest_parser = subparsers.add_parser(
        "ingest",
        help="Ingest a local GTFS feed into the SQLite store",
    )
    ingest_parser.add_argument(
        "gtfs_path",
        type=Path,
        help="Path to GTFS directory or ZIP file",
    )
    ingest_parser.add_argument(
        "--agency",
        required=True,
        help="Agency id the feed is stored under (e.g. SF-MUNI)",
    )
    ingest_parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="SQLite database path (default: TRANSIT_DB_PATH or data/transit.db)",
    )
    ingest_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    if args.command == "ingest":
        # Configure logging
        log_level = logging.DEBUG if args.verbose else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        db_path = args.db or get_settings().db_path
        asyncio.run(run_ingest(args.gtfs_path, args.agency, db_path))
    else:
        # Default: run MCP server with every tool registered
        import transit_engine.tools.alerts_tools  # noqa: F401
        import transit_engine.tools.arrivals_tools  # noqa: F401
        import transit_engine.tools.stop_tools  # noqa: F401
        import transit_engine.tools.trip_tools  # noqa: F401

        mcp.run()


if __name__ == "__main__":
    main()
