#!/usr/bin/env python3
"""
Command line entry point for the ingestion pipeline.

    ehr-explorer init-db
    ehr-explorer ingest data/synthea/*.json
    ehr-explorer reset
    ehr-explorer watch
    ehr-explorer sample-data
    ehr-explorer serve
"""

import argparse
import asyncio
import copy
import logging
import sys
from typing import List, Optional

from .config import get_config
from .logging_config import setup_logging
from .sample_data import write_sample_bundles
from .services import IngestServices

logger = logging.getLogger(__name__)

async def _ingest(services: IngestServices, paths: List[str]) -> int:
    coordinator = services.coordinator
    for path in paths:
        coordinator.submit(path)
    await coordinator.wait_idle()
    await coordinator.drain_notifications()
    stats = coordinator.status()["stats"]
    logger.info(f"Ingestion finished: {stats}")
    return 0 if stats["failed"] == 0 else 1

async def _reset(services: IngestServices, data_dir: str) -> int:
    result = await services.coordinator.reset_and_reprocess(data_dir)
    await services.coordinator.wait_idle()
    await services.coordinator.drain_notifications()
    logger.info(f"Database reset and data reprocessing completed: {result}")
    return 0

async def _watch(services: IngestServices) -> int:
    services.data_dir.mkdir(parents=True, exist_ok=True)
    try:
        await services.watcher.run()
    finally:
        services.watcher.stop()
        await services.coordinator.wait_idle()
        await services.coordinator.drain_notifications()
    return 0

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ehr-explorer", description="Patient bundle ingestion")
    parser.add_argument("--db", help="SQLite database path (default: EHR_DB_PATH)")
    parser.add_argument("--log-level", help="Logging level (default: LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema")

    ingest = sub.add_parser("ingest", help="Ingest bundle files once")
    ingest.add_argument("paths", nargs="+", help="Bundle JSON files")

    reset = sub.add_parser("reset", help="Clear all patient data and re-ingest the data directory")
    reset.add_argument("--data-dir", help="Directory of bundle files (default: SYNTHEA_DATA_DIR)")

    watch = sub.add_parser("watch", help="Watch the data directory and ingest new or changed files")
    watch.add_argument("--data-dir", help="Directory of bundle files (default: SYNTHEA_DATA_DIR)")

    sample = sub.add_parser("sample-data", help="Write demo patient bundles into the data directory")
    sample.add_argument("--data-dir", help="Directory of bundle files (default: SYNTHEA_DATA_DIR)")

    serve = sub.add_parser("serve", help="Run the HTTP service")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    return parser

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = copy.deepcopy(get_config())
    if args.db:
        config.database.path = args.db
    if getattr(args, "data_dir", None):
        config.ingest.data_dir = args.data_dir
    setup_logging(log_level=args.log_level)

    if args.command == "serve":
        import uvicorn
        from .main import create_app
        uvicorn.run(create_app(config), host=args.host or config.app.host, port=args.port or config.app.port)
        return 0

    if args.command == "sample-data":
        written = write_sample_bundles(config.ingest.data_dir)
        logger.info(f"Wrote {len(written)} sample bundles to {config.ingest.data_dir}")
        return 0

    services = IngestServices(config)
    if args.command == "init-db":
        logger.info("Database schema created successfully")
        return 0
    if args.command == "ingest":
        return asyncio.run(_ingest(services, args.paths))
    if args.command == "reset":
        return asyncio.run(_reset(services, config.ingest.data_dir))
    if args.command == "watch":
        try:
            return asyncio.run(_watch(services))
        except KeyboardInterrupt:
            logger.info("Watcher interrupted")
            return 0
    return 2

if __name__ == "__main__":
    sys.exit(main())
