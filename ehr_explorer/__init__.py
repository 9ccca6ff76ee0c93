"""
EHR Explorer ingestion package

Reads patient bundle files, normalizes them and writes them into the local
SQLite store one transaction per file.
"""

from .bundle_parser import parse_bundle, reduce_reference, validate_upload
from .ingest_service import IngestionCoordinator, IngestState
from .local_db import LocalDatabase
from .retry import RetryPolicy, execute_with_retry
from .writer import TransactionalWriter

__all__ = [
    'parse_bundle',
    'reduce_reference',
    'validate_upload',
    'IngestionCoordinator',
    'IngestState',
    'LocalDatabase',
    'RetryPolicy',
    'execute_with_retry',
    'TransactionalWriter'
]
