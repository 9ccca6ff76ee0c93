import json
import os
from pathlib import Path
from typing import Any

import pytest

os.environ["PYTEST_RUNNING"] = "true"

from ehr_explorer.local_db import LocalDatabase
from ehr_explorer.retry import RetryPolicy

@pytest.fixture
def db(tmp_path) -> LocalDatabase:
    return LocalDatabase(str(tmp_path / "test_ehr.db"), busy_timeout_ms=0)

@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, delay_seconds=0)

@pytest.fixture
def write_bundle(tmp_path):
    """Write a bundle (dict, str or bytes) into a fresh data directory"""
    data_dir = tmp_path / "synthea"
    data_dir.mkdir()

    def _write(name: str, document: Any) -> Path:
        path = data_dir / name
        if isinstance(document, bytes):
            path.write_bytes(document)
        elif isinstance(document, str):
            path.write_text(document, encoding="utf-8")
        else:
            path.write_text(json.dumps(document), encoding="utf-8")
        return path

    _write.data_dir = data_dir
    return _write
