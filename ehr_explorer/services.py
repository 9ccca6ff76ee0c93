from pathlib import Path
from typing import Optional

from .config import Config, get_config
from .ingest_service import IngestionCoordinator
from .local_db import LocalDatabase
from .notifier import ChangeNotifier, DataChangeBroadcaster
from .retry import RetryPolicy
from .watcher import DirectoryWatcher
from .writer import TransactionalWriter

class IngestServices:
    """Wires the store, writer, coordinator, notifier and watcher together"""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.data_dir = Path(self.config.ingest.data_dir)
        self.db = LocalDatabase(self.config.database.path, self.config.database.busy_timeout_ms)
        self.broadcaster = DataChangeBroadcaster()
        self.notifier = ChangeNotifier.from_config(self.broadcaster, self.config.notify)
        self.writer = TransactionalWriter(self.db, RetryPolicy.from_config(self.config.retry))
        self.coordinator = IngestionCoordinator(
            self.writer,
            self.notifier,
            file_suffix=self.config.ingest.file_suffix
        )
        self.watcher = DirectoryWatcher(
            self.data_dir,
            self.coordinator,
            self.notifier,
            poll_interval=self.config.ingest.poll_interval,
            stability_threshold=self.config.ingest.stability_threshold,
            file_suffix=self.config.ingest.file_suffix
        )
