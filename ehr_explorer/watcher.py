"""
Polling watcher for the bundle drop directory.

A file is handed to the coordinator once its size and mtime have stayed the
same for ``stability_threshold`` seconds, so half-written files are not
ingested. Files present at startup are picked up too.
"""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from .ingest_service import IngestionCoordinator
from .notifier import ChangeNotifier

logger = logging.getLogger(__name__)

Signature = Tuple[int, int]

class DirectoryWatcher:
    def __init__(
        self,
        data_dir: Union[str, Path],
        coordinator: IngestionCoordinator,
        notifier: Optional[ChangeNotifier] = None,
        poll_interval: float = 1.0,
        stability_threshold: float = 2.0,
        file_suffix: str = ".json",
        clock: Callable[[], float] = time.monotonic
    ):
        self.data_dir = Path(data_dir)
        self.coordinator = coordinator
        self.notifier = notifier or coordinator.notifier
        self.poll_interval = poll_interval
        self.stability_threshold = stability_threshold
        self.file_suffix = file_suffix
        self._clock = clock
        self._seen: Dict[str, Signature] = {}
        self._stable_since: Dict[str, float] = {}
        self._submitted: Dict[str, Signature] = {}
        self._running = False

    def _snapshot(self) -> Dict[str, Signature]:
        if not self.data_dir.is_dir():
            return {}
        snapshot = {}
        with os.scandir(self.data_dir) as entries:
            for entry in entries:
                if not entry.is_file() or not entry.name.endswith(self.file_suffix):
                    continue
                stat = entry.stat()
                snapshot[entry.path] = (stat.st_mtime_ns, stat.st_size)
        return snapshot

    async def poll_once(self) -> List[str]:
        """Scan once; returns the paths handed to the coordinator"""
        snapshot = await asyncio.to_thread(self._snapshot)
        now = self._clock()
        submitted = []

        for path, signature in snapshot.items():
            if self._seen.get(path) != signature:
                self._seen[path] = signature
                self._stable_since[path] = now
                if self.stability_threshold > 0:
                    continue
            if self._submitted.get(path) == signature:
                continue
            if now - self._stable_since[path] < self.stability_threshold:
                continue

            if path in self._submitted:
                logger.info(f"File changed: {Path(path).name}")
            else:
                logger.info(f"New file detected: {Path(path).name}")
            self._submitted[path] = signature
            self.coordinator.submit(path)
            submitted.append(path)

        removed = [path for path in self._seen if path not in snapshot]
        for path in removed:
            logger.info(f"File removed: {Path(path).name}")
            self._seen.pop(path, None)
            self._stable_since.pop(path, None)
            self._submitted.pop(path, None)
        if removed:
            # Patient rows stay; listeners only refetch
            await self.notifier.notify()

        return submitted

    async def run(self):
        self._running = True
        logger.info(f"Watching directory: {self.data_dir}")
        while self._running:
            try:
                await self.poll_once()
            except OSError as e:
                logger.error(f"Watcher error: {e}")
            await asyncio.sleep(self.poll_interval)
        logger.info("Directory watcher stopped")

    def stop(self):
        self._running = False
