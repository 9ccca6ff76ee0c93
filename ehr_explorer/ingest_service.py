import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Set, Union

from .bundle_parser import ParseFunc, parse_bundle
from .exceptions import EHRBaseException
from .logging_config import PerformanceLogger
from .notifier import ChangeNotifier
from .writer import PersistResult, TransactionalWriter

logger = logging.getLogger(__name__)

class IngestState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"

@dataclass
class JobResult:
    path: str
    succeeded: bool
    duration: float
    persist: Optional[PersistResult] = None
    error: Optional[str] = None

class IngestionCoordinator:
    """Runs bundle ingestion jobs one at a time, in submission order.

    ``submit`` must be called from inside the running event loop. Paths that
    are already waiting in the backlog are not queued twice; a path that is
    currently being processed can be queued again, so an edit made during
    ingestion is picked up afterwards.

    Every store write (a job or an administrative clear) runs under
    ``_store_lock``, and change notifications are sent from background tasks
    so a slow listener never holds up the backlog.
    """

    def __init__(
        self,
        writer: TransactionalWriter,
        notifier: Optional[ChangeNotifier] = None,
        parser: ParseFunc = parse_bundle,
        file_suffix: Optional[str] = ".json",
        history_size: int = 50
    ):
        self.writer = writer
        self.notifier = notifier or ChangeNotifier()
        self.parser = parser
        self.file_suffix = file_suffix
        self.state = IngestState.IDLE
        self.current: Optional[str] = None
        self._queue: Deque[str] = deque()
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: Optional[asyncio.Task] = None
        self._store_lock = asyncio.Lock()
        self._notify_tasks: Set[asyncio.Task] = set()
        self.resetting = False
        self.history: Deque[JobResult] = deque(maxlen=history_size)
        self.stats = {'processed': 0, 'succeeded': 0, 'failed': 0}
        self.perf = PerformanceLogger()

    @property
    def backlog(self) -> List[str]:
        return list(self._queue)

    def submit(self, path: Union[str, Path]) -> bool:
        """Queue a bundle file; returns False when it was not queued"""
        key = str(path)
        if self.file_suffix and not key.endswith(self.file_suffix):
            logger.debug(f"Ignoring non-bundle file: {key}")
            return False
        if key in self._queue:
            logger.info(f"Already queued: {Path(key).name}")
            return False

        self._queue.append(key)
        logger.info(f"Queuing file: {Path(key).name}")
        if self.state is IngestState.IDLE:
            self._start()
        return True

    def submit_directory(self, data_dir: Union[str, Path]) -> int:
        """Queue every bundle file already present in a directory"""
        directory = Path(data_dir)
        if not directory.is_dir():
            logger.warning(f"Data directory does not exist: {directory}")
            return 0
        pattern = f"*{self.file_suffix}" if self.file_suffix else "*"
        files = sorted(p for p in directory.glob(pattern) if p.is_file())
        logger.info(f"Found {len(files)} patient files to process in {directory}")
        return sum(1 for path in files if self.submit(path))

    async def wait_idle(self):
        """Wait until the backlog is drained"""
        await self._idle.wait()

    async def drain_notifications(self):
        """Wait for change notifications that are still being delivered"""
        while self._notify_tasks:
            await asyncio.gather(*list(self._notify_tasks), return_exceptions=True)

    def _notify_later(self):
        task = asyncio.get_running_loop().create_task(self.notifier.notify())
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_done)

    def _notify_done(self, task: asyncio.Task):
        self._notify_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Failed to notify app of data change: {error}")

    def _start(self):
        self.state = IngestState.PROCESSING
        self._idle.clear()
        self._task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self):
        try:
            while self._queue:
                path = self._queue.popleft()
                self.current = path
                logger.info(f"Processing file from queue: {Path(path).name}")
                async with self._store_lock:
                    await self._process(path)
        finally:
            self.current = None
            self.state = IngestState.IDLE
            self._idle.set()

    async def _process(self, path: str) -> JobResult:
        started = time.perf_counter()
        try:
            raw = await asyncio.to_thread(Path(path).read_bytes)
            record_set = self.parser(raw)
            if record_set.is_empty():
                logger.warning(f"No recognized entries in {Path(path).name}")
            persist_result = await self.writer.persist(record_set)
        except EHRBaseException as e:
            result = self._record_failure(path, started, f"{type(e).__name__}: {e.message}")
        except OSError as e:
            result = self._record_failure(path, started, f"Error reading file: {e}")
        except Exception as e:
            # One bad file must never stop the backlog
            result = self._record_failure(path, started, f"Unexpected error: {e}")
        else:
            result = JobResult(path=path, succeeded=True, duration=time.perf_counter() - started,
                               persist=persist_result)
            self.stats['processed'] += 1
            self.stats['succeeded'] += 1
            self.history.append(result)
            logger.info(f"Successfully processed {Path(path).name}")
            self.perf.log_ingest_job(path, result.duration, persist_result.total_inserted)
            self._notify_later()
        return result

    def _record_failure(self, path: str, started: float, error: str) -> JobResult:
        result = JobResult(path=path, succeeded=False, duration=time.perf_counter() - started, error=error)
        self.stats['processed'] += 1
        self.stats['failed'] += 1
        self.history.append(result)
        logger.error(f"Failed to process {Path(path).name}: {error}")
        self.perf.log_ingest_job(path, result.duration, succeeded=False)
        return result

    async def reset_and_reprocess(self, data_dir: Union[str, Path]) -> Dict[str, Any]:
        """Clear the store, then queue every bundle in ``data_dir`` again.

        The clear takes the store lock, so it waits for the job in flight and
        concurrent resets run one after another.
        """
        async with self._store_lock:
            self.resetting = True
            logger.info("Resetting database and reprocessing all patient data...")
            try:
                deleted = await asyncio.to_thread(self.writer.db.clear_all)
            finally:
                self.resetting = False

        queued = self.submit_directory(data_dir)
        if queued == 0:
            self._notify_later()
        return {"deleted": deleted, "queued": queued}

    def status(self) -> Dict[str, Any]:
        last = self.history[-1] if self.history else None
        return {
            "state": self.state.value,
            "resetting": self.resetting,
            "current": self.current,
            "backlog": self.backlog,
            "stats": dict(self.stats),
            "last_job": {
                "path": last.path,
                "succeeded": last.succeeded,
                "error": last.error,
                "duration": round(last.duration, 3)
            } if last else None
        }
