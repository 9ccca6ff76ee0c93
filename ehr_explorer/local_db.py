import asyncio
import sqlite3
import logging
from contextlib import asynccontextmanager, closing, contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .config import get_config
from .exceptions import DatabaseError

logger = logging.getLogger(__name__)

SCHEMA = {
    'patients': """
        CREATE TABLE IF NOT EXISTS patients (
            id TEXT PRIMARY KEY NOT NULL,
            name TEXT NOT NULL,
            gender TEXT,
            birth_date TEXT,
            address TEXT,
            phone TEXT,
            marital_status TEXT
        )
    """,
    'conditions': """
        CREATE TABLE IF NOT EXISTS conditions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            patient_id TEXT NOT NULL,
            condition TEXT NOT NULL,
            condition_code TEXT,
            onset_date TEXT,
            abatement_date TEXT,
            FOREIGN KEY (patient_id) REFERENCES patients (id)
        )
    """,
    'medications': """
        CREATE TABLE IF NOT EXISTS medications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            patient_id TEXT NOT NULL,
            medication TEXT NOT NULL,
            medication_code TEXT,
            start_date TEXT,
            end_date TEXT,
            status TEXT,
            dosage TEXT,
            FOREIGN KEY (patient_id) REFERENCES patients (id)
        )
    """,
    'encounters': """
        CREATE TABLE IF NOT EXISTS encounters (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            patient_id TEXT NOT NULL,
            encounter_type TEXT,
            start_date TEXT,
            end_date TEXT,
            FOREIGN KEY (patient_id) REFERENCES patients (id)
        )
    """
}

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_condition_patient ON conditions(patient_id)",
    "CREATE INDEX IF NOT EXISTS idx_medication_patient ON medications(patient_id)",
    "CREATE INDEX IF NOT EXISTS idx_encounter_patient ON encounters(patient_id)"
]

# Children first so a clear never trips a foreign key
CLEAR_ORDER = ['medications', 'conditions', 'encounters', 'patients']

class AsyncConnection:
    """Runs statements of one sqlite3 connection on a worker thread.

    The connection is in autocommit mode, so BEGIN/COMMIT/ROLLBACK are issued
    explicitly by the caller.
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    @property
    def in_transaction(self) -> bool:
        return self._conn.in_transaction

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        return await asyncio.to_thread(self._conn.execute, sql, params)

    async def close(self):
        await asyncio.to_thread(self._conn.close)

class LocalDatabase:
    def __init__(self, db_path: Optional[str] = None, busy_timeout_ms: Optional[int] = None):
        config = get_config().database
        self.db_path = db_path or config.path
        self.busy_timeout_ms = config.busy_timeout_ms if busy_timeout_ms is None else busy_timeout_ms
        self.init_database()

    def connect(self) -> sqlite3.Connection:
        """Open a connection with foreign keys enforced and a busy timeout"""
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_ms / 1000,
            isolation_level=None,
            check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        return conn

    def init_database(self):
        """Create tables and indexes if they do not exist yet"""
        with closing(self.connect()) as conn:
            for table_name, create_sql in SCHEMA.items():
                try:
                    conn.execute(create_sql)
                except sqlite3.Error as e:
                    logger.error(f"Error creating table {table_name}: {e}")
                    raise DatabaseError(f"Failed to create table {table_name}: {e}")
            for index_sql in INDEXES:
                try:
                    conn.execute(index_sql)
                except sqlite3.Error as e:
                    logger.warning(f"Error creating index: {e}")
        logger.info(f"Database ready at {self.db_path}")

    async def open_async(self) -> AsyncConnection:
        conn = await asyncio.to_thread(self.connect)
        return AsyncConnection(conn)

    @asynccontextmanager
    async def session(self):
        """Async connection that is closed on exit"""
        conn = await self.open_async()
        try:
            yield conn
        finally:
            await conn.close()

    @contextmanager
    def foreign_keys_disabled(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        """Turn foreign key checks off for bulk clears and always turn them back on.

        SQLite ignores this pragma inside a transaction, so it must wrap the
        BEGIN/COMMIT rather than sit inside it.
        """
        conn.execute("PRAGMA foreign_keys = OFF")
        try:
            yield conn
        finally:
            conn.execute("PRAGMA foreign_keys = ON")
            logger.debug("Foreign key enforcement restored")

    def clear_all(self) -> Dict[str, int]:
        """Delete every patient and child row (administrative reset)"""
        deleted: Dict[str, int] = {}
        with closing(self.connect()) as conn:
            with self.foreign_keys_disabled(conn):
                conn.execute("BEGIN")
                try:
                    for table in CLEAR_ORDER:
                        deleted[table] = conn.execute(f"DELETE FROM {table}").rowcount
                        logger.info(f"Cleared {table} table")
                    conn.execute("COMMIT")
                except sqlite3.Error as e:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    logger.error(f"Error clearing database: {e}")
                    raise DatabaseError(f"Failed to clear database: {e}")
        logger.info(f"Database cleared successfully: {deleted}")
        return deleted

    def foreign_keys_enabled(self, conn: sqlite3.Connection) -> bool:
        return bool(conn.execute("PRAGMA foreign_keys").fetchone()[0])

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with closing(self.connect()) as conn:
            cursor = conn.execute(sql, params)
            return [dict(row) for row in cursor.fetchall()]

    def _count(self, sql: str, params: Sequence[Any] = ()) -> int:
        with closing(self.connect()) as conn:
            return conn.execute(sql, params).fetchone()[0]

    def get_patient(self, patient_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query("SELECT * FROM patients WHERE id = ?", (patient_id,))
        return rows[0] if rows else None

    def get_conditions(self, patient_id: str) -> List[Dict[str, Any]]:
        return self._query("SELECT * FROM conditions WHERE patient_id = ? ORDER BY onset_date", (patient_id,))

    def get_medications(self, patient_id: str) -> List[Dict[str, Any]]:
        return self._query("SELECT * FROM medications WHERE patient_id = ? ORDER BY start_date", (patient_id,))

    def get_encounters(self, patient_id: str) -> List[Dict[str, Any]]:
        return self._query("SELECT * FROM encounters WHERE patient_id = ? ORDER BY start_date", (patient_id,))

    def get_patient_count(self) -> int:
        """Get total number of patients"""
        return self._count("SELECT COUNT(*) FROM patients")

    def get_table_counts(self) -> Dict[str, int]:
        return {table: self._count(f"SELECT COUNT(*) FROM {table}") for table in SCHEMA}
