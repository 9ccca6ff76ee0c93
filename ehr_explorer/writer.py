"""
Transactional Writer

Persists one parsed bundle in a single transaction:

    BEGIN -> patient upsert -> delete children of that patient -> insert children -> COMMIT

with ROLLBACK on any fatal failure. Every statement goes through the
retrying executor. A child row that fails to insert is logged and skipped;
the rest of the bundle still commits.
"""

import asyncio
import sqlite3
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .exceptions import EHRBaseException, RowInsertError, StoreBusyError, TransactionError
from .local_db import AsyncConnection, LocalDatabase
from .logging_config import PerformanceLogger
from .models import ConditionRecord, EncounterRecord, MedicationRecord, PatientRecord, RecordSet
from .retry import RetryPolicy, Sleep, execute_with_retry

logger = logging.getLogger(__name__)

UPSERT_PATIENT_SQL = """
    INSERT INTO patients (id, name, gender, birth_date, address, phone, marital_status)
    VALUES (?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
        name = excluded.name,
        gender = excluded.gender,
        birth_date = excluded.birth_date,
        address = excluded.address,
        phone = excluded.phone,
        marital_status = excluded.marital_status
"""

INSERT_CONDITION_SQL = """
    INSERT INTO conditions (patient_id, condition, condition_code, onset_date, abatement_date)
    VALUES (?, ?, ?, ?, ?)
"""

INSERT_MEDICATION_SQL = """
    INSERT INTO medications (patient_id, medication, medication_code, start_date, end_date, status, dosage)
    VALUES (?, ?, ?, ?, ?, ?, ?)
"""

INSERT_ENCOUNTER_SQL = """
    INSERT INTO encounters (patient_id, encounter_type, start_date, end_date)
    VALUES (?, ?, ?, ?)
"""

CHILD_TABLES = ('conditions', 'medications', 'encounters')

def _patient_params(patient: PatientRecord) -> Tuple[Any, ...]:
    return (patient.id, patient.name, patient.gender, patient.birth_date,
            patient.address, patient.phone, patient.marital_status)

def _condition_params(row: ConditionRecord) -> Tuple[Any, ...]:
    return (row.patient_id, row.condition, row.condition_code, row.onset_date, row.abatement_date)

def _medication_params(row: MedicationRecord) -> Tuple[Any, ...]:
    return (row.patient_id, row.medication, row.medication_code, row.start_date,
            row.end_date, row.status, row.dosage)

def _encounter_params(row: EncounterRecord) -> Tuple[Any, ...]:
    return (row.patient_id, row.encounter_type, row.start_date, row.end_date)

@dataclass
class PersistResult:
    patient_id: Optional[str]
    inserted: Dict[str, int] = field(default_factory=lambda: dict.fromkeys(CHILD_TABLES, 0))
    failed: Dict[str, int] = field(default_factory=lambda: dict.fromkeys(CHILD_TABLES, 0))
    row_errors: List[RowInsertError] = field(default_factory=list)

    @property
    def total_inserted(self) -> int:
        return sum(self.inserted.values())

    @property
    def total_failed(self) -> int:
        return sum(self.failed.values())

class TransactionalWriter:
    def __init__(self, db: LocalDatabase, policy: Optional[RetryPolicy] = None, sleep: Sleep = asyncio.sleep):
        self.db = db
        self.policy = policy or RetryPolicy.from_config()
        self._sleep = sleep
        self.perf = PerformanceLogger()

    async def persist(self, record_set: RecordSet) -> PersistResult:
        """Write a record set, or leave the store as it was and raise."""
        async with self.db.session() as conn:
            return await self.persist_with(conn, record_set)

    async def persist_with(self, conn: AsyncConnection, record_set: RecordSet) -> PersistResult:
        patient_id = record_set.patient.id if record_set.patient else None
        result = PersistResult(patient_id=patient_id)
        started = time.perf_counter()

        try:
            await self._run(conn, "BEGIN IMMEDIATE", description="BEGIN")
        except sqlite3.Error as e:
            logger.error(f"Error beginning transaction: {e}")
            raise TransactionError(f"Failed to begin transaction: {e}", error_code="BEGIN_FAILED") from e

        try:
            if record_set.patient is not None:
                await self._upsert_patient(conn, record_set.patient)
                await self._delete_children(conn, record_set.patient.id)

            await self._insert_rows(conn, 'conditions', INSERT_CONDITION_SQL,
                                    [_condition_params(r) for r in record_set.conditions], result)
            await self._insert_rows(conn, 'medications', INSERT_MEDICATION_SQL,
                                    [_medication_params(r) for r in record_set.medications], result)
            await self._insert_rows(conn, 'encounters', INSERT_ENCOUNTER_SQL,
                                    [_encounter_params(r) for r in record_set.encounters], result)

            try:
                await self._run(conn, "COMMIT", description="COMMIT")
            except sqlite3.Error as e:
                raise TransactionError(f"Failed to commit transaction: {e}", error_code="COMMIT_FAILED") from e
        except Exception as e:
            logger.error(f"Error in transaction for patient {patient_id}: {e}")
            await self._rollback(conn)
            if isinstance(e, EHRBaseException):
                raise
            raise TransactionError(f"Transaction failed: {e}", details={"patient_id": patient_id}) from e

        self.perf.log_transaction(patient_id, time.perf_counter() - started,
                                  result.total_inserted, result.total_failed)
        return result

    async def _run(self, conn: AsyncConnection, sql: str, params: Sequence[Any] = (), description: str = "statement"):
        return await execute_with_retry(
            lambda: conn.execute(sql, params),
            self.policy,
            description=description,
            sleep=self._sleep
        )

    async def _upsert_patient(self, conn: AsyncConnection, patient: PatientRecord):
        try:
            await self._run(conn, UPSERT_PATIENT_SQL, _patient_params(patient), description="patient upsert")
        except sqlite3.Error as e:
            logger.error(f"Error inserting patient {patient.id}: {e}")
            raise TransactionError(f"Failed to upsert patient {patient.id}: {e}", error_code="PATIENT_UPSERT_FAILED",
                                   details={"patient_id": patient.id}) from e

    async def _delete_children(self, conn: AsyncConnection, patient_id: str):
        for table in CHILD_TABLES:
            try:
                cursor = await self._run(conn, f"DELETE FROM {table} WHERE patient_id = ?", (patient_id,),
                                         description=f"delete {table}")
            except sqlite3.Error as e:
                logger.error(f"Error deleting existing {table} for patient {patient_id}: {e}")
                raise TransactionError(f"Failed to delete existing {table}: {e}", error_code="DELETE_FAILED",
                                       details={"patient_id": patient_id, "table": table}) from e
            logger.info(f"Deleted {cursor.rowcount} existing {table} for patient {patient_id}")

    async def _insert_rows(self, conn: AsyncConnection, table: str, sql: str,
                           rows: List[Tuple[Any, ...]], result: PersistResult):
        for index, params in enumerate(rows):
            try:
                await self._run(conn, sql, params, description=f"insert into {table}")
            except StoreBusyError:
                raise
            except sqlite3.Error as e:
                error = RowInsertError(
                    f"Error inserting into {table}: {e}",
                    error_code="ROW_INSERT_FAILED",
                    details={"table": table, "row": index, "patient_id": params[0]}
                )
                logger.error(f"{error.message} (row {index}, patient {params[0]})")
                result.failed[table] += 1
                result.row_errors.append(error)
                continue
            result.inserted[table] += 1

    async def _rollback(self, conn: AsyncConnection):
        if not conn.in_transaction:
            return
        try:
            await self._run(conn, "ROLLBACK", description="ROLLBACK")
            logger.info("Transaction rolled back")
        except Exception as rollback_error:
            # The original failure is what the caller needs to see
            logger.error(f"Error rolling back transaction: {rollback_error}")
