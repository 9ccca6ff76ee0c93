#!/usr/bin/env python3
"""
Tests for the local SQLite store
"""

import asyncio
import sqlite3

import pytest

from ehr_explorer.exceptions import DatabaseError
from ehr_explorer.local_db import LocalDatabase, SCHEMA

def _seed(db: LocalDatabase):
    conn = db.connect()
    try:
        conn.execute("INSERT INTO patients (id, name) VALUES ('p1', 'Jane Doe'), ('p2', 'John Smith')")
        conn.execute(
            "INSERT INTO conditions (patient_id, condition, onset_date) VALUES "
            "('p1', 'Hypertension', '2021-01-01'), ('p1', 'Asthma', '2010-01-15'), ('p2', 'Diabetes', '2018-07-22')"
        )
        conn.execute(
            "INSERT INTO medications (patient_id, medication, start_date) VALUES "
            "('p1', 'Lisinopril', '2021-01-05'), ('p1', 'Albuterol', '2010-01-20')"
        )
        conn.execute(
            "INSERT INTO encounters (patient_id, encounter_type, start_date) VALUES "
            "('p1', 'Annual Physical', '2023-05-10'), ('p1', 'Outpatient Visit', '2022-03-15')"
        )
    finally:
        conn.close()

class TestLocalDatabase:
    """Test schema, reads and administrative clear"""

    def test_tables_created(self, db):
        conn = db.connect()
        try:
            tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        finally:
            conn.close()
        assert set(SCHEMA) <= tables

    def test_init_is_repeatable(self, db):
        _seed(db)
        LocalDatabase(db.db_path, busy_timeout_ms=0)
        assert db.get_patient_count() == 2

    def test_connections_enforce_foreign_keys(self, db):
        conn = db.connect()
        try:
            assert db.foreign_keys_enabled(conn)
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("INSERT INTO conditions (patient_id, condition) VALUES ('ghost', 'Asthma')")
        finally:
            conn.close()

    def test_child_rows_require_patient_id(self, db):
        conn = db.connect()
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("INSERT INTO medications (patient_id, medication) VALUES (NULL, 'Albuterol')")
        finally:
            conn.close()

    def test_reads_are_sorted_by_date(self, db):
        _seed(db)
        assert [c["condition"] for c in db.get_conditions("p1")] == ["Asthma", "Hypertension"]
        assert [m["medication"] for m in db.get_medications("p1")] == ["Albuterol", "Lisinopril"]
        assert [e["encounter_type"] for e in db.get_encounters("p1")] == ["Outpatient Visit", "Annual Physical"]

    def test_patient_reads(self, db):
        _seed(db)
        assert db.get_patient("p2")["name"] == "John Smith"
        assert db.get_patient("missing") is None

    def test_table_counts(self, db):
        _seed(db)
        assert db.get_table_counts() == {"patients": 2, "conditions": 3, "medications": 2, "encounters": 2}

    def test_clear_all_restores_foreign_keys(self, db):
        _seed(db)

        deleted = db.clear_all()

        assert deleted == {"medications": 2, "conditions": 3, "encounters": 2, "patients": 2}
        assert db.get_table_counts() == dict.fromkeys(SCHEMA, 0)
        conn = db.connect()
        try:
            assert db.foreign_keys_enabled(conn)
        finally:
            conn.close()

    def test_foreign_keys_disabled_restores_on_error(self, db):
        conn = db.connect()
        try:
            with pytest.raises(RuntimeError):
                with db.foreign_keys_disabled(conn):
                    assert not db.foreign_keys_enabled(conn)
                    raise RuntimeError("clear failed")
            assert db.foreign_keys_enabled(conn)
        finally:
            conn.close()

    def test_clear_all_fails_while_another_writer_holds_lock(self, db):
        _seed(db)
        other = db.connect()
        try:
            other.execute("BEGIN IMMEDIATE")
            with pytest.raises(DatabaseError):
                db.clear_all()
        finally:
            other.execute("ROLLBACK")
            other.close()
        assert db.get_patient_count() == 2

    def test_session_runs_statements_off_loop(self, db):
        async def scenario():
            async with db.session() as conn:
                await conn.execute("INSERT INTO patients (id, name) VALUES (?, ?)", ("p9", "Async Patient"))
                assert not conn.in_transaction

        asyncio.run(scenario())
        assert db.get_patient("p9")["name"] == "Async Patient"
