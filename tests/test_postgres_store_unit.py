"""Postgres store unit tests against a scripted fake connection pool."""

import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors

from churchregistry.logging import get_logger
from churchregistry.storage.errors import ConstraintViolation, InvalidValue, StorageFault
from churchregistry.storage.models import FirstCommunion, Marriage, StageKind
from churchregistry.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row=None, rowcount=0, rows=None):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeConnection:
    """Answers each statement with the first handler whose key appears in the SQL."""

    def __init__(self, handlers):
        self.handlers = handlers
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @contextmanager
    def transaction(self):
        yield

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        for key, handler in self.handlers:
            if key in sql:
                result = handler(params) if callable(handler) else handler
                if isinstance(result, Exception):
                    raise result
                return result
        return FakeCursor()


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(handlers):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.logger = get_logger("test")
    conn = FakeConnection(handlers)
    store.pool = FakePool(conn)
    return store, conn


def _marriage(confirmation_id):
    return Marriage(
        id=str(uuid.uuid4()),
        baptism_id=str(uuid.uuid4()),
        communion_id=str(uuid.uuid4()),
        confirmation_id=confirmation_id,
        partners_name="Tobi",
        marriage_date=date(2026, 1, 1),
        officiating_priest="Fr. Ade",
        parish="St. Paul",
    )


class TestRotation:
    def test_rotation_deletes_then_inserts(self):
        now = datetime.now(timezone.utc)
        row = {
            "value": "old",
            "user_id": uuid.uuid4(),
            "issued_at": now - timedelta(minutes=1),
            "expires_at": now + timedelta(minutes=5),
        }
        store, conn = _store([("DELETE FROM refresh_token", FakeCursor(row=row))])

        rotation = store.rotate_refresh_token("old", 60, now=now)

        assert rotation.consumed.value == "old"
        assert rotation.issued.user_id == str(row["user_id"])
        assert rotation.issued.expires_at == now + timedelta(minutes=60)
        delete_sql, delete_params = conn.statements[0]
        assert "expires_at >" in delete_sql
        assert delete_params == ("old", now)
        assert conn.statements[1][0].startswith("INSERT INTO refresh_token")

    def test_rotation_of_consumed_value_returns_none(self):
        store, conn = _store([("DELETE FROM refresh_token", FakeCursor(row=None))])

        assert store.rotate_refresh_token("gone", 60) is None
        assert len(conn.statements) == 1

    def test_purge_reports_rowcount(self):
        store, _ = _store([("DELETE FROM refresh_token WHERE expires_at", FakeCursor(rowcount=3))])
        assert store.delete_expired_refresh_tokens(datetime.now(timezone.utc)) == 3


class TestStageInsert:
    def test_exclusive_sibling_blocks_insert(self):
        confirmation_id = str(uuid.uuid4())
        store, conn = _store(
            [
                ("FOR UPDATE", FakeCursor(row={"id": confirmation_id})),
                ("FROM holy_order", FakeCursor(row={"id": str(uuid.uuid4())})),
            ]
        )

        with pytest.raises(ConstraintViolation) as excinfo:
            store.insert_stage_record(
                _marriage(confirmation_id), exclusive_with=(StageKind.HOLY_ORDER,)
            )

        assert excinfo.value.detail["rule"] == "mutually_exclusive"
        assert not any(sql.startswith("INSERT") for sql, _ in conn.statements)

    def test_predecessor_locked_before_sibling_check(self):
        confirmation_id = str(uuid.uuid4())
        store, conn = _store(
            [
                ("FOR UPDATE", FakeCursor(row={"id": confirmation_id})),
                ("FROM holy_order", FakeCursor(row=None)),
            ]
        )

        store.insert_stage_record(
            _marriage(confirmation_id), exclusive_with=(StageKind.HOLY_ORDER,)
        )

        sql = [statement for statement, _ in conn.statements]
        lock_at = next(i for i, s in enumerate(sql) if "FOR UPDATE" in s)
        sibling_at = next(i for i, s in enumerate(sql) if "FROM holy_order" in s)
        insert_at = next(i for i, s in enumerate(sql) if s.startswith("INSERT INTO marriage"))
        assert sql[lock_at].startswith("SELECT id FROM confirmation WHERE id = %s")
        assert conn.statements[lock_at][1] == (confirmation_id,)
        assert lock_at < sibling_at < insert_at

    def test_locked_predecessor_missing(self):
        store, _ = _store([("FOR UPDATE", FakeCursor(row=None))])

        with pytest.raises(ConstraintViolation) as excinfo:
            store.insert_stage_record(
                _marriage(str(uuid.uuid4())), exclusive_with=(StageKind.HOLY_ORDER,)
            )
        assert excinfo.value.detail["rule"] == "missing_predecessor"

    def test_unique_violation_maps_to_duplicate(self):
        store, _ = _store([("INSERT INTO first_holy_communion", errors.UniqueViolation("dup"))])
        communion = FirstCommunion(
            id=str(uuid.uuid4()),
            baptism_id=str(uuid.uuid4()),
            communion_date=date(2008, 5, 1),
            officiating_priest="Fr. Ade",
            parish="St. Paul",
        )

        with pytest.raises(ConstraintViolation) as excinfo:
            store.insert_stage_record(communion)
        assert excinfo.value.detail["rule"] == "duplicate"

    def test_foreign_key_violation_maps_to_missing_predecessor(self):
        store, _ = _store(
            [("INSERT INTO first_holy_communion", errors.ForeignKeyViolation("fk"))]
        )
        communion = FirstCommunion(
            id=str(uuid.uuid4()),
            baptism_id=str(uuid.uuid4()),
            communion_date=date(2008, 5, 1),
            officiating_priest="Fr. Ade",
            parish="St. Paul",
        )

        with pytest.raises(ConstraintViolation) as excinfo:
            store.insert_stage_record(communion)
        assert excinfo.value.detail["rule"] == "missing_predecessor"


class TestReads:
    def test_non_uuid_id_skips_database(self):
        store: PostgresStore = PostgresStore.__new__(PostgresStore)
        store.pool = DummyPool()

        assert store.get_stage_record(StageKind.BAPTISM, "not-a-uuid") is None

    def test_row_is_rebuilt_into_record(self):
        record_id = uuid.uuid4()
        baptism_id = uuid.uuid4()
        row = {
            "id": record_id,
            "baptism_id": baptism_id,
            "communion_date": date(2008, 5, 1),
            "officiating_priest": "Fr. Ade",
            "parish": "St. Paul",
            "created_by": "clerk",
            "created_at": datetime.now(timezone.utc),
        }
        store, _ = _store([("FROM first_holy_communion", FakeCursor(row=row))])

        record = store.get_stage_record(StageKind.COMMUNION, str(record_id))

        assert record.id == str(record_id)
        assert record.baptism_id == str(baptism_id)
        assert record.communion_date == date(2008, 5, 1)


class TestFailures:
    def test_operational_error_becomes_storage_fault(self):
        store, _ = _store([("DELETE FROM refresh_token", psycopg.OperationalError("down"))])

        with pytest.raises(StorageFault):
            store.delete_refresh_token("value")

    def test_nul_character_becomes_invalid_value(self):
        store, _ = _store(
            [("FROM app_user", psycopg.DataError("PostgreSQL text fields cannot contain NUL (0x00) bytes"))]
        )

        with pytest.raises(InvalidValue):
            store.get_user_by_username("cl\x00erk")

    def test_bigint_overflow_becomes_invalid_value(self):
        store, _ = _store(
            [("INSERT INTO first_holy_communion", errors.NumericValueOutOfRange("bigint out of range"))]
        )
        communion = FirstCommunion(
            id=str(uuid.uuid4()),
            baptism_id=str(uuid.uuid4()),
            communion_date=date(2008, 5, 1),
            officiating_priest="Fr. Ade",
            parish="St. Paul",
        )

        with pytest.raises(InvalidValue):
            store.insert_stage_record(communion)

    def test_missing_schema_is_reported(self):
        store, _ = _store(
            [("to_regclass", lambda params: FakeCursor(row={"oid": None if "holy_order" in params[0] else 1}))]
        )

        with pytest.raises(RuntimeError) as excinfo:
            store._verify_required_schema()
        assert "holy_order" in str(excinfo.value)
