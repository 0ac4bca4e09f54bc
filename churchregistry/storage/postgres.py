from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from churchregistry.logging import get_logger
from churchregistry.storage.common import LINK_TARGETS, record_columns, record_from_dict
from churchregistry.storage.errors import ConstraintViolation, InvalidValue, StorageFault
from churchregistry.storage.models import (
    RECORD_TYPES,
    RefreshRotation,
    RefreshToken,
    StageKind,
    StageRecord,
    User,
    utcnow,
)

_STAGE_TABLES: Dict[StageKind, str] = {
    StageKind.BAPTISM: "baptism",
    StageKind.COMMUNION: "first_holy_communion",
    StageKind.CONFIRMATION: "confirmation",
    StageKind.MARRIAGE: "marriage",
    StageKind.HOLY_ORDER: "holy_order",
}

_REQUIRED_TABLES = [
    "app_user",
    "user_auth_credential",
    "refresh_token",
    *_STAGE_TABLES.values(),
]


class PostgresStore:
    """Postgres-backed credential store, refresh ledger and stage repositories."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _transaction(self) -> Iterator[psycopg.Connection]:
        """Run the block in one transaction.

        Rejected values surface as InvalidValue and connection failures as StorageFault.
        """
        try:
            with self._connect() as conn, conn.transaction():
                yield conn
        except psycopg.DataError as exc:
            self.logger.warning("postgres_data_error", error_type=type(exc).__name__)
            raise InvalidValue(
                "value cannot be stored", {"error_type": type(exc).__name__}
            ) from exc
        except psycopg.OperationalError as exc:
            self.logger.error(
                "postgres_operational_error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StorageFault(
                "storage unavailable", {"error_type": type(exc).__name__}
            ) from exc

    def _verify_required_schema(self) -> None:
        """Ensure the lineage and credential tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/migrate.sh to install the schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self,
        username: str,
        display_name: Optional[str] = None,
        *,
        role: str = "user",
        parish_id: Optional[int] = None,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            username=username,
            display_name=display_name,
            role=role,
            parish_id=parish_id,
        )
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, display_name, role, parish_id, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.display_name,
                        user.role,
                        user.parish_id,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        return user

    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            display_name=row.get("display_name"),
            role=row.get("role", "user"),
            parish_id=row.get("parish_id"),
            created_at=row.get("created_at") or utcnow(),
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh ledger
    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            value=row["value"],
            user_id=str(row["user_id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
        )

    def create_refresh_token(
        self, user_id: str, ttl_minutes: int, *, now: Optional[datetime] = None
    ) -> RefreshToken:
        token = RefreshToken.new(user_id, ttl_minutes, now=now)
        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO refresh_token (value, user_id, issued_at, expires_at) VALUES (%s, %s, %s, %s)",
                    (token.value, token.user_id, token.issued_at, token.expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return token

    def get_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT value, user_id, issued_at, expires_at FROM refresh_token WHERE value = %s",
                (value,),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def rotate_refresh_token(
        self, value: str, ttl_minutes: int, *, now: Optional[datetime] = None
    ) -> Optional[RefreshRotation]:
        """Delete ``value`` and insert its replacement in one transaction.

        A concurrent rotation of the same value blocks on the row lock taken by
        the DELETE and then finds nothing to delete, so only one caller wins.
        """
        now = now or utcnow()
        with self._transaction() as conn:
            row = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE value = %s AND expires_at > %s
                RETURNING value, user_id, issued_at, expires_at
                """,
                (value, now),
            ).fetchone()
            if not row:
                return None
            consumed = self._row_to_refresh_token(row)
            issued = RefreshToken.new(consumed.user_id, ttl_minutes, now=now)
            conn.execute(
                "INSERT INTO refresh_token (value, user_id, issued_at, expires_at) VALUES (%s, %s, %s, %s)",
                (issued.value, issued.user_id, issued.issued_at, issued.expires_at),
            )
        return RefreshRotation(consumed=consumed, issued=issued)

    def delete_refresh_token(self, value: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE value = %s", (value,))
            return bool(cur.rowcount)

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (before,)
            )
            return max(cur.rowcount, 0)

    # stage records
    def get_stage_record(self, kind: StageKind, record_id: str) -> Optional[StageRecord]:
        try:
            uuid.UUID(str(record_id))
        except ValueError:
            # Not a uuid, so it cannot match a primary key
            return None
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {_STAGE_TABLES[kind]} WHERE id = %s", (record_id,)
            ).fetchone()
        return record_from_dict(kind, row) if row else None

    def find_successor(self, kind: StageKind, predecessor_id: str) -> Optional[StageRecord]:
        link = RECORD_TYPES[kind].link_field
        if not link:
            return None
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {_STAGE_TABLES[kind]} WHERE {link} = %s",
                (predecessor_id,),
            ).fetchone()
        return record_from_dict(kind, row) if row else None

    def insert_stage_record(
        self, record: StageRecord, *, exclusive_with: Iterable[StageKind] = ()
    ) -> StageRecord:
        kind = record.kind
        link = type(record).link_field
        exclusive = list(exclusive_with)
        columns = record_columns(kind)
        placeholders = ", ".join(["%s"] * len(columns))
        try:
            with self._transaction() as conn:
                if link and exclusive:
                    predecessor_id = getattr(record, link)
                    # Row lock on the shared predecessor serializes sibling inserts
                    locked = conn.execute(
                        f"SELECT id FROM {_STAGE_TABLES[LINK_TARGETS[link]]} WHERE id = %s FOR UPDATE",
                        (predecessor_id,),
                    ).fetchone()
                    if not locked:
                        raise ConstraintViolation(
                            "predecessor record missing",
                            {"field": link, "kind": kind.value, "rule": "missing_predecessor"},
                        )
                    for other in exclusive:
                        other_link = RECORD_TYPES[other].link_field
                        sibling = conn.execute(
                            f"SELECT id FROM {_STAGE_TABLES[other]} WHERE {other_link} = %s",
                            (predecessor_id,),
                        ).fetchone()
                        if sibling:
                            raise ConstraintViolation(
                                f"{other.value} already recorded for {link}",
                                {
                                    "field": link,
                                    "kind": kind.value,
                                    "existing_kind": other.value,
                                    "rule": "mutually_exclusive",
                                },
                            )
                conn.execute(
                    f"INSERT INTO {_STAGE_TABLES[kind]} ({', '.join(columns)}) VALUES ({placeholders})",
                    tuple(getattr(record, column) for column in columns),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            if constraint.endswith("_pkey"):
                raise ConstraintViolation(
                    f"{kind.value} already exists", {"field": "id", "rule": "unique"}
                )
            raise ConstraintViolation(
                f"{kind.value} already exists for {link}",
                {"field": link, "kind": kind.value, "rule": "duplicate"},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "predecessor record missing",
                {"field": link, "kind": kind.value, "rule": "missing_predecessor"},
            )
        self.logger.debug("stage_record_inserted", kind=kind.value, record_id=record.id)
        return record

    def list_stage_records(
        self, kind: StageKind, *, parish_id: Optional[int] = None
    ) -> List[StageRecord]:
        table = _STAGE_TABLES[kind]
        with self._transaction() as conn:
            if parish_id is None:
                rows = conn.execute(
                    f"SELECT * FROM {table} ORDER BY created_at"
                ).fetchall()
            elif kind == StageKind.BAPTISM:
                rows = conn.execute(
                    "SELECT * FROM baptism WHERE parish_id = %s ORDER BY created_at",
                    (parish_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"""
                    SELECT r.* FROM {table} r
                    JOIN baptism b ON b.id = r.baptism_id
                    WHERE b.parish_id = %s
                    ORDER BY r.created_at
                    """,
                    (parish_id,),
                ).fetchall()
        return [record_from_dict(kind, row) for row in rows]

    def search_baptisms(self, query: str, *, limit: int = 50) -> List[StageRecord]:
        pattern = f"%{query.strip().lower()}%"
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM baptism
                WHERE LOWER(baptism_name) LIKE %s
                   OR LOWER(surname) LIKE %s
                   OR LOWER(COALESCE(address, '')) LIKE %s
                   OR LOWER(COALESCE(parish_address, '')) LIKE %s
                   OR LOWER(COALESCE(parent_address, '')) LIKE %s
                ORDER BY created_at
                LIMIT %s
                """,
                (pattern, pattern, pattern, pattern, pattern, limit),
            ).fetchall()
        return [record_from_dict(StageKind.BAPTISM, row) for row in rows]
