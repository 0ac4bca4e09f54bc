from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from churchregistry.logging import get_logger
from churchregistry.storage.common import (
    LINK_TARGETS,
    record_from_dict,
    record_to_dict,
    records_for_parish,
)
from churchregistry.storage.errors import ConstraintViolation, StorageFault
from churchregistry.storage.models import (
    RECORD_TYPES,
    RefreshRotation,
    RefreshToken,
    StageKind,
    StageRecord,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store persisted to a JSON snapshot under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/churchregistry") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.records: Dict[StageKind, Dict[str, StageRecord]] = {
            kind: {} for kind in StageKind
        }
        # RLock for all data operations; one acquisition covers a whole
        # check-then-write sequence so it behaves like a transaction
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """Apply the block's changes and persist them as one unit.

        If the block or the snapshot write fails, the previous in-memory state
        is restored so no partial change stays visible.
        """
        with self._data_lock:
            saved = (
                dict(self.users),
                dict(self.credentials),
                dict(self.refresh_tokens),
                {kind: dict(table) for kind, table in self.records.items()},
            )
            try:
                yield
                self._persist_state()
            except Exception:
                self.users, self.credentials, self.refresh_tokens, self.records = saved
                raise

    def verify_connection(self) -> None:
        """Memory store is always reachable; present for health checks."""
        return None

    # users
    def create_user(
        self,
        username: str,
        display_name: Optional[str] = None,
        *,
        role: str = "user",
        parish_id: Optional[int] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                display_name=display_name,
                role=role,
                parish_id=parish_id,
            )
            with self._mutation():
                self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.username == username:
                    return user
            return None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            with self._mutation():
                self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh ledger
    def create_refresh_token(
        self, user_id: str, ttl_minutes: int, *, now: Optional[datetime] = None
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            token = RefreshToken.new(user_id, ttl_minutes, now=now)
            with self._mutation():
                self.refresh_tokens[token.value] = token
            return token

    def get_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(value)

    def rotate_refresh_token(
        self, value: str, ttl_minutes: int, *, now: Optional[datetime] = None
    ) -> Optional[RefreshRotation]:
        """Consume ``value`` and mint its replacement under one lock hold.

        Returns None when the value is unknown, already consumed or expired.
        """
        now = now or utcnow()
        with self._data_lock:
            current = self.refresh_tokens.get(value)
            if current is None or current.is_expired(now):
                return None
            issued = RefreshToken.new(current.user_id, ttl_minutes, now=now)
            with self._mutation():
                del self.refresh_tokens[value]
                self.refresh_tokens[issued.value] = issued
            return RefreshRotation(consumed=current, issued=issued)

    def delete_refresh_token(self, value: str) -> bool:
        with self._data_lock:
            if value not in self.refresh_tokens:
                return False
            with self._mutation():
                del self.refresh_tokens[value]
            return True

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                value
                for value, token in self.refresh_tokens.items()
                if token.expires_at < before
            ]
            if stale:
                with self._mutation():
                    for value in stale:
                        del self.refresh_tokens[value]
            return len(stale)

    # stage records
    def get_stage_record(self, kind: StageKind, record_id: str) -> Optional[StageRecord]:
        with self._data_lock:
            return self.records[kind].get(record_id)

    def find_successor(self, kind: StageKind, predecessor_id: str) -> Optional[StageRecord]:
        link = RECORD_TYPES[kind].link_field
        if not link:
            return None
        with self._data_lock:
            for record in self.records[kind].values():
                if getattr(record, link) == predecessor_id:
                    return record
            return None

    def insert_stage_record(
        self, record: StageRecord, *, exclusive_with: Iterable[StageKind] = ()
    ) -> StageRecord:
        kind = record.kind
        link = type(record).link_field
        with self._data_lock:
            table = self.records[kind]
            if record.id in table:
                raise ConstraintViolation(
                    f"{kind.value} already exists", {"field": "id", "rule": "unique"}
                )
            if link:
                predecessor_id = getattr(record, link)
                if predecessor_id not in self.records[LINK_TARGETS[link]]:
                    raise ConstraintViolation(
                        "predecessor record missing",
                        {"field": link, "kind": kind.value, "rule": "missing_predecessor"},
                    )
                if self.find_successor(kind, predecessor_id) is not None:
                    raise ConstraintViolation(
                        f"{kind.value} already exists for {link}",
                        {"field": link, "kind": kind.value, "rule": "duplicate"},
                    )
                for other in exclusive_with:
                    if self.find_successor(other, predecessor_id) is not None:
                        raise ConstraintViolation(
                            f"{other.value} already recorded for {link}",
                            {
                                "field": link,
                                "kind": kind.value,
                                "existing_kind": other.value,
                                "rule": "mutually_exclusive",
                            },
                        )
            with self._mutation():
                self.records[kind][record.id] = record
            return record

    def list_stage_records(
        self, kind: StageKind, *, parish_id: Optional[int] = None
    ) -> List[StageRecord]:
        with self._data_lock:
            records = sorted(self.records[kind].values(), key=lambda r: r.created_at)
            if parish_id is None:
                return records
            return records_for_parish(records, self.records[StageKind.BAPTISM], parish_id)

    def search_baptisms(self, query: str, *, limit: int = 50) -> List[StageRecord]:
        needle = query.strip().lower()
        with self._data_lock:
            matches = []
            for record in sorted(
                self.records[StageKind.BAPTISM].values(), key=lambda r: r.created_at
            ):
                haystack = (
                    record.baptism_name,
                    record.surname,
                    record.address or "",
                    record.parish_address or "",
                    record.parent_address or "",
                )
                if any(needle in value.lower() for value in haystack):
                    matches.append(record)
                    if len(matches) >= limit:
                        break
            return matches

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "records": {
                kind.value: [record_to_dict(r) for r in table.values()]
                for kind, table in self.records.items()
            },
        }
        path = self._state_path()
        tmp_path: Optional[str] = None
        try:
            # Write to a temp file then rename so a failed write never truncates the snapshot
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".memory_store_", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            self.logger.error("memory_state_persist_failed", error=str(exc), path=str(path))
            raise StorageFault(
                "failed to persist in-memory state", {"error_type": type(exc).__name__}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {
            t["value"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        stored = data.get("records", {})
        for kind in StageKind:
            self.records[kind] = {
                entry["id"]: record_from_dict(kind, entry)
                for entry in stored.get(kind.value, [])
            }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "display_name": user.display_name,
            "role": user.role,
            "parish_id": user.parish_id,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            username=data["username"],
            display_name=data.get("display_name"),
            role=data.get("role", "user"),
            parish_id=data.get("parish_id"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "value": token.value,
            "user_id": token.user_id,
            "issued_at": self._serialize_datetime(token.issued_at),
            "expires_at": self._serialize_datetime(token.expires_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            value=data["value"],
            user_id=data["user_id"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )
