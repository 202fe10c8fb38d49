from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Protocol

from sqlalchemy import DateTime, String, Text, create_engine, delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


class StorageError(RuntimeError):
    """Raised when the backing key-value store cannot be read or written."""


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def put(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def list_keys(self, prefix: str) -> list[str]: ...

    def reset(self) -> None: ...


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _Entry:
    payload: str
    expires_at: float | None


class InMemoryKeyValueStore:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[str, _Entry] = {}

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def _live(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return json.loads(entry.payload)

    def put(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        payload = json.dumps(value)
        with self._lock:
            self._entries[key] = _Entry(payload=payload, expires_at=expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def list_keys(self, prefix: str) -> list[str]:
        with self._lock:
            candidates = [key for key in self._entries if key.startswith(prefix)]
            return sorted(key for key in candidates if self._live(key) is not None)


class KeyValueBase(DeclarativeBase):
    pass


class _KeyValueRow(KeyValueBase):
    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back out.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlAlchemyKeyValueStore:
    def __init__(self, database_url: str, *, clock: Callable[[], datetime] = _now_utc) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for KV_STORE_BACKEND=postgres")
        self._clock = clock
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            KeyValueBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def _is_expired(self, row: _KeyValueRow) -> bool:
        return row.expires_at is not None and _as_aware(row.expires_at) <= self._clock()

    def reset(self) -> None:
        try:
            with self._session() as session:
                with session.begin():
                    session.execute(delete(_KeyValueRow))
        except SQLAlchemyError as exc:
            raise StorageError(f"kv reset failed: {exc}") from exc

    def get(self, key: str) -> Any | None:
        try:
            with self._session() as session:
                row = session.get(_KeyValueRow, key)
                if row is None or self._is_expired(row):
                    return None
                return json.loads(row.value_json)
        except SQLAlchemyError as exc:
            raise StorageError(f"kv get failed for {key}: {exc}") from exc

    def put(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        now = self._clock()
        expires_at = None
        if ttl_seconds:
            expires_at = datetime.fromtimestamp(now.timestamp() + ttl_seconds, tz=timezone.utc)
        payload = json.dumps(value)
        try:
            with self._session() as session:
                with session.begin():
                    row = session.get(_KeyValueRow, key)
                    if row is None:
                        session.add(
                            _KeyValueRow(
                                key=key,
                                value_json=payload,
                                expires_at=expires_at,
                                updated_at=now,
                            )
                        )
                        return
                    row.value_json = payload
                    row.expires_at = expires_at
                    row.updated_at = now
        except SQLAlchemyError as exc:
            raise StorageError(f"kv put failed for {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            with self._session() as session:
                with session.begin():
                    session.execute(delete(_KeyValueRow).where(_KeyValueRow.key == key))
        except SQLAlchemyError as exc:
            raise StorageError(f"kv delete failed for {key}: {exc}") from exc

    def list_keys(self, prefix: str) -> list[str]:
        now = self._clock()
        try:
            with self._session() as session:
                with session.begin():
                    session.execute(
                        delete(_KeyValueRow)
                        .where(_KeyValueRow.key.startswith(prefix, autoescape=True))
                        .where(_KeyValueRow.expires_at.is_not(None))
                        .where(_KeyValueRow.expires_at <= now)
                    )
                    keys = session.scalars(
                        select(_KeyValueRow.key)
                        .where(_KeyValueRow.key.startswith(prefix, autoescape=True))
                        .where(or_(_KeyValueRow.expires_at.is_(None), _KeyValueRow.expires_at > now))
                        .order_by(_KeyValueRow.key.asc())
                    ).all()
                    return list(keys)
        except SQLAlchemyError as exc:
            raise StorageError(f"kv list failed for prefix {prefix}: {exc}") from exc


def create_kv_store(*, backend: str, database_url: str) -> KeyValueStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyKeyValueStore(database_url)
    if normalized == "inmemory":
        return InMemoryKeyValueStore()
    raise RuntimeError(f"unsupported KV_STORE_BACKEND: {backend}")
