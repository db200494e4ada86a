"""
Record store for escrowed recovery data.

One record per address: callers look a record up by address, then insert or
update it in place. Records are never deleted here.

The attempt counter is the one piece of state that concurrent recovery
requests contend for, so it is never read-modified-written by the caller.
``register_attempt`` applies the rate-limit test and the counter update as a
single atomic operation: under a lock in memory, as one conditional
``UPDATE`` in SQL.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from sqlalchemy import (
    DateTime,
    Integer,
    String,
    Text,
    and_,
    case,
    create_engine,
    not_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .exceptions import StoreError
from .models import AttemptDecision, EscrowedRecord

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    """What the recovery service needs from persistent storage."""

    def find_by_address(self, address: str) -> EscrowedRecord | None: ...

    def insert(self, record: EscrowedRecord) -> EscrowedRecord: ...

    def update(self, record_id: str, fields: dict[str, Any]) -> None: ...

    def register_attempt(
        self,
        record_id: str,
        now: datetime,
        window: timedelta,
        max_attempts: int,
    ) -> AttemptDecision: ...


def decide_attempt(
    attempt_count: int,
    last_attempt_at: datetime | None,
    now: datetime,
    window: timedelta,
    max_attempts: int,
) -> AttemptDecision:
    """The attempt policy as a pure function of the current counter state.

    No prior attempt counts as a fully elapsed window.
    """
    window_elapsed = last_attempt_at is None or now - last_attempt_at >= window
    if not window_elapsed and attempt_count >= max_attempts:
        return AttemptDecision(
            allowed=False,
            attempt_count=attempt_count,
            last_attempt_at=last_attempt_at,
        )
    return AttemptDecision(
        allowed=True,
        attempt_count=1 if window_elapsed else attempt_count + 1,
        last_attempt_at=now,
    )


# ─── In-Memory Store ─────────────────────────────────────────────────


class InMemoryRecordStore:
    """Process-local store, used for development and tests."""

    def __init__(self) -> None:
        self._records: dict[str, EscrowedRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def find_by_address(self, address: str) -> EscrowedRecord | None:
        with self._lock:
            for record in self._records.values():
                if record.address == address:
                    return record.model_copy()
        return None

    def insert(self, record: EscrowedRecord) -> EscrowedRecord:
        with self._lock:
            if any(r.address == record.address for r in self._records.values()):
                raise StoreError("A record for this address already exists")
            self._records[record.id] = record.model_copy()
        return record

    def update(self, record_id: str, fields: dict[str, Any]) -> None:
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise StoreError("Record not found for update", {"id": record_id})
            self._records[record_id] = current.model_copy(update=fields)

    def register_attempt(
        self,
        record_id: str,
        now: datetime,
        window: timedelta,
        max_attempts: int,
    ) -> AttemptDecision:
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise StoreError("Record not found", {"id": record_id})
            decision = decide_attempt(
                current.attempt_count, current.last_attempt_at, now, window, max_attempts
            )
            if decision.allowed:
                self._records[record_id] = current.model_copy(
                    update={
                        "attempt_count": decision.attempt_count,
                        "last_attempt_at": decision.last_attempt_at,
                    }
                )
            return decision


# ─── SQL Store ───────────────────────────────────────────────────────


class Base(DeclarativeBase):
    pass


class RecoveryRow(Base):
    """Escrowed recovery data, one row per user address."""

    __tablename__ = "aadhaar_recovery"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    encrypted_name: Mapped[str] = mapped_column(Text)
    encrypted_aadhaar_number: Mapped[str] = mapped_column(Text)
    encrypted_dob: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    encrypted_gender: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    encrypted_decryption_key: Mapped[str] = mapped_column(Text)
    recovery_attempts: Mapped[int] = mapped_column(Integer, default=0)
    # Naive UTC; converted at the store boundary
    last_recovery_attempt: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


# EscrowedRecord field → column name
_COLUMNS: dict[str, str] = {
    "id": "id",
    "address": "user_email",
    "encrypted_name": "encrypted_name",
    "encrypted_identity_number": "encrypted_aadhaar_number",
    "encrypted_birth_date": "encrypted_dob",
    "encrypted_gender": "encrypted_gender",
    "encrypted_secret": "encrypted_decryption_key",
    "attempt_count": "recovery_attempts",
    "last_attempt_at": "last_recovery_attempt",
    "created_at": "created_at",
    "updated_at": "updated_at",
}


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: datetime | None) -> datetime | None:
    return value.replace(tzinfo=timezone.utc) if value is not None else None


def _to_record(row: RecoveryRow) -> EscrowedRecord:
    return EscrowedRecord(
        id=row.id,
        address=row.user_email,
        encrypted_name=row.encrypted_name,
        encrypted_identity_number=row.encrypted_aadhaar_number,
        encrypted_birth_date=row.encrypted_dob,
        encrypted_gender=row.encrypted_gender,
        encrypted_secret=row.encrypted_decryption_key,
        attempt_count=row.recovery_attempts or 0,
        last_attempt_at=_from_db(row.last_recovery_attempt),
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
    )


def _to_columns(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - set(_COLUMNS)
    if unknown:
        raise StoreError(f"Unknown record fields: {sorted(unknown)}")
    return {_COLUMNS[k]: _to_db(v) for k, v in fields.items()}


class SqlRecordStore:
    """SQLAlchemy-backed store (PostgreSQL in production, SQLite in tests)."""

    def __init__(self, url_or_engine: str | Engine, create_schema: bool = True):
        if isinstance(url_or_engine, Engine):
            self.engine = url_or_engine
        elif url_or_engine in ("sqlite://", "sqlite:///:memory:"):
            # A single shared connection keeps the in-memory database alive
            self.engine = create_engine(
                url_or_engine,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            self.engine = create_engine(url_or_engine, pool_pre_ping=True)

        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        if create_schema:
            Base.metadata.create_all(self.engine)

    def find_by_address(self, address: str) -> EscrowedRecord | None:
        try:
            with self._sessions() as session:
                row = session.scalars(
                    select(RecoveryRow).where(RecoveryRow.user_email == address)
                ).one_or_none()
                return _to_record(row) if row is not None else None
        except SQLAlchemyError as exc:
            logger.error("Error checking existing data: %s", exc)
            raise StoreError("Database error") from exc

    def insert(self, record: EscrowedRecord) -> EscrowedRecord:
        columns = _to_columns(record.model_dump())
        try:
            with self._sessions.begin() as session:
                session.add(RecoveryRow(**columns))
        except SQLAlchemyError as exc:
            logger.error("Database error on insert: %s", exc)
            raise StoreError("Failed to store recovery data") from exc
        return record

    def update(self, record_id: str, fields: dict[str, Any]) -> None:
        columns = _to_columns(fields)
        try:
            with self._sessions.begin() as session:
                result = session.execute(
                    update(RecoveryRow)
                    .where(RecoveryRow.id == record_id)
                    .values(**columns)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise StoreError("Record not found for update", {"id": record_id})
        except SQLAlchemyError as exc:
            logger.error("Database error on update: %s", exc)
            raise StoreError("Failed to store recovery data") from exc

    def register_attempt(
        self,
        record_id: str,
        now: datetime,
        window: timedelta,
        max_attempts: int,
    ) -> AttemptDecision:
        """One conditional UPDATE: refused rows are left untouched."""
        cutoff = _to_db(now - window)
        within_window = and_(
            RecoveryRow.last_recovery_attempt.is_not(None),
            RecoveryRow.last_recovery_attempt > cutoff,
        )
        stmt = (
            update(RecoveryRow)
            .where(RecoveryRow.id == record_id)
            .where(not_(and_(within_window, RecoveryRow.recovery_attempts >= max_attempts)))
            .values(
                recovery_attempts=case(
                    (within_window, RecoveryRow.recovery_attempts + 1), else_=1
                ),
                last_recovery_attempt=_to_db(now),
            )
            .execution_options(synchronize_session=False)
        )

        try:
            with self._sessions.begin() as session:
                allowed = session.execute(stmt).rowcount == 1
                row = session.get(RecoveryRow, record_id)
                if row is None:
                    raise StoreError("Record not found", {"id": record_id})
                return AttemptDecision(
                    allowed=allowed,
                    attempt_count=row.recovery_attempts,
                    last_attempt_at=_from_db(row.last_recovery_attempt),
                )
        except SQLAlchemyError as exc:
            logger.error("Database error on attempt update: %s", exc)
            raise StoreError("Database error") from exc


def build_store(database_url: str) -> RecordStore:
    """SQL store when a URL is configured, in-memory otherwise."""
    if database_url:
        return SqlRecordStore(database_url)
    logger.warning("No database URL configured, recovery records kept in memory")
    return InMemoryRecordStore()
