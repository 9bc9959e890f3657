"""
SQLAlchemy-backed storage for participation entries.

Each storage call runs in its own transaction. Status transitions use a
conditional UPDATE on ``status = 'PENDING'`` so that only one of several
concurrent reviewers can decide an entry. When the engine hands every
thread the same connection (``StaticPool``, used for in-memory SQLite),
transactions cannot isolate each other and calls are serialised with a lock.
"""

import logging
import threading
from contextlib import nullcontext
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    create_engine,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .models import EntryStatus

logger = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetimes, normalised to UTC on the way in and out."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class ParticipationEntryRecord(Base):
    __tablename__ = "participation_entries"
    __table_args__ = (
        UniqueConstraint("member_id", "idempotency_key", name="uq_participation_member_idempotency"),
        Index("ix_participation_member_status", "member_id", "status"),
    )

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[UUID] = mapped_column(Uuid, unique=True, nullable=False)
    member_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    hours: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True, default=EntryStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    reviewed_by: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    review_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "id": self.id,
            "member_id": self.member_id,
            "hours": self.hours,
            "category": self.category,
            "description": self.description,
            "status": EntryStatus(self.status),
            "created_at": self.created_at,
            "approved_at": self.approved_at,
            "reviewed_by": self.reviewed_by,
            "review_note": self.review_note,
            "idempotency_key": self.idempotency_key,
        }

    def __repr__(self):
        return f"<ParticipationEntryRecord(id={self.id}, status='{self.status}', hours={self.hours})>"


def _is_sqlite_memory(database_url: str) -> bool:
    return database_url.startswith("sqlite") and (
        ":memory:" in database_url or database_url.rstrip("/").endswith(":")
    )


def make_engine(database_url: str, echo: bool = False):
    if _is_sqlite_memory(database_url):
        # One shared connection, otherwise every checkout sees an empty database.
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


class SqlAlchemyStorage:
    def __init__(self, engine, create_tables: bool = True):
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        # A StaticPool connection is shared by all threads.
        self._lock = threading.RLock() if isinstance(engine.pool, StaticPool) else nullcontext()
        if create_tables:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "SqlAlchemyStorage":
        return cls(make_engine(database_url, echo=echo))

    def add_entry(self, data: dict) -> dict:
        record = ParticipationEntryRecord(
            id=data["id"],
            member_id=data["member_id"],
            hours=data["hours"],
            category=data["category"].value,
            description=data["description"],
            status=EntryStatus(data["status"]).value,
            created_at=data["created_at"],
            approved_at=data["approved_at"],
            reviewed_by=data["reviewed_by"],
            review_note=data.get("review_note"),
            idempotency_key=data["idempotency_key"],
        )
        with self._lock:
            try:
                with self.session_factory.begin() as session:
                    session.add(record)
                    session.flush()
                    return record.to_dict()
            except IntegrityError:
                if data["idempotency_key"] is None:
                    raise
                existing = self.find_by_idempotency_key(data["member_id"], data["idempotency_key"])
                if existing is None:
                    raise
                logger.info("Idempotency key %r already stored for member %s", data["idempotency_key"], data["member_id"])
                return existing

    def get_entry(self, entry_id: UUID) -> Optional[dict]:
        with self._lock, self.session_factory() as session:
            record = session.execute(
                select(ParticipationEntryRecord).where(ParticipationEntryRecord.id == entry_id)
            ).scalar_one_or_none()
            return record.to_dict() if record else None

    def find_by_idempotency_key(self, member_id: UUID, key: str) -> Optional[dict]:
        with self._lock, self.session_factory() as session:
            record = session.execute(
                select(ParticipationEntryRecord).where(
                    ParticipationEntryRecord.member_id == member_id,
                    ParticipationEntryRecord.idempotency_key == key,
                )
            ).scalar_one_or_none()
            return record.to_dict() if record else None

    def entries_for_member(self, member_id: UUID, statuses: Optional[Iterable[EntryStatus]] = None) -> list[dict]:
        query = select(ParticipationEntryRecord).where(ParticipationEntryRecord.member_id == member_id)
        return self._newest_first(query, statuses)

    def entries_since(self, since: datetime, statuses: Optional[Iterable[EntryStatus]] = None) -> list[dict]:
        query = select(ParticipationEntryRecord).where(ParticipationEntryRecord.created_at >= since)
        return self._newest_first(query, statuses)

    def transition_if_pending(
        self,
        entry_id: UUID,
        new_status: EntryStatus,
        approved_at: Optional[datetime],
        reviewed_by: Optional[UUID],
        review_note: Optional[str] = None,
    ) -> tuple[Optional[dict], bool]:
        with self._lock, self.session_factory.begin() as session:
            result = session.execute(
                update(ParticipationEntryRecord)
                .where(
                    ParticipationEntryRecord.id == entry_id,
                    ParticipationEntryRecord.status == EntryStatus.PENDING.value,
                )
                .values(
                    status=new_status.value,
                    approved_at=approved_at,
                    reviewed_by=reviewed_by,
                    review_note=review_note,
                )
                .execution_options(synchronize_session=False)
            )
            record = session.execute(
                select(ParticipationEntryRecord)
                .where(ParticipationEntryRecord.id == entry_id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if record is None:
                return None, False
            return record.to_dict(), result.rowcount == 1

    def _newest_first(self, query, statuses) -> list[dict]:
        if statuses:
            query = query.where(ParticipationEntryRecord.status.in_([EntryStatus(s).value for s in statuses]))
        query = query.order_by(ParticipationEntryRecord.created_at.desc(), ParticipationEntryRecord.seq.desc())
        with self._lock, self.session_factory() as session:
            return [record.to_dict() for record in session.execute(query).scalars()]
