"""
Audit storage adapters for CuraNet
Append-only persistence for audit entries. Nothing here updates or deletes.
"""

from typing import Iterator, List, Optional, Tuple
import json
import threading
import structlog
from sqlalchemy import Column, DateTime, Index, Integer, String, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .metadata import dump_metadata
from .models import AuditAction, AuditEntry, AuditFilters, AuditSummary
from ..utils.clock import ensure_utc, to_naive_utc
from ..utils.db import build_engine

logger = structlog.get_logger(__name__)

Base = declarative_base()


class AuditStorageError(Exception):
    """The backing store could not accept or return audit entries"""
    pass


class AuditEntryDB(Base):
    """SQLAlchemy model for audit entries"""
    __tablename__ = "audit_entries"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True)

    subject_id = Column(String, nullable=False, index=True)
    actor_id = Column(String, nullable=False, index=True)
    actor_role = Column(String)
    action = Column(String, nullable=False, index=True)

    resource_type = Column(String, nullable=False)
    resource_id = Column(String, nullable=False)
    consent_id = Column(String, index=True)
    reason = Column(Text)
    entry_metadata = Column(Text)  # JSON string

    ip_address = Column(String)
    user_agent = Column(Text)
    timestamp = Column(DateTime, nullable=False, index=True)

    previous_hash = Column(String)
    hash = Column(String)

    __table_args__ = (
        Index("ix_audit_subject_timestamp", "subject_id", "timestamp"),
        Index("ix_audit_actor_timestamp", "actor_id", "timestamp"),
    )


class AuditStorage:
    """Storage adapter for audit entries"""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        self.engine = engine or build_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)

        # Create tables
        Base.metadata.create_all(bind=self.engine)

    def _to_db_model(self, entry: AuditEntry) -> AuditEntryDB:
        return AuditEntryDB(
            id=entry.id,
            subject_id=entry.subject_id,
            actor_id=entry.actor_id,
            actor_role=entry.actor_role,
            action=entry.action.value,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            consent_id=entry.consent_id,
            reason=entry.reason,
            entry_metadata=json.dumps(dump_metadata(entry.metadata)),
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            timestamp=to_naive_utc(entry.timestamp),
            previous_hash=entry.previous_hash,
            hash=entry.hash,
        )

    def _from_db_model(self, row: AuditEntryDB) -> AuditEntry:
        metadata = None
        if row.entry_metadata:
            try:
                metadata = json.loads(row.entry_metadata)
            except json.JSONDecodeError:
                logger.warning("Invalid metadata JSON", audit_id=row.id)

        return AuditEntry(
            id=row.id,
            subject_id=row.subject_id,
            actor_id=row.actor_id,
            actor_role=row.actor_role,
            action=AuditAction(row.action),
            resource_type=row.resource_type,
            resource_id=row.resource_id,
            consent_id=row.consent_id,
            reason=row.reason,
            metadata=metadata,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            timestamp=ensure_utc(row.timestamp),
            sequence=row.seq,
            previous_hash=row.previous_hash,
            hash=row.hash,
        )

    @staticmethod
    def _apply_filters(stmt, filters: AuditFilters):
        if filters.actor_id:
            stmt = stmt.where(AuditEntryDB.actor_id == filters.actor_id)
        if filters.subject_id:
            stmt = stmt.where(AuditEntryDB.subject_id == filters.subject_id)
        if filters.action:
            stmt = stmt.where(AuditEntryDB.action == filters.action.value)
        if filters.consent_id:
            stmt = stmt.where(AuditEntryDB.consent_id == filters.consent_id)
        if filters.start:
            stmt = stmt.where(AuditEntryDB.timestamp >= to_naive_utc(filters.start))
        if filters.end:
            stmt = stmt.where(AuditEntryDB.timestamp <= to_naive_utc(filters.end))
        return stmt

    def insert(self, entry: AuditEntry) -> AuditEntry:
        """Append one entry and return it with its sequence number"""
        try:
            with self.SessionLocal() as session:
                row = self._to_db_model(entry)
                session.add(row)
                session.commit()
                return entry.model_copy(update={"sequence": row.seq})

        except SQLAlchemyError as e:
            logger.error("Failed to store audit entry", audit_id=entry.id, error=str(e))
            raise AuditStorageError(str(e)) from e

    def last_hash(self) -> Optional[str]:
        """Hash of the most recently appended entry"""
        try:
            with self.SessionLocal() as session:
                return session.execute(
                    select(AuditEntryDB.hash).order_by(AuditEntryDB.seq.desc()).limit(1)
                ).scalar_one_or_none()

        except SQLAlchemyError as e:
            raise AuditStorageError(str(e)) from e

    def query(self, filters: AuditFilters, offset: int, limit: int) -> Tuple[List[AuditEntry], int]:
        """Page of matching entries, newest first, plus the total match count"""
        with self.SessionLocal() as session:
            total = session.execute(
                self._apply_filters(select(func.count()).select_from(AuditEntryDB), filters)
            ).scalar_one()

            stmt = self._apply_filters(select(AuditEntryDB), filters)
            stmt = stmt.order_by(AuditEntryDB.timestamp.desc(), AuditEntryDB.seq.desc())
            rows = session.execute(stmt.offset(offset).limit(limit)).scalars().all()
            return [self._from_db_model(row) for row in rows], total

    def iter_range(self, filters: AuditFilters, limit: int) -> Iterator[AuditEntry]:
        """Stream matching entries in chronological order, at most ``limit`` rows"""
        with self.SessionLocal() as session:
            stmt = self._apply_filters(select(AuditEntryDB), filters)
            stmt = stmt.order_by(AuditEntryDB.timestamp.asc(), AuditEntryDB.seq.asc()).limit(limit)
            for row in session.execute(stmt.execution_options(yield_per=500)).scalars():
                yield self._from_db_model(row)

    def iter_chain(self) -> Iterator[AuditEntry]:
        """Every entry in append order"""
        with self.SessionLocal() as session:
            stmt = select(AuditEntryDB).order_by(AuditEntryDB.seq.asc())
            for row in session.execute(stmt.execution_options(yield_per=500)).scalars():
                yield self._from_db_model(row)

    def summary(self, filters: AuditFilters) -> AuditSummary:
        with self.SessionLocal() as session:
            total, earliest, latest = session.execute(
                self._apply_filters(
                    select(func.count(), func.min(AuditEntryDB.timestamp), func.max(AuditEntryDB.timestamp))
                    .select_from(AuditEntryDB),
                    filters,
                )
            ).one()
            actions = session.execute(
                self._apply_filters(select(AuditEntryDB.action).distinct(), filters)
            ).scalars().all()

            return AuditSummary(
                total=total,
                earliest=ensure_utc(earliest),
                latest=ensure_utc(latest),
                actions=sorted(actions),
            )


class InMemoryAuditStorage(AuditStorage):
    """In-memory storage for testing"""

    def __init__(self):
        self.entries: List[AuditEntry] = []
        self._lock = threading.Lock()

    def insert(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            stored = entry.model_copy(update={"sequence": len(self.entries) + 1})
            self.entries.append(stored)
            return stored

    def last_hash(self) -> Optional[str]:
        with self._lock:
            return self.entries[-1].hash if self.entries else None

    def _matching(self, filters: AuditFilters) -> List[AuditEntry]:
        with self._lock:
            return [entry for entry in self.entries if filters.matches(entry)]

    def query(self, filters: AuditFilters, offset: int, limit: int) -> Tuple[List[AuditEntry], int]:
        matching = self._matching(filters)
        matching.sort(key=lambda e: (e.timestamp, e.sequence), reverse=True)
        return matching[offset:offset + limit], len(matching)

    def iter_range(self, filters: AuditFilters, limit: int) -> Iterator[AuditEntry]:
        matching = self._matching(filters)
        matching.sort(key=lambda e: (e.timestamp, e.sequence))
        yield from matching[:limit]

    def iter_chain(self) -> Iterator[AuditEntry]:
        with self._lock:
            snapshot = list(self.entries)
        yield from snapshot

    def summary(self, filters: AuditFilters) -> AuditSummary:
        matching = self._matching(filters)
        if not matching:
            return AuditSummary(total=0)
        return AuditSummary(
            total=len(matching),
            earliest=min(e.timestamp for e in matching),
            latest=max(e.timestamp for e in matching),
            actions=sorted({e.action.value for e in matching}),
        )
