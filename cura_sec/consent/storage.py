"""
Consent storage adapters for CuraNet
Database adapters for consent and consent request persistence

Uniqueness per (patient, provider) pair is enforced by the database: a row
holding the pair's ``active_slot`` or ``pending_slot`` blocks any other row
from claiming it, and every lifecycle write is a conditional UPDATE.
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple
import json
import threading
import structlog
from sqlalchemy import Column, DateTime, Index, Integer, String, Text, and_, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .models import (
    Consent,
    ConsentRequest,
    ConsentScope,
    ConsentStatus,
    RequestStatus,
    pair_key,
)
from ..exceptions import ConflictError, NotFoundError, StateError
from ..utils.clock import ensure_utc, to_naive_utc
from ..utils.db import build_engine

logger = structlog.get_logger(__name__)

Base = declarative_base()


class ConsentDB(Base):
    """SQLAlchemy model for consents"""
    __tablename__ = "consents"

    id = Column(String, primary_key=True)
    patient_id = Column(String, nullable=False)
    provider_id = Column(String, nullable=False)
    scope = Column(Text, nullable=False)  # JSON list
    purpose = Column(Text, nullable=False)
    status = Column(String, nullable=False)

    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime)
    revoked_at = Column(DateTime)
    revoked_reason = Column(Text)

    access_count = Column(Integer, nullable=False, default=0)
    last_accessed_at = Column(DateTime)
    request_id = Column(String)

    # "<patient>:<provider>" while this row is the pair's live consent
    active_slot = Column(String, unique=True)

    __table_args__ = (
        Index("ix_consents_pair_status", "patient_id", "provider_id", "status"),
        Index("ix_consents_provider", "provider_id"),
    )


class ConsentRequestDB(Base):
    """SQLAlchemy model for consent requests"""
    __tablename__ = "consent_requests"

    id = Column(String, primary_key=True)
    patient_id = Column(String, nullable=False)
    provider_id = Column(String, nullable=False)
    requested_scope = Column(Text, nullable=False)  # JSON list
    purpose = Column(Text, nullable=False)
    message = Column(Text)
    status = Column(String, nullable=False)

    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    reviewed_at = Column(DateTime)
    requested_expiry = Column(DateTime)
    denied_reason = Column(Text)
    consent_id = Column(String)

    # "<patient>:<provider>" while this row is the pair's pending request
    pending_slot = Column(String, unique=True)

    __table_args__ = (
        Index("ix_consent_requests_pair_status", "patient_id", "provider_id", "status"),
        Index("ix_consent_requests_provider", "provider_id"),
    )


def _dump_scope(scope) -> str:
    return json.dumps(sorted(s.value for s in scope))


def _load_scope(raw: str):
    return frozenset(ConsentScope(s) for s in json.loads(raw))


class ConsentStorage:
    """Storage adapter for consents and consent requests"""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        self.engine = engine or build_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)

        # Create tables
        Base.metadata.create_all(bind=self.engine)

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def _consent_to_db(self, consent: Consent) -> ConsentDB:
        return ConsentDB(
            id=consent.id,
            patient_id=consent.patient_id,
            provider_id=consent.provider_id,
            scope=_dump_scope(consent.scope),
            purpose=consent.purpose,
            status=consent.status.value,
            created_at=to_naive_utc(consent.created_at),
            expires_at=to_naive_utc(consent.expires_at),
            revoked_at=to_naive_utc(consent.revoked_at),
            revoked_reason=consent.revoked_reason,
            access_count=consent.access_count,
            last_accessed_at=to_naive_utc(consent.last_accessed_at),
            request_id=consent.request_id,
            active_slot=pair_key(consent.patient_id, consent.provider_id)
            if consent.status == ConsentStatus.ACTIVE else None,
        )

    def _consent_from_db(self, row: ConsentDB) -> Consent:
        return Consent(
            id=row.id,
            patient_id=row.patient_id,
            provider_id=row.provider_id,
            scope=_load_scope(row.scope),
            purpose=row.purpose,
            status=ConsentStatus(row.status),
            created_at=ensure_utc(row.created_at),
            expires_at=ensure_utc(row.expires_at),
            revoked_at=ensure_utc(row.revoked_at),
            revoked_reason=row.revoked_reason,
            access_count=row.access_count or 0,
            last_accessed_at=ensure_utc(row.last_accessed_at),
            request_id=row.request_id,
        )

    def _request_to_db(self, request: ConsentRequest) -> ConsentRequestDB:
        return ConsentRequestDB(
            id=request.id,
            patient_id=request.patient_id,
            provider_id=request.provider_id,
            requested_scope=_dump_scope(request.requested_scope),
            purpose=request.purpose,
            message=request.message,
            status=request.status.value,
            created_at=to_naive_utc(request.created_at),
            expires_at=to_naive_utc(request.expires_at),
            reviewed_at=to_naive_utc(request.reviewed_at),
            requested_expiry=to_naive_utc(request.requested_expiry),
            denied_reason=request.denied_reason,
            consent_id=request.consent_id,
            pending_slot=pair_key(request.patient_id, request.provider_id)
            if request.status == RequestStatus.PENDING else None,
        )

    def _request_from_db(self, row: ConsentRequestDB) -> ConsentRequest:
        return ConsentRequest(
            id=row.id,
            patient_id=row.patient_id,
            provider_id=row.provider_id,
            requested_scope=_load_scope(row.requested_scope),
            purpose=row.purpose,
            message=row.message,
            status=RequestStatus(row.status),
            created_at=ensure_utc(row.created_at),
            expires_at=ensure_utc(row.expires_at),
            reviewed_at=ensure_utc(row.reviewed_at),
            requested_expiry=ensure_utc(row.requested_expiry),
            denied_reason=row.denied_reason,
            consent_id=row.consent_id,
        )

    # ------------------------------------------------------------------
    # Slot housekeeping
    # ------------------------------------------------------------------

    @staticmethod
    def _release_expired_active_slot(session: Session, key: str, now: datetime) -> None:
        # Status stays ACTIVE; expiry is derived on read
        session.execute(
            update(ConsentDB)
            .where(ConsentDB.active_slot == key,
                   ConsentDB.expires_at.is_not(None),
                   ConsentDB.expires_at <= to_naive_utc(now))
            .values(active_slot=None)
        )

    @staticmethod
    def _release_expired_pending_slot(session: Session, key: str, now: datetime) -> None:
        session.execute(
            update(ConsentRequestDB)
            .where(ConsentRequestDB.pending_slot == key,
                   ConsentRequestDB.expires_at <= to_naive_utc(now))
            .values(pending_slot=None)
        )

    def _holder_of_active_slot(self, key: str) -> Optional[str]:
        with self.SessionLocal() as session:
            return session.execute(
                select(ConsentDB.id).where(ConsentDB.active_slot == key)
            ).scalar_one_or_none()

    def _holder_of_pending_slot(self, key: str) -> Optional[str]:
        with self.SessionLocal() as session:
            return session.execute(
                select(ConsentRequestDB.id).where(ConsentRequestDB.pending_slot == key)
            ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_request(self, request: ConsentRequest, now: datetime) -> ConsentRequest:
        """Store a new pending request, claiming the pair's pending slot"""
        key = pair_key(request.patient_id, request.provider_id)
        try:
            with self.SessionLocal() as session:
                self._release_expired_pending_slot(session, key, now)
                session.add(self._request_to_db(request))
                session.commit()

        except IntegrityError:
            existing_id = self._holder_of_pending_slot(key)
            logger.info("Rejected duplicate pending request",
                        patient_id=request.patient_id,
                        provider_id=request.provider_id,
                        existing_id=existing_id)
            raise ConflictError("A pending consent request already exists", existing_id=existing_id)

        logger.info("Stored consent request", request_id=request.id,
                    patient_id=request.patient_id, provider_id=request.provider_id)
        return request

    def insert_consent(self, consent: Consent, now: datetime) -> Consent:
        """Store a new active consent, claiming the pair's active slot"""
        key = pair_key(consent.patient_id, consent.provider_id)
        try:
            with self.SessionLocal() as session:
                self._release_expired_active_slot(session, key, now)
                session.add(self._consent_to_db(consent))
                session.commit()

        except IntegrityError:
            existing_id = self._holder_of_active_slot(key)
            logger.info("Rejected duplicate active consent",
                        patient_id=consent.patient_id,
                        provider_id=consent.provider_id,
                        existing_id=existing_id)
            raise ConflictError("An active consent already exists", existing_id=existing_id)

        logger.info("Stored consent", consent_id=consent.id,
                    patient_id=consent.patient_id, provider_id=consent.provider_id)
        return consent

    def approve_request(self, request_id: str, consent: Consent,
                        now: datetime) -> Tuple[ConsentRequest, Consent]:
        """Mark a pending request APPROVED and create its consent in one transaction"""
        key = pair_key(consent.patient_id, consent.provider_id)
        naive_now = to_naive_utc(now)
        try:
            with self.SessionLocal() as session:
                result = session.execute(
                    update(ConsentRequestDB)
                    .where(ConsentRequestDB.id == request_id,
                           ConsentRequestDB.status == RequestStatus.PENDING.value,
                           ConsentRequestDB.expires_at > naive_now)
                    .values(status=RequestStatus.APPROVED.value,
                            reviewed_at=naive_now,
                            consent_id=consent.id,
                            pending_slot=None)
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise StateError("Consent request is no longer pending")

                self._release_expired_active_slot(session, key, now)
                session.add(self._consent_to_db(consent))
                session.commit()

        except IntegrityError:
            existing_id = self._holder_of_active_slot(key)
            raise ConflictError("An active consent already exists", existing_id=existing_id)

        logger.info("Approved consent request", request_id=request_id, consent_id=consent.id)
        return self.get_request(request_id), consent

    def extend_request(self, request_id: str, expires_at: datetime, now: datetime) -> ConsentRequest:
        """Push an expired, still pending request's deadline out and reclaim its slot"""
        try:
            with self.SessionLocal() as session:
                row = session.get(ConsentRequestDB, request_id)
                if row is None:
                    raise NotFoundError("ConsentRequest", request_id)

                key = pair_key(row.patient_id, row.provider_id)
                result = session.execute(
                    update(ConsentRequestDB)
                    .where(ConsentRequestDB.id == request_id,
                           ConsentRequestDB.status == RequestStatus.PENDING.value)
                    .values(expires_at=to_naive_utc(expires_at), pending_slot=key)
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise StateError("Consent request is no longer pending")
                session.commit()

        except IntegrityError:
            raise ConflictError("Another pending consent request exists for this pair")

        logger.warning("Extended expired consent request",
                       request_id=request_id, expires_at=expires_at.isoformat())
        return self.get_request(request_id)

    def deny_request(self, request_id: str, reason: Optional[str], now: datetime) -> ConsentRequest:
        naive_now = to_naive_utc(now)
        with self.SessionLocal() as session:
            result = session.execute(
                update(ConsentRequestDB)
                .where(ConsentRequestDB.id == request_id,
                       ConsentRequestDB.status == RequestStatus.PENDING.value,
                       ConsentRequestDB.expires_at > naive_now)
                .values(status=RequestStatus.DENIED.value,
                        reviewed_at=naive_now,
                        denied_reason=reason,
                        pending_slot=None)
            )
            if result.rowcount != 1:
                session.rollback()
                raise StateError("Consent request is no longer pending")
            session.commit()

        logger.info("Denied consent request", request_id=request_id)
        return self.get_request(request_id)

    def revoke_consent(self, consent_id: str, reason: Optional[str], now: datetime) -> Consent:
        naive_now = to_naive_utc(now)
        with self.SessionLocal() as session:
            result = session.execute(
                update(ConsentDB)
                .where(ConsentDB.id == consent_id,
                       ConsentDB.status == ConsentStatus.ACTIVE.value,
                       or_(ConsentDB.expires_at.is_(None), ConsentDB.expires_at > naive_now))
                .values(status=ConsentStatus.REVOKED.value,
                        revoked_at=naive_now,
                        revoked_reason=reason,
                        active_slot=None)
            )
            if result.rowcount != 1:
                session.rollback()
                raise StateError("Consent is not active")
            session.commit()

        logger.info("Revoked consent", consent_id=consent_id)
        return self.get_consent(consent_id)

    def increment_access(self, consent_id: str, now: datetime) -> bool:
        """Atomic access counter bump"""
        with self.SessionLocal() as session:
            result = session.execute(
                update(ConsentDB)
                .where(ConsentDB.id == consent_id)
                .values(access_count=ConsentDB.access_count + 1,
                        last_accessed_at=to_naive_utc(now))
            )
            session.commit()
            return result.rowcount == 1

    def expire_stale_requests(self, now: datetime) -> int:
        """Mark pending requests past their deadline as EXPIRED"""
        with self.SessionLocal() as session:
            result = session.execute(
                update(ConsentRequestDB)
                .where(ConsentRequestDB.status == RequestStatus.PENDING.value,
                       ConsentRequestDB.expires_at <= to_naive_utc(now))
                .values(status=RequestStatus.EXPIRED.value, pending_slot=None)
            )
            session.commit()

        logger.info("Expired stale consent requests", count=result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_consent(self, consent_id: str) -> Optional[Consent]:
        with self.SessionLocal() as session:
            row = session.get(ConsentDB, consent_id)
            return self._consent_from_db(row) if row else None

    def get_request(self, request_id: str) -> Optional[ConsentRequest]:
        with self.SessionLocal() as session:
            row = session.get(ConsentRequestDB, request_id)
            return self._request_from_db(row) if row else None

    def list_active(self, patient_id: str, provider_id: str, now: datetime) -> List[Consent]:
        """ACTIVE, unexpired consents for a pair, newest first"""
        naive_now = to_naive_utc(now)
        with self.SessionLocal() as session:
            rows = session.execute(
                select(ConsentDB)
                .where(ConsentDB.patient_id == patient_id,
                       ConsentDB.provider_id == provider_id,
                       ConsentDB.status == ConsentStatus.ACTIVE.value,
                       or_(ConsentDB.expires_at.is_(None), ConsentDB.expires_at > naive_now))
                .order_by(ConsentDB.created_at.desc(), ConsentDB.id.desc())
            ).scalars().all()
            return [self._consent_from_db(row) for row in rows]

    def list_consents(self, patient_id: Optional[str] = None, provider_id: Optional[str] = None,
                      active_only: bool = False, now: Optional[datetime] = None) -> List[Consent]:
        stmt = select(ConsentDB)
        if patient_id:
            stmt = stmt.where(ConsentDB.patient_id == patient_id)
        if provider_id:
            stmt = stmt.where(ConsentDB.provider_id == provider_id)
        if active_only and now is not None:
            stmt = stmt.where(and_(
                ConsentDB.status == ConsentStatus.ACTIVE.value,
                or_(ConsentDB.expires_at.is_(None), ConsentDB.expires_at > to_naive_utc(now)),
            ))

        with self.SessionLocal() as session:
            rows = session.execute(stmt.order_by(ConsentDB.created_at.desc())).scalars().all()
            return [self._consent_from_db(row) for row in rows]

    def list_requests(self, patient_id: Optional[str] = None, provider_id: Optional[str] = None,
                      pending_only: bool = False, now: Optional[datetime] = None) -> List[ConsentRequest]:
        stmt = select(ConsentRequestDB)
        if patient_id:
            stmt = stmt.where(ConsentRequestDB.patient_id == patient_id)
        if provider_id:
            stmt = stmt.where(ConsentRequestDB.provider_id == provider_id)
        if pending_only and now is not None:
            stmt = stmt.where(ConsentRequestDB.status == RequestStatus.PENDING.value,
                              ConsentRequestDB.expires_at > to_naive_utc(now))

        with self.SessionLocal() as session:
            rows = session.execute(stmt.order_by(ConsentRequestDB.created_at.desc())).scalars().all()
            return [self._request_from_db(row) for row in rows]


class InMemoryConsentStorage(ConsentStorage):
    """In-memory storage for testing"""

    def __init__(self):
        self.consents: Dict[str, Consent] = {}
        self.requests: Dict[str, ConsentRequest] = {}
        self.active_slots: Dict[str, str] = {}
        self.pending_slots: Dict[str, str] = {}
        self._lock = threading.RLock()

    def _claim_active_slot(self, consent: Consent, now: datetime) -> None:
        key = pair_key(consent.patient_id, consent.provider_id)
        holder_id = self.active_slots.get(key)
        if holder_id:
            holder = self.consents[holder_id]
            if holder.is_expired(now):
                del self.active_slots[key]
            else:
                raise ConflictError("An active consent already exists", existing_id=holder_id)
        self.active_slots[key] = consent.id

    def insert_request(self, request: ConsentRequest, now: datetime) -> ConsentRequest:
        key = pair_key(request.patient_id, request.provider_id)
        with self._lock:
            holder_id = self.pending_slots.get(key)
            if holder_id:
                if self.requests[holder_id].expires_at <= now:
                    del self.pending_slots[key]
                else:
                    raise ConflictError("A pending consent request already exists", existing_id=holder_id)
            self.requests[request.id] = request
            self.pending_slots[key] = request.id
        return request

    def insert_consent(self, consent: Consent, now: datetime) -> Consent:
        with self._lock:
            self._claim_active_slot(consent, now)
            self.consents[consent.id] = consent
        return consent

    def _pending_request(self, request_id: str, now: datetime) -> ConsentRequest:
        request = self.requests.get(request_id)
        if request is None or request.status != RequestStatus.PENDING or request.expires_at <= now:
            raise StateError("Consent request is no longer pending")
        return request

    def approve_request(self, request_id: str, consent: Consent,
                        now: datetime) -> Tuple[ConsentRequest, Consent]:
        with self._lock:
            request = self._pending_request(request_id, now)
            self._claim_active_slot(consent, now)
            self.consents[consent.id] = consent

            approved = request.model_copy(update={
                "status": RequestStatus.APPROVED,
                "reviewed_at": now,
                "consent_id": consent.id,
            })
            self.requests[request_id] = approved
            self.pending_slots.pop(pair_key(request.patient_id, request.provider_id), None)
        return approved, consent

    def extend_request(self, request_id: str, expires_at: datetime, now: datetime) -> ConsentRequest:
        with self._lock:
            request = self.requests.get(request_id)
            if request is None:
                raise NotFoundError("ConsentRequest", request_id)
            if request.status != RequestStatus.PENDING:
                raise StateError("Consent request is no longer pending")

            key = pair_key(request.patient_id, request.provider_id)
            holder_id = self.pending_slots.get(key)
            if holder_id and holder_id != request_id and self.requests[holder_id].expires_at > now:
                raise ConflictError("Another pending consent request exists for this pair")

            extended = request.model_copy(update={"expires_at": expires_at})
            self.requests[request_id] = extended
            self.pending_slots[key] = request_id
        return extended

    def deny_request(self, request_id: str, reason: Optional[str], now: datetime) -> ConsentRequest:
        with self._lock:
            request = self._pending_request(request_id, now)
            denied = request.model_copy(update={
                "status": RequestStatus.DENIED,
                "reviewed_at": now,
                "denied_reason": reason,
            })
            self.requests[request_id] = denied
            self.pending_slots.pop(pair_key(request.patient_id, request.provider_id), None)
        return denied

    def revoke_consent(self, consent_id: str, reason: Optional[str], now: datetime) -> Consent:
        with self._lock:
            consent = self.consents.get(consent_id)
            if consent is None or not consent.is_active(now):
                raise StateError("Consent is not active")

            revoked = consent.model_copy(update={
                "status": ConsentStatus.REVOKED,
                "revoked_at": now,
                "revoked_reason": reason,
            })
            self.consents[consent_id] = revoked
            key = pair_key(consent.patient_id, consent.provider_id)
            if self.active_slots.get(key) == consent_id:
                del self.active_slots[key]
        return revoked

    def increment_access(self, consent_id: str, now: datetime) -> bool:
        with self._lock:
            consent = self.consents.get(consent_id)
            if consent is None:
                return False
            self.consents[consent_id] = consent.model_copy(update={
                "access_count": consent.access_count + 1,
                "last_accessed_at": now,
            })
        return True

    def expire_stale_requests(self, now: datetime) -> int:
        count = 0
        with self._lock:
            for request_id, request in list(self.requests.items()):
                if request.status == RequestStatus.PENDING and request.expires_at <= now:
                    self.requests[request_id] = request.model_copy(update={"status": RequestStatus.EXPIRED})
                    key = pair_key(request.patient_id, request.provider_id)
                    if self.pending_slots.get(key) == request_id:
                        del self.pending_slots[key]
                    count += 1
        return count

    def get_consent(self, consent_id: str) -> Optional[Consent]:
        with self._lock:
            return self.consents.get(consent_id)

    def get_request(self, request_id: str) -> Optional[ConsentRequest]:
        with self._lock:
            return self.requests.get(request_id)

    def list_active(self, patient_id: str, provider_id: str, now: datetime) -> List[Consent]:
        with self._lock:
            matching = [
                c for c in self.consents.values()
                if c.patient_id == patient_id and c.provider_id == provider_id and c.is_active(now)
            ]
        return sorted(matching, key=lambda c: (c.created_at, c.id), reverse=True)

    def list_consents(self, patient_id: Optional[str] = None, provider_id: Optional[str] = None,
                      active_only: bool = False, now: Optional[datetime] = None) -> List[Consent]:
        with self._lock:
            consents = list(self.consents.values())
        if patient_id:
            consents = [c for c in consents if c.patient_id == patient_id]
        if provider_id:
            consents = [c for c in consents if c.provider_id == provider_id]
        if active_only and now is not None:
            consents = [c for c in consents if c.is_active(now)]
        return sorted(consents, key=lambda c: c.created_at, reverse=True)

    def list_requests(self, patient_id: Optional[str] = None, provider_id: Optional[str] = None,
                      pending_only: bool = False, now: Optional[datetime] = None) -> List[ConsentRequest]:
        with self._lock:
            requests = list(self.requests.values())
        if patient_id:
            requests = [r for r in requests if r.patient_id == patient_id]
        if provider_id:
            requests = [r for r in requests if r.provider_id == provider_id]
        if pending_only and now is not None:
            requests = [r for r in requests if r.is_pending(now)]
        return sorted(requests, key=lambda r: r.created_at, reverse=True)
