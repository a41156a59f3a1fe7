"""
Emergency share storage adapters for CuraNet
"""

from datetime import datetime
from typing import Dict, List, Optional
import json
import threading
import structlog
from sqlalchemy import Boolean, Column, DateTime, Index, String, Text, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .models import EmergencyShare
from ..utils.clock import ensure_utc, to_naive_utc
from ..utils.db import build_engine

logger = structlog.get_logger(__name__)

Base = declarative_base()


class EmergencyShareDB(Base):
    """SQLAlchemy model for emergency shares"""
    __tablename__ = "emergency_shares"

    id = Column(String, primary_key=True)
    patient_id = Column(String, nullable=False, index=True)
    token_hash = Column(String, nullable=False)
    scope = Column(Text, nullable=False)  # JSON list
    created_by = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime)
    accessed_by = Column(String)
    access_ip = Column(String)
    access_user_agent = Column(Text)

    __table_args__ = (
        Index("ix_emergency_shares_used_expires", "used", "expires_at"),
    )


class EmergencyShareStorage:
    """Storage adapter for emergency shares"""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        self.engine = engine or build_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)

        # Create tables
        Base.metadata.create_all(bind=self.engine)

    def _to_db_model(self, share: EmergencyShare) -> EmergencyShareDB:
        return EmergencyShareDB(
            id=share.id,
            patient_id=share.patient_id,
            token_hash=share.token_hash,
            scope=json.dumps(share.scope),
            created_by=share.created_by,
            created_at=to_naive_utc(share.created_at),
            expires_at=to_naive_utc(share.expires_at),
            used=share.used,
            used_at=to_naive_utc(share.used_at),
            accessed_by=share.accessed_by,
            access_ip=share.access_ip,
            access_user_agent=share.access_user_agent,
        )

    def _from_db_model(self, row: EmergencyShareDB) -> EmergencyShare:
        return EmergencyShare(
            id=row.id,
            patient_id=row.patient_id,
            token_hash=row.token_hash,
            scope=json.loads(row.scope),
            created_by=row.created_by,
            created_at=ensure_utc(row.created_at),
            expires_at=ensure_utc(row.expires_at),
            used=bool(row.used),
            used_at=ensure_utc(row.used_at),
            accessed_by=row.accessed_by,
            access_ip=row.access_ip,
            access_user_agent=row.access_user_agent,
        )

    def _select(self, *criteria) -> List[EmergencyShare]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(EmergencyShareDB).where(*criteria).order_by(EmergencyShareDB.created_at.desc())
            ).scalars().all()
            return [self._from_db_model(row) for row in rows]

    def insert(self, share: EmergencyShare) -> EmergencyShare:
        with self.SessionLocal() as session:
            session.add(self._to_db_model(share))
            session.commit()

        logger.info("Stored emergency share", share_id=share.id, patient_id=share.patient_id)
        return share

    def get(self, share_id: str) -> Optional[EmergencyShare]:
        with self.SessionLocal() as session:
            row = session.get(EmergencyShareDB, share_id)
            return self._from_db_model(row) if row else None

    def redeemable(self, now: datetime) -> List[EmergencyShare]:
        """Unused shares that have not expired"""
        return self._select(EmergencyShareDB.used.is_(False),
                            EmergencyShareDB.expires_at > to_naive_utc(now))

    def used_unexpired(self, now: datetime) -> List[EmergencyShare]:
        return self._select(EmergencyShareDB.used.is_(True),
                            EmergencyShareDB.expires_at > to_naive_utc(now))

    def expired_unused(self, now: datetime, since: datetime) -> List[EmergencyShare]:
        return self._select(EmergencyShareDB.used.is_(False),
                            EmergencyShareDB.expires_at <= to_naive_utc(now),
                            EmergencyShareDB.expires_at > to_naive_utc(since))

    def mark_used(self, share_id: str, now: datetime, accessed_by: str,
                  access_ip: Optional[str] = None, access_user_agent: Optional[str] = None) -> bool:
        """Flip used on an unused, unexpired share; False if someone got there first"""
        naive_now = to_naive_utc(now)
        with self.SessionLocal() as session:
            result = session.execute(
                update(EmergencyShareDB)
                .where(EmergencyShareDB.id == share_id,
                       EmergencyShareDB.used.is_(False),
                       EmergencyShareDB.expires_at > naive_now)
                .values(used=True,
                        used_at=naive_now,
                        accessed_by=accessed_by,
                        access_ip=access_ip,
                        access_user_agent=access_user_agent)
            )
            session.commit()
            return result.rowcount == 1

    def list_for_patient(self, patient_id: str, now: datetime) -> List[EmergencyShare]:
        """Patient's shares that have not expired, newest first"""
        return self._select(EmergencyShareDB.patient_id == patient_id,
                            EmergencyShareDB.expires_at > to_naive_utc(now))


class InMemoryEmergencyShareStorage(EmergencyShareStorage):
    """In-memory storage for testing"""

    def __init__(self):
        self.shares: Dict[str, EmergencyShare] = {}
        self._lock = threading.Lock()

    def _filter(self, predicate) -> List[EmergencyShare]:
        with self._lock:
            matching = [s for s in self.shares.values() if predicate(s)]
        return sorted(matching, key=lambda s: s.created_at, reverse=True)

    def insert(self, share: EmergencyShare) -> EmergencyShare:
        with self._lock:
            self.shares[share.id] = share
        return share

    def get(self, share_id: str) -> Optional[EmergencyShare]:
        with self._lock:
            return self.shares.get(share_id)

    def redeemable(self, now: datetime) -> List[EmergencyShare]:
        return self._filter(lambda s: not s.used and s.expires_at > now)

    def used_unexpired(self, now: datetime) -> List[EmergencyShare]:
        return self._filter(lambda s: s.used and s.expires_at > now)

    def expired_unused(self, now: datetime, since: datetime) -> List[EmergencyShare]:
        return self._filter(lambda s: not s.used and since < s.expires_at <= now)

    def mark_used(self, share_id: str, now: datetime, accessed_by: str,
                  access_ip: Optional[str] = None, access_user_agent: Optional[str] = None) -> bool:
        with self._lock:
            share = self.shares.get(share_id)
            if share is None or share.used or share.expires_at <= now:
                return False
            self.shares[share_id] = share.model_copy(update={
                "used": True,
                "used_at": now,
                "accessed_by": accessed_by,
                "access_ip": access_ip,
                "access_user_agent": access_user_agent,
            })
            return True

    def list_for_patient(self, patient_id: str, now: datetime) -> List[EmergencyShare]:
        return self._filter(lambda s: s.patient_id == patient_id and s.expires_at > now)
