"""
Consent data models for CuraNet
Patient-to-provider consent grants and the requests that lead to them
"""

from datetime import datetime
from enum import Enum
import json
from typing import FrozenSet, Optional
from pydantic import BaseModel, Field

from ..utils.ids import generate_consent_id, generate_request_id


class ConsentScope(str, Enum):
    """Permission units a consent can grant"""
    READ_BASIC = "READ_BASIC"                  # Demographics, contact details
    READ_MEDICAL = "READ_MEDICAL"              # Encounters, diagnoses, history
    READ_LAB = "READ_LAB"                      # Lab results, observations
    READ_RADIOLOGY = "READ_RADIOLOGY"          # Imaging files and reports
    WRITE_PRESCRIPTION = "WRITE_PRESCRIPTION"
    WRITE_NOTES = "WRITE_NOTES"                # Clinical notes on encounters
    EMERGENCY_ACCESS = "EMERGENCY_ACCESS"

    @property
    def is_read(self) -> bool:
        return self.value.startswith("READ_")


class AccessAction(str, Enum):
    """Kind of operation a caller wants to perform"""
    READ = "READ"
    WRITE = "WRITE"


class ConsentStatus(str, Enum):
    """Stored consent status. EXPIRED is only ever derived."""
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class RequestStatus(str, Enum):
    """Consent request status"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    EXPIRED = "EXPIRED"


def pair_key(patient_id: str, provider_id: str) -> str:
    """Uniqueness slot value for a (patient, provider) pair"""
    # IDs may contain any separator, so encode the pair as a JSON array
    return json.dumps([patient_id, provider_id], separators=(",", ":"))


class Consent(BaseModel):
    """A patient's scoped, time-bounded grant of access to one provider"""
    id: str = Field(default_factory=generate_consent_id)
    patient_id: str = Field(..., description="Patient whose data is shared")
    provider_id: str = Field(..., description="Provider receiving access")
    scope: FrozenSet[ConsentScope] = Field(..., description="Granted permissions")
    purpose: str = Field(..., description="Purpose of data access")
    status: ConsentStatus = Field(default=ConsentStatus.ACTIVE)

    created_at: datetime
    expires_at: Optional[datetime] = Field(default=None, description="None means no expiry")
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    access_count: int = 0
    last_accessed_at: Optional[datetime] = None

    request_id: Optional[str] = Field(default=None, description="Originating consent request")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def effective_status(self, now: datetime) -> ConsentStatus:
        """Status with expiry applied live; stored ACTIVE may read as EXPIRED"""
        if self.status == ConsentStatus.ACTIVE and self.is_expired(now):
            return ConsentStatus.EXPIRED
        return self.status

    def is_active(self, now: datetime) -> bool:
        return self.effective_status(now) == ConsentStatus.ACTIVE

    def covers(self, required: FrozenSet[ConsentScope]) -> bool:
        """Strict subset check, no fallback rules"""
        return set(required).issubset(self.scope)


class ConsentRequest(BaseModel):
    """A provider's request for consent, reviewed by the patient"""
    id: str = Field(default_factory=generate_request_id)
    patient_id: str
    provider_id: str
    requested_scope: FrozenSet[ConsentScope]
    purpose: str
    message: Optional[str] = None
    status: RequestStatus = Field(default=RequestStatus.PENDING)

    created_at: datetime
    expires_at: datetime
    reviewed_at: Optional[datetime] = None
    requested_expiry: Optional[datetime] = Field(
        default=None, description="Consent expiry the provider asked for"
    )
    denied_reason: Optional[str] = None
    consent_id: Optional[str] = None

    def effective_status(self, now: datetime) -> RequestStatus:
        if self.status == RequestStatus.PENDING and self.expires_at <= now:
            return RequestStatus.EXPIRED
        return self.status

    def is_pending(self, now: datetime) -> bool:
        return self.effective_status(now) == RequestStatus.PENDING
