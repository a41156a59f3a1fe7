"""
Audit data models for CuraNet
Immutable record of every access decision and consent mutation
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .metadata import AuditMetadata, GenericMetadata, dump_metadata, parse_metadata
from ..crypto.hash import canonical_json, chain_hash
from ..utils.ids import generate_audit_id


class AuditAction(str, Enum):
    """Types of audited actions"""
    # Record access through the gate
    RECORD_READ = "RECORD_READ"
    RECORD_CREATE = "RECORD_CREATE"
    RECORD_UPDATE = "RECORD_UPDATE"
    RECORD_DELETE = "RECORD_DELETE"
    ACCESS_DENIED = "ACCESS_DENIED"

    # Consent lifecycle
    CONSENT_REQUESTED = "CONSENT_REQUESTED"
    CONSENT_GRANTED = "CONSENT_GRANTED"
    CONSENT_REQUEST_DENIED = "CONSENT_REQUEST_DENIED"
    CONSENT_REVOKED = "CONSENT_REVOKED"

    # Break-glass access
    EMERGENCY_SHARE_CREATED = "EMERGENCY_SHARE_CREATED"
    EMERGENCY_SHARE_REVOKED = "EMERGENCY_SHARE_REVOKED"
    EMERGENCY_ACCESS_GRANTED = "EMERGENCY_ACCESS_GRANTED"
    EMERGENCY_ACCESS_FAILED = "EMERGENCY_ACCESS_FAILED"

    # Audit trail itself
    AUDIT_EXPORTED = "AUDIT_EXPORTED"


RECORD_ACTIONS = frozenset({
    AuditAction.RECORD_READ,
    AuditAction.RECORD_CREATE,
    AuditAction.RECORD_UPDATE,
    AuditAction.RECORD_DELETE,
})

# Actions that are meaningless without a stated reason
REASON_REQUIRED = frozenset({
    AuditAction.ACCESS_DENIED,
    AuditAction.EMERGENCY_ACCESS_GRANTED,
    AuditAction.EMERGENCY_ACCESS_FAILED,
})


class AuditEntry(BaseModel):
    """Individual audit entry"""
    id: str = Field(default_factory=generate_audit_id)
    subject_id: str = Field(..., description="Whose data")
    actor_id: str = Field(..., description="Who acted")
    actor_role: Optional[str] = None
    action: AuditAction

    resource_type: str
    resource_id: str
    consent_id: Optional[str] = None
    reason: Optional[str] = None
    metadata: AuditMetadata = Field(default_factory=GenericMetadata)

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime

    # Integrity
    sequence: Optional[int] = None
    previous_hash: Optional[str] = None
    hash: Optional[str] = None

    @field_validator("metadata", mode="before")
    @classmethod
    def _load_metadata(cls, value: Any) -> Any:
        return parse_metadata(value)

    @model_validator(mode="after")
    def _check_reason(self) -> "AuditEntry":
        if self.action in REASON_REQUIRED and not self.reason:
            raise ValueError(f"{self.action.value} entries require a reason")
        return self

    def to_audit_string(self) -> str:
        """Convert to string for hashing"""
        audit_data: Dict[str, Any] = {
            "id": self.id,
            "subject_id": self.subject_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "action": self.action.value,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "consent_id": self.consent_id,
            "reason": self.reason,
            "metadata": dump_metadata(self.metadata),
            "ip_address": self.ip_address,
            "timestamp": self.timestamp.isoformat(),
        }
        return canonical_json(audit_data)

    def compute_hash(self, previous_hash: str) -> str:
        """Compute hash for integrity verification"""
        return chain_hash(previous_hash, self.to_audit_string())


class AuditFilters(BaseModel):
    """Query filters over the audit trail"""
    actor_id: Optional[str] = None
    subject_id: Optional[str] = None
    action: Optional[AuditAction] = None
    consent_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def matches(self, entry: AuditEntry) -> bool:
        if self.actor_id and entry.actor_id != self.actor_id:
            return False
        if self.subject_id and entry.subject_id != self.subject_id:
            return False
        if self.action and entry.action != self.action:
            return False
        if self.consent_id and entry.consent_id != self.consent_id:
            return False
        if self.start and entry.timestamp < self.start:
            return False
        if self.end and entry.timestamp > self.end:
            return False
        return True


class AuditPage(BaseModel):
    """One page of audit query results, newest first"""
    entries: List[AuditEntry]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        if self.total == 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size


class AuditSummary(BaseModel):
    total: int
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None
    actions: List[str] = Field(default_factory=list)
