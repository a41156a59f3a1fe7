"""
Emergency (break-glass) share models for CuraNet
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol
import threading
from pydantic import BaseModel, Field

from ..constants import REVOKED_BY_PATIENT, EmergencyScopes
from ..utils.ids import generate_share_id

EMERGENCY_NOTICE = "This data was accessed via emergency share link"
NOT_PROVIDED = "Not provided"
NONE_SPECIFIED = "None specified"


class ShareState(str, Enum):
    """Lifecycle of an emergency share; everything but CREATED is terminal"""
    CREATED = "CREATED"
    USED = "USED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class EmergencyShare(BaseModel):
    """A single-use, time-boxed bearer link to a patient's emergency data"""
    id: str = Field(default_factory=generate_share_id)
    patient_id: str
    token_hash: str = Field(..., description="bcrypt hash; the raw token is never stored")
    scope: List[str]
    created_by: str
    created_at: datetime
    expires_at: datetime

    used: bool = False
    used_at: Optional[datetime] = None
    accessed_by: Optional[str] = None
    access_ip: Optional[str] = None
    access_user_agent: Optional[str] = None

    def state(self, now: datetime) -> ShareState:
        # A used share stays used even after its expiry passes
        if self.used:
            return ShareState.REVOKED if self.accessed_by == REVOKED_BY_PATIENT else ShareState.USED
        if self.expires_at <= now:
            return ShareState.EXPIRED
        return ShareState.CREATED

    def public_view(self) -> Dict[str, Any]:
        """Share details safe to show the patient"""
        return self.model_dump(mode="json", exclude={"token_hash"})


class ShareCreated(BaseModel):
    """Returned once at creation; the only place the raw token ever appears"""
    share_id: str
    raw_token: str
    scope: List[str]
    expires_at: datetime


class EmergencyProfile(BaseModel):
    """Emergency-relevant slice of a patient's health profile"""
    patient_id: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    blood_group: Optional[str] = None
    allergies: List[str] = Field(default_factory=list)
    chronic_conditions: List[str] = Field(default_factory=list)
    emergency_contact: Optional[Dict[str, str]] = None
    current_medications: List[str] = Field(default_factory=list)
    medical_conditions: List[str] = Field(default_factory=list)


class EmergencyData(BaseModel):
    """Scope-filtered data handed to an anonymous redeemer"""
    share_id: str
    patient_id: str
    scope: List[str]
    accessed_at: datetime
    data: Dict[str, Any]
    warning: str = "This is emergency access. Access has been logged for security purposes."


class EmergencyProfileSource(Protocol):
    def get_profile(self, patient_id: str) -> Optional[EmergencyProfile]:
        ...


class InMemoryEmergencyProfileSource:
    """Profile source backed by a dict, for tests and demos"""

    def __init__(self):
        self._profiles: Dict[str, EmergencyProfile] = {}
        self._lock = threading.Lock()

    def put(self, profile: EmergencyProfile) -> None:
        with self._lock:
            self._profiles[profile.patient_id] = profile

    def get_profile(self, patient_id: str) -> Optional[EmergencyProfile]:
        with self._lock:
            return self._profiles.get(patient_id)


def extract_emergency_data(patient_id: str, profile: Optional[EmergencyProfile],
                           scope: List[str]) -> Dict[str, Any]:
    """
    Select the profile fields a share's scope allows.

    ``emergency`` covers basic info, blood group, allergies, chronic
    conditions and the emergency contact. Medications and medical
    conditions must be named explicitly.
    """
    scopes = set(scope)
    critical = EmergencyScopes.EMERGENCY in scopes
    profile = profile or EmergencyProfile(patient_id=patient_id)

    data: Dict[str, Any] = {
        "emergency_access_notice": EMERGENCY_NOTICE,
        "patient_id": patient_id,
    }

    if critical or EmergencyScopes.BASIC in scopes:
        data["basic_info"] = {
            "name": profile.full_name or NOT_PROVIDED,
            "patient_id": patient_id,
            "phone": profile.phone or NOT_PROVIDED,
        }

    if critical or EmergencyScopes.BLOOD_GROUP in scopes:
        data["blood_group"] = profile.blood_group or "Not specified"

    if critical or EmergencyScopes.ALLERGIES in scopes:
        data["allergies"] = profile.allergies or "No known allergies"

    if critical or EmergencyScopes.CHRONIC_CONDITIONS in scopes:
        data["chronic_conditions"] = profile.chronic_conditions or NONE_SPECIFIED

    if critical or EmergencyScopes.EMERGENCY_CONTACT in scopes:
        data["emergency_contact"] = profile.emergency_contact or NOT_PROVIDED

    if EmergencyScopes.MEDICATIONS in scopes:
        data["current_medications"] = profile.current_medications or NONE_SPECIFIED

    if EmergencyScopes.MEDICAL_CONDITIONS in scopes:
        data["medical_conditions"] = profile.medical_conditions or NONE_SPECIFIED

    return data
