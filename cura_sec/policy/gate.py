"""
Access gate for CuraNet
Every patient-data read or write passes through enforce()
"""

from datetime import datetime
from typing import Iterable, List, Optional
import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..audit import AccessMetadata, AuditAction, AuditLog
from ..config import SecurityConfig, get_security_config
from ..consent.authority import ConsentAuthority, Decision
from ..consent.models import AccessAction
from ..exceptions import AuditWriteError, AuthorizationError, ValidationError
from ..utils.ids import generate_authorization_token_id
from ..utils.validators import validate_actor_id, validate_scopes

logger = structlog.get_logger(__name__)

RECORD_ACTION_MAP = {
    AuditAction.RECORD_READ: AccessAction.READ,
    AuditAction.RECORD_CREATE: AccessAction.WRITE,
    AuditAction.RECORD_UPDATE: AccessAction.WRITE,
    AuditAction.RECORD_DELETE: AccessAction.WRITE,
}


class AuthorizationToken(BaseModel):
    """Proof that an access decision was permitted and audited"""
    model_config = ConfigDict(frozen=True)

    token_id: str = Field(default_factory=generate_authorization_token_id)
    actor_id: str
    actor_role: Optional[str] = None
    patient_id: str
    consent_id: str
    scopes: List[str]
    action: AuditAction
    resource_type: str
    resource_id: str
    audit_entry_id: str
    issued_at: datetime
    privileged: bool = False
    audit_pending: bool = Field(default=False, description="Audit entry queued, not yet written")


class AccessGate:
    """Enforcement point combining the authority decision with its audit entry"""

    def __init__(self, authority: ConsentAuthority, audit_log: AuditLog,
                 config: Optional[SecurityConfig] = None):
        self.authority = authority
        self.audit_log = audit_log
        self.config = config or get_security_config()

    def _fail_open(self, access_action: AccessAction) -> bool:
        if access_action == AccessAction.READ:
            return self.config.audit_fail_open_reads
        return self.config.audit_fail_open_writes

    def enforce(self, actor_id: str, actor_role: Optional[str], patient_id: str,
                required_scopes: Iterable, action: AuditAction,
                resource_type: str, resource_id: str,
                ip_address: Optional[str] = None,
                user_agent: Optional[str] = None) -> AuthorizationToken:
        """
        Decide, audit, then report.

        The audit entry is written (or, for fail-open reads and for denials,
        queued) before the outcome is returned.

        Raises:
            AuthorizationError: the decision denied access
            AuditWriteError: a permit could not be audited and the action fails closed
        """
        actor_id = validate_actor_id(actor_id, "actor_id")
        patient_id = validate_actor_id(patient_id, "patient_id")
        required = validate_scopes(required_scopes, field_name="required_scopes")
        action = AuditAction(action)
        if action not in RECORD_ACTION_MAP:
            raise ValidationError(f"{action.value} is not a record action", field="action")
        access_action = RECORD_ACTION_MAP[action]
        scope_names = sorted(s.value for s in required)

        decision = self.authority.decide(actor_id, patient_id, required, access_action,
                                         actor_role=actor_role)

        entry = self.audit_log.build_entry(
            subject_id=patient_id,
            actor_id=actor_id,
            actor_role=actor_role,
            action=action if decision.permit else AuditAction.ACCESS_DENIED,
            resource_type=resource_type,
            resource_id=resource_id,
            consent_id=decision.consent_id,
            reason=None if decision.permit else decision.reason.value,
            metadata=AccessMetadata(
                actor_role=actor_role,
                access_action=access_action.value,
                required_scopes=scope_names,
                decision_path=decision.path,
                privileged=decision.privileged,
                requested_action=action.value,
            ),
            ip_address=ip_address,
            user_agent=user_agent,
        )

        audit_pending = False
        try:
            self.audit_log.append(entry)
        except AuditWriteError:
            if not decision.permit:
                self.audit_log.defer(entry)
            elif self._fail_open(access_action):
                self.audit_log.defer(entry)
                audit_pending = True
                logger.warning("Permitting access with audit pending",
                               actor_id=actor_id,
                               patient_id=patient_id,
                               action=action.value,
                               audit_id=entry.id)
            else:
                logger.error("Refusing access, audit unavailable",
                             actor_id=actor_id,
                             patient_id=patient_id,
                             action=action.value)
                raise

        if not decision.permit:
            self._log_denial(actor_id, patient_id, scope_names, decision)
            raise AuthorizationError(decision.reason, required_scopes=scope_names,
                                     consent_id=decision.consent_id)

        logger.info("Access permitted",
                    actor_id=actor_id,
                    patient_id=patient_id,
                    action=action.value,
                    consent_id=decision.consent_id,
                    path=decision.path)

        return AuthorizationToken(
            actor_id=actor_id,
            actor_role=actor_role,
            patient_id=patient_id,
            consent_id=decision.consent_id,
            scopes=scope_names,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            audit_entry_id=entry.id,
            issued_at=entry.timestamp,
            privileged=decision.privileged,
            audit_pending=audit_pending,
        )

    @staticmethod
    def _log_denial(actor_id: str, patient_id: str, scopes: List[str], decision: Decision) -> None:
        logger.info("Access denied",
                    actor_id=actor_id,
                    patient_id=patient_id,
                    scopes=scopes,
                    reason=decision.reason.value)
