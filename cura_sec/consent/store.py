"""
Consent store for CuraNet
Lifecycle operations on consents and consent requests
"""

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable, List, Optional
import structlog

from .models import (
    Consent,
    ConsentRequest,
    ConsentStatus,
    RequestStatus,
)
from .storage import ConsentStorage
from ..config import PolicyConfiguration, SecurityConfig, get_security_config
from ..exceptions import ConflictError, NotFoundError, StateError, ValidationError
from ..utils.clock import Clock, SystemClock, ensure_utc
from ..utils.validators import sanitize_audit_message, validate_actor_id, validate_scopes

if TYPE_CHECKING:
    from ..policy.identity import IdentityResolver

logger = structlog.get_logger(__name__)


class ConsentStore:
    """
    System of record for consents and consent requests.

    Uniqueness rules are enforced by the storage adapter at write time;
    the checks here only produce clearer errors for the common cases.
    """

    def __init__(self, storage: Optional[ConsentStorage] = None,
                 identity_resolver: Optional["IdentityResolver"] = None,
                 clock: Optional[Clock] = None,
                 policy: Optional[PolicyConfiguration] = None,
                 config: Optional[SecurityConfig] = None):
        self.config = config or get_security_config()
        self.storage = storage or ConsentStorage(self.config.database_url)
        self.identity_resolver = identity_resolver
        self.clock = clock or SystemClock()
        self.policy = policy or PolicyConfiguration.from_config(self.config)

    def _validate_purpose(self, purpose: str) -> str:
        if not purpose or not purpose.strip():
            raise ValidationError("purpose is required", field="purpose")
        return sanitize_audit_message(purpose.strip())

    def _validate_future(self, value: Optional[datetime], now: datetime,
                         field_name: str = "expires_at") -> Optional[datetime]:
        value = ensure_utc(value)
        if value is not None and value <= now:
            raise ValidationError(f"{field_name} must be in the future", field=field_name)
        return value

    def _require_patient(self, patient_id: str) -> None:
        if self.identity_resolver is None:
            return
        identity = self.identity_resolver.resolve(patient_id)
        if identity is None or not identity.active or not identity.is_patient:
            raise NotFoundError("Patient", patient_id)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def create_request(self, patient_id: str, provider_id: str, scope: Iterable,
                       purpose: str, message: Optional[str] = None,
                       requested_expiry: Optional[datetime] = None) -> ConsentRequest:
        """
        Open a consent request from a provider to a patient.

        Raises:
            NotFoundError: patient_id is not a known, active patient
            ConflictError: the pair already has a pending request or an active consent
        """
        patient_id = validate_actor_id(patient_id, "patient_id")
        provider_id = validate_actor_id(provider_id, "provider_id")
        requested_scope = validate_scopes(scope)
        purpose = self._validate_purpose(purpose)
        now = self.clock.now()
        requested_expiry = self._validate_future(requested_expiry, now, "requested_expiry")

        if patient_id == provider_id:
            raise ValidationError("A provider cannot request consent from themselves", field="provider_id")

        self._require_patient(patient_id)

        active = self.storage.list_active(patient_id, provider_id, now)
        if active:
            raise ConflictError("An active consent already exists", existing_id=active[0].id)

        request = ConsentRequest(
            patient_id=patient_id,
            provider_id=provider_id,
            requested_scope=requested_scope,
            purpose=purpose,
            message=sanitize_audit_message(message),
            created_at=now,
            expires_at=now + timedelta(hours=self.config.consent_request_ttl_hours),
            requested_expiry=requested_expiry,
        )
        return self.storage.insert_request(request, now)

    def _reviewable_request(self, request_id: str, patient_id: str, now: datetime) -> ConsentRequest:
        request = self.storage.get_request(request_id)
        if request is None or request.patient_id != patient_id:
            raise NotFoundError("ConsentRequest", request_id)

        if request.status != RequestStatus.PENDING:
            raise StateError(f"Consent request is {request.status.value.lower()}",
                             current_state=request.status.value)

        if request.expires_at <= now:
            if not self.policy.auto_extend_expired_requests:
                raise StateError("Consent request has expired", current_state=RequestStatus.EXPIRED.value)

            new_expiry = now + timedelta(hours=self.policy.request_extension_hours)
            logger.warning("Auto-extending expired consent request",
                           request_id=request_id,
                           expired_at=request.expires_at.isoformat(),
                           new_expiry=new_expiry.isoformat())
            request = self.storage.extend_request(request_id, new_expiry, now)

        return request

    def approve_request(self, request_id: str, patient_id: str,
                        granted_scope: Optional[Iterable] = None,
                        expires_at: Optional[datetime] = None) -> Consent:
        """
        Approve a pending request and create the consent it asked for.

        The patient may narrow the scope but never widen it.
        """
        now = self.clock.now()
        request = self._reviewable_request(request_id, patient_id, now)

        scope = request.requested_scope
        if granted_scope is not None:
            scope = validate_scopes(granted_scope, field_name="granted_scope")
            if not scope.issubset(request.requested_scope):
                raise ValidationError(
                    "granted_scope must be a subset of the requested scope",
                    field="granted_scope",
                    details={"requested_scope": sorted(s.value for s in request.requested_scope)},
                )

        expiry = self._validate_future(expires_at or request.requested_expiry, now)

        consent = Consent(
            patient_id=request.patient_id,
            provider_id=request.provider_id,
            scope=scope,
            purpose=request.purpose,
            created_at=now,
            expires_at=expiry,
            request_id=request.id,
        )
        _, consent = self.storage.approve_request(request.id, consent, now)

        logger.info("Granted consent from request", consent_id=consent.id, request_id=request.id,
                    patient_id=consent.patient_id, provider_id=consent.provider_id)
        return consent

    def deny_request(self, request_id: str, patient_id: str,
                     reason: Optional[str] = None) -> ConsentRequest:
        now = self.clock.now()
        request = self._reviewable_request(request_id, patient_id, now)
        return self.storage.deny_request(request.id, sanitize_audit_message(reason), now)

    # ------------------------------------------------------------------
    # Consents
    # ------------------------------------------------------------------

    def grant_direct(self, patient_id: str, provider_id: str, scope: Iterable,
                     purpose: str, expires_at: Optional[datetime] = None) -> Consent:
        """
        Grant consent without a preceding request.

        Raises:
            ConflictError: the pair already holds an active consent
        """
        patient_id = validate_actor_id(patient_id, "patient_id")
        provider_id = validate_actor_id(provider_id, "provider_id")
        now = self.clock.now()

        consent = Consent(
            patient_id=patient_id,
            provider_id=provider_id,
            scope=validate_scopes(scope),
            purpose=self._validate_purpose(purpose),
            created_at=now,
            expires_at=self._validate_future(expires_at, now),
        )
        consent = self.storage.insert_consent(consent, now)

        logger.info("Granted consent", consent_id=consent.id,
                    patient_id=patient_id, provider_id=provider_id)
        return consent

    def revoke(self, consent_id: str, patient_id: str, reason: Optional[str] = None) -> Consent:
        """REVOKED is terminal"""
        now = self.clock.now()
        consent = self.storage.get_consent(consent_id)
        if consent is None or consent.patient_id != patient_id:
            raise NotFoundError("Consent", consent_id)

        status = consent.effective_status(now)
        if status != ConsentStatus.ACTIVE:
            raise StateError(f"Consent is {status.value.lower()}", current_state=status.value)

        return self.storage.revoke_consent(consent_id, sanitize_audit_message(reason), now)

    def list_active(self, patient_id: str, provider_id: str) -> List[Consent]:
        """Every live consent for the pair, newest first"""
        return self.storage.list_active(patient_id, provider_id, self.clock.now())

    def find_active(self, patient_id: str, provider_id: str) -> Optional[Consent]:
        active = self.list_active(patient_id, provider_id)
        if not active:
            return None
        if len(active) > 1:
            logger.warning("Multiple active consents for pair",
                           patient_id=patient_id,
                           provider_id=provider_id,
                           consent_ids=[c.id for c in active])
        return active[0]

    def increment_access(self, consent_id: str) -> bool:
        return self.storage.increment_access(consent_id, self.clock.now())

    def get_consent(self, consent_id: str) -> Optional[Consent]:
        return self.storage.get_consent(consent_id)

    def get_request(self, request_id: str) -> Optional[ConsentRequest]:
        return self.storage.get_request(request_id)

    def list_consents(self, patient_id: Optional[str] = None, provider_id: Optional[str] = None,
                      active_only: bool = False) -> List[Consent]:
        return self.storage.list_consents(patient_id, provider_id, active_only, self.clock.now())

    def list_requests(self, patient_id: Optional[str] = None, provider_id: Optional[str] = None,
                      pending_only: bool = False) -> List[ConsentRequest]:
        return self.storage.list_requests(patient_id, provider_id, pending_only, self.clock.now())

    def expire_stale_requests(self) -> int:
        """Maintenance sweep; authorization never depends on it having run"""
        return self.storage.expire_stale_requests(self.clock.now())
