"""
Consent authority for CuraNet
The single decision function for patient-data access
"""

from concurrent.futures import Executor, Future
from typing import TYPE_CHECKING, FrozenSet, Iterable, Optional
import structlog
from pydantic import BaseModel, ConfigDict

from .models import AccessAction, Consent, ConsentScope
from .store import ConsentStore
from ..config import PolicyConfiguration
from ..constants import (
    ADMIN_OVERRIDE_CONSENT_ID,
    PROVIDER_OVERRIDE_CONSENT_ID,
    SELF_ACCESS_CONSENT_ID,
)
from ..exceptions import DenialReason
from ..utils.validators import validate_scopes

if TYPE_CHECKING:
    from ..policy.identity import IdentityResolver

logger = structlog.get_logger(__name__)


class DecisionPath:
    """How a decision was reached, recorded in audit metadata"""
    SELF = "self"
    ADMIN_OVERRIDE = "admin-override"
    PROVIDER_OVERRIDE = "provider-override"
    CONSENT = "consent"
    READ_BASIC_FALLBACK = "read-basic-fallback"
    DENIED = "denied"


class Decision(BaseModel):
    """Outcome of one authorization decision"""
    model_config = ConfigDict(frozen=True)

    permit: bool
    consent_id: Optional[str] = None
    reason: Optional[DenialReason] = None
    path: str = DecisionPath.DENIED
    privileged: bool = False

    @classmethod
    def allow(cls, consent_id: str, path: str, privileged: bool = False) -> "Decision":
        return cls(permit=True, consent_id=consent_id, path=path, privileged=privileged)

    @classmethod
    def deny(cls, reason: DenialReason, consent_id: Optional[str] = None) -> "Decision":
        return cls(permit=False, reason=reason, consent_id=consent_id)


def scope_satisfied(consent: Consent, required: FrozenSet[ConsentScope],
                    action: AccessAction, policy: PolicyConfiguration) -> Optional[str]:
    """
    Decision path if the consent covers the requirement, else None.

    Besides the strict subset check, a READ_BASIC grant covers any read-only
    requirement when ``policy.read_basic_satisfies_any_read`` is on.
    """
    if consent.covers(required):
        return DecisionPath.CONSENT

    if (policy.read_basic_satisfies_any_read
            and action == AccessAction.READ
            and ConsentScope.READ_BASIC in consent.scope
            and all(scope.is_read for scope in required)):
        return DecisionPath.READ_BASIC_FALLBACK

    return None


class ConsentAuthority:
    """Evaluates whether an (actor, patient, scope, action) tuple is permitted"""

    def __init__(self, store: ConsentStore,
                 policy: Optional[PolicyConfiguration] = None,
                 identity_resolver: Optional["IdentityResolver"] = None,
                 executor: Optional[Executor] = None):
        self.store = store
        self.policy = policy or store.policy
        self.identity_resolver = identity_resolver or store.identity_resolver
        # Runs access-count updates off the decision path when given
        self.executor = executor

    def _resolve_role(self, actor_id: str, actor_role: Optional[str]) -> Optional[str]:
        if actor_role:
            return actor_role
        if self.identity_resolver is None:
            return None
        identity = self.identity_resolver.resolve(actor_id)
        return identity.role if identity else None

    def _actor_inactive(self, actor_id: str) -> bool:
        if self.identity_resolver is None:
            return False
        identity = self.identity_resolver.resolve(actor_id)
        return identity is not None and not identity.active

    def decide(self, actor_id: str, patient_id: str, required_scopes: Iterable,
               action: AccessAction, actor_role: Optional[str] = None) -> Decision:
        """
        Decide whether actor_id may perform action on patient_id's data.

        Denials are returned, not raised. The patient's existence is never
        looked up, so an unknown patient yields the same ``no_active_consent``
        as a known one without a consent.
        """
        required = validate_scopes(required_scopes, field_name="required_scopes")
        action = AccessAction(action)

        # Patients always reach their own records
        if actor_id == patient_id:
            return Decision.allow(SELF_ACCESS_CONSENT_ID, DecisionPath.SELF)

        if self._actor_inactive(actor_id):
            logger.info("Denied inactive actor", actor_id=actor_id)
            return Decision.deny(DenialReason.NOT_FOUND)

        role = self._resolve_role(actor_id, actor_role)

        if role == self.policy.admin_role:
            logger.warning("Admin override used",
                           actor_id=actor_id,
                           patient_id=patient_id,
                           scopes=sorted(s.value for s in required),
                           action=action.value)
            return Decision.allow(ADMIN_OVERRIDE_CONSENT_ID, DecisionPath.ADMIN_OVERRIDE, privileged=True)

        if (self.policy.provider_override_enabled
                and role in self.policy.provider_override_roles
                and {s.value for s in required}.issubset(self.policy.provider_override_scopes)):
            logger.warning("Provider override used",
                           actor_id=actor_id,
                           role=role,
                           patient_id=patient_id,
                           scopes=sorted(s.value for s in required))
            return Decision.allow(PROVIDER_OVERRIDE_CONSENT_ID, DecisionPath.PROVIDER_OVERRIDE, privileged=True)

        active = self.store.list_active(patient_id, actor_id)
        if not active:
            return Decision.deny(DenialReason.NO_ACTIVE_CONSENT)

        if len(active) > 1:
            logger.warning("Multiple active consents for pair, using newest",
                           patient_id=patient_id,
                           provider_id=actor_id,
                           consent_ids=[c.id for c in active])
        consent = active[0]

        path = scope_satisfied(consent, required, action, self.policy)
        if path is None:
            return Decision.deny(DenialReason.INSUFFICIENT_SCOPE, consent_id=consent.id)

        self._record_access(consent.id)
        return Decision.allow(consent.id, path)

    def _record_access(self, consent_id: str) -> None:
        if self.executor is not None:
            future = self.executor.submit(self.store.increment_access, consent_id)
            future.add_done_callback(lambda f: self._log_access_failure(consent_id, f))
            return

        try:
            self.store.increment_access(consent_id)
        except Exception as e:
            logger.error("Failed to record consent access", consent_id=consent_id, error=str(e))

    @staticmethod
    def _log_access_failure(consent_id: str, future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error("Failed to record consent access", consent_id=consent_id, error=str(error))
