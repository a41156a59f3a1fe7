"""
Emergency override for CuraNet
Break-glass access through a single-use bearer token, outside the consent graph

Redemption compares the presented token against every redeemable share's
bcrypt hash, so its cost grows linearly with the number of live shares.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional
import structlog

from .models import (
    EmergencyData,
    EmergencyProfileSource,
    EmergencyShare,
    ShareCreated,
    ShareState,
    extract_emergency_data,
)
from .storage import EmergencyShareStorage
from ..audit import AuditAction, AuditEntry, AuditLog, EmergencyMetadata
from ..config import SecurityConfig, get_security_config
from ..constants import REVOKED_BY_PATIENT
from ..crypto.hash import hash_token, token_prefix, verify_token
from ..exceptions import (
    AuditWriteError,
    AuthorizationError,
    DenialReason,
    NotFoundError,
    RateLimitExceededError,
    StateError,
)
from ..policy.ratelimit import RateLimiter
from ..utils.clock import Clock, SystemClock
from ..utils.ids import generate_emergency_token
from ..utils.validators import validate_actor_id, validate_emergency_scopes, validate_ttl_seconds

logger = structlog.get_logger(__name__)

ANONYMOUS_ROLE = "anonymous"
UNKNOWN = "UNKNOWN"
RESOURCE_TYPE = "emergency_share"

# How far back an expired share still yields "expired" rather than "not_found"
EXPIRED_LOOKBACK = timedelta(hours=24)


class EmergencyOverride:
    """Creates, redeems and revokes emergency shares"""

    def __init__(self, audit_log: AuditLog,
                 profile_source: EmergencyProfileSource,
                 storage: Optional[EmergencyShareStorage] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 clock: Optional[Clock] = None,
                 config: Optional[SecurityConfig] = None):
        self.config = config or get_security_config()
        self.audit_log = audit_log
        self.profile_source = profile_source
        self.storage = storage or EmergencyShareStorage(self.config.database_url)
        self.clock = clock or SystemClock()
        self.rate_limiter = rate_limiter or RateLimiter(
            limit=self.config.emergency_redeem_limit,
            window_seconds=self.config.emergency_redeem_window_seconds,
            clock=self.clock,
            name="emergency-redeem",
        )

    def _write_audit(self, entry: AuditEntry, fail_open: bool = True) -> None:
        try:
            self.audit_log.append(entry)
        except AuditWriteError:
            if not fail_open:
                raise
            self.audit_log.defer(entry)

    # ------------------------------------------------------------------
    # Patient operations
    # ------------------------------------------------------------------

    def create_share(self, patient_id: str, scope: Optional[List[str]] = None,
                     ttl_seconds: Optional[int] = None, created_by: Optional[str] = None,
                     ip_address: Optional[str] = None,
                     user_agent: Optional[str] = None) -> ShareCreated:
        """
        Create a share and return its raw token.

        The raw token appears only in the return value; storage keeps its hash.

        Raises:
            ValidationError: unknown scope, or ttl_seconds above the 24h cap
        """
        patient_id = validate_actor_id(patient_id, "patient_id")
        scopes = validate_emergency_scopes(scope)
        ttl = validate_ttl_seconds(
            ttl_seconds if ttl_seconds is not None else self.config.emergency_default_ttl_seconds,
            self.config.emergency_max_ttl_seconds,
        )

        now = self.clock.now()
        raw_token = generate_emergency_token(self.config.emergency_token_bytes)
        share = EmergencyShare(
            patient_id=patient_id,
            token_hash=hash_token(raw_token, rounds=self.config.emergency_token_rounds),
            scope=scopes,
            created_by=created_by or patient_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        self.storage.insert(share)

        self._write_audit(self.audit_log.build_entry(
            subject_id=patient_id,
            actor_id=share.created_by,
            actor_role="patient",
            action=AuditAction.EMERGENCY_SHARE_CREATED,
            resource_type=RESOURCE_TYPE,
            resource_id=share.id,
            metadata=EmergencyMetadata(scope=scopes, expires_at=share.expires_at),
            ip_address=ip_address,
            user_agent=user_agent,
        ))

        logger.info("Created emergency share", share_id=share.id, patient_id=patient_id,
                    scope=scopes, ttl_seconds=ttl)
        return ShareCreated(share_id=share.id, raw_token=raw_token, scope=scopes,
                            expires_at=share.expires_at)

    def revoke(self, share_id: str, patient_id: str, ip_address: Optional[str] = None,
               user_agent: Optional[str] = None) -> EmergencyShare:
        """
        Kill a share early. It then looks exactly like a consumed share.

        Raises:
            NotFoundError: unknown share or not owned by patient_id
            StateError: share already used, revoked or expired
        """
        now = self.clock.now()
        share = self.storage.get(share_id)
        if share is None or share.patient_id != patient_id:
            raise NotFoundError("EmergencyShare", share_id)

        state = share.state(now)
        if state != ShareState.CREATED or not self.storage.mark_used(share_id, now, REVOKED_BY_PATIENT):
            raise StateError("Emergency share is no longer active", current_state=state.value)

        self._write_audit(self.audit_log.build_entry(
            subject_id=patient_id,
            actor_id=patient_id,
            actor_role="patient",
            action=AuditAction.EMERGENCY_SHARE_REVOKED,
            resource_type=RESOURCE_TYPE,
            resource_id=share_id,
            metadata=EmergencyMetadata(scope=share.scope, revoked_by_patient=True),
            ip_address=ip_address,
            user_agent=user_agent,
        ))

        logger.info("Revoked emergency share", share_id=share_id, patient_id=patient_id)
        return self.storage.get(share_id)

    def list_shares(self, patient_id: str) -> Dict[str, List[Dict[str, Any]]]:
        """Unexpired shares split into active and used"""
        shares = self.storage.list_for_patient(patient_id, self.clock.now())
        return {
            "active": [s.public_view() for s in shares if not s.used],
            "used": [s.public_view() for s in shares if s.used],
        }

    # ------------------------------------------------------------------
    # Anonymous redemption
    # ------------------------------------------------------------------

    def _deny(self, reason: DenialReason, raw_token: Optional[str], client_key: str,
              share: Optional[EmergencyShare] = None, ip_address: Optional[str] = None,
              user_agent: Optional[str] = None) -> AuthorizationError:
        self._write_audit(self.audit_log.build_entry(
            subject_id=share.patient_id if share else UNKNOWN,
            actor_id=client_key,
            actor_role=ANONYMOUS_ROLE,
            action=AuditAction.EMERGENCY_ACCESS_FAILED,
            resource_type=RESOURCE_TYPE,
            resource_id=share.id if share else UNKNOWN,
            reason=reason.value,
            metadata=EmergencyMetadata(token_prefix=token_prefix(raw_token), client_key=client_key),
            ip_address=ip_address,
            user_agent=user_agent,
        ))

        logger.warning("Emergency access failed",
                       reason=reason.value,
                       token_prefix=token_prefix(raw_token),
                       client_key=client_key)
        return AuthorizationError(reason)

    @staticmethod
    def _match(raw_token: str, shares: List[EmergencyShare]) -> Optional[EmergencyShare]:
        for share in shares:
            if verify_token(raw_token, share.token_hash):
                return share
        return None

    def redeem(self, raw_token: str, client_key: Optional[str] = None,
               ip_address: Optional[str] = None,
               user_agent: Optional[str] = None) -> EmergencyData:
        """
        Exchange a raw token for scope-filtered emergency data, once.

        Raises:
            RateLimitExceededError: client_key is over its redemption budget
            AuthorizationError: reason already_used, expired or not_found
        """
        client_key = client_key or ip_address or UNKNOWN

        try:
            self.rate_limiter.check(client_key)
        except RateLimitExceededError:
            self._deny(DenialReason.RATE_LIMITED, raw_token, client_key,
                       ip_address=ip_address, user_agent=user_agent)
            raise

        if not raw_token:
            raise self._deny(DenialReason.NOT_FOUND, raw_token, client_key,
                             ip_address=ip_address, user_agent=user_agent)

        now = self.clock.now()
        share = self._match(raw_token, self.storage.redeemable(now))

        if share is None:
            used = self._match(raw_token, self.storage.used_unexpired(now))
            if used is not None:
                raise self._deny(DenialReason.ALREADY_USED, raw_token, client_key, used,
                                 ip_address, user_agent)

            expired = self._match(raw_token, self.storage.expired_unused(now, now - EXPIRED_LOOKBACK))
            if expired is not None:
                raise self._deny(DenialReason.EXPIRED, raw_token, client_key, expired,
                                 ip_address, user_agent)

            raise self._deny(DenialReason.NOT_FOUND, raw_token, client_key,
                             ip_address=ip_address, user_agent=user_agent)

        if not self.storage.mark_used(share.id, now, client_key, ip_address, user_agent):
            # Lost the race to a concurrent redemption
            raise self._deny(DenialReason.ALREADY_USED, raw_token, client_key, share,
                             ip_address, user_agent)

        try:
            profile = self.profile_source.get_profile(share.patient_id)
        except Exception as e:
            # The share stays consumed
            logger.error("Emergency profile read failed", share_id=share.id, error=str(e))
            self._write_audit(self.audit_log.build_entry(
                subject_id=share.patient_id,
                actor_id=client_key,
                actor_role=ANONYMOUS_ROLE,
                action=AuditAction.EMERGENCY_ACCESS_FAILED,
                resource_type=RESOURCE_TYPE,
                resource_id=share.id,
                reason="profile_unavailable",
                metadata=EmergencyMetadata(scope=share.scope, client_key=client_key),
                ip_address=ip_address,
                user_agent=user_agent,
            ))
            raise

        data = extract_emergency_data(share.patient_id, profile, share.scope)

        self._write_audit(self.audit_log.build_entry(
            subject_id=share.patient_id,
            actor_id=client_key,
            actor_role=ANONYMOUS_ROLE,
            action=AuditAction.EMERGENCY_ACCESS_GRANTED,
            resource_type=RESOURCE_TYPE,
            resource_id=share.id,
            reason="emergency",
            metadata=EmergencyMetadata(
                scope=share.scope,
                accessed_fields=sorted(data.keys()),
                expires_at=share.expires_at,
                client_key=client_key,
            ),
            ip_address=ip_address,
            user_agent=user_agent,
        ), fail_open=self.config.audit_fail_open_reads)

        logger.warning("Emergency access granted", share_id=share.id, patient_id=share.patient_id,
                       client_key=client_key)
        return EmergencyData(
            share_id=share.id,
            patient_id=share.patient_id,
            scope=share.scope,
            accessed_at=now,
            data=data,
        )
