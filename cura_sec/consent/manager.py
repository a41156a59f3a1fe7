"""
Consent manager for CuraNet
Async consent lifecycle for the HTTP layer, auditing every mutation
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar
import asyncio
import functools

import structlog
from pydantic import BaseModel, Field

from .models import Consent, ConsentRequest
from .store import ConsentStore
from ..audit import AuditAction, AuditFilters, AuditLog, ConsentMetadata
from ..constants import PATIENT_ROLE, PolicyDefaults
from ..exceptions import AuditWriteError, NotFoundError


logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ConsentRequestCreate(BaseModel):
    patient_id: str
    scope: List[str]
    purpose: str
    message: Optional[str] = None
    requested_expiry: Optional[datetime] = None


class ConsentApproval(BaseModel):
    granted_scope: Optional[List[str]] = None
    expires_at: Optional[datetime] = None


class ConsentDenial(BaseModel):
    reason: Optional[str] = None


class ConsentGrantCreate(BaseModel):
    provider_id: str
    scope: List[str]
    purpose: str
    expires_at: Optional[datetime] = None


class ConsentRevocation(BaseModel):
    reason: Optional[str] = None


class ConsentListQuery(BaseModel):
    patient_id: Optional[str] = None
    provider_id: Optional[str] = None
    active_only: bool = False
    include_requests: bool = Field(default=True)


class ConsentManager:
    """Consent lifecycle for the HTTP layer: store operation plus audit entry"""

    def __init__(self, store: ConsentStore, audit_log: AuditLog):
        self.store = store
        self.audit_log = audit_log

    def _is_admin(self, actor_role: Optional[str]) -> bool:
        return actor_role == self.store.policy.admin_role

    @staticmethod
    async def _run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run storage and audit I/O on the default executor, off the event loop"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def _audit(self, *args: Any, **kwargs: Any) -> None:
        await self._run_blocking(self._write_audit, *args, **kwargs)

    def _write_audit(self, action: AuditAction, actor_id: str, actor_role: Optional[str],
                     subject_id: str, resource_type: str, resource_id: str,
                     consent_id: Optional[str], metadata: ConsentMetadata,
                     reason: Optional[str] = None, ip_address: Optional[str] = None,
                     user_agent: Optional[str] = None) -> None:
        entry = self.audit_log.build_entry(
            subject_id=subject_id,
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            consent_id=consent_id,
            reason=reason,
            metadata=metadata,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            self.audit_log.append(entry)
        except AuditWriteError:
            # The mutation is already committed, so keep the record for a later flush
            self.audit_log.defer(entry)

    @staticmethod
    def _consent_metadata(consent: Consent, request_id: Optional[str] = None) -> ConsentMetadata:
        return ConsentMetadata(
            request_id=request_id or consent.request_id,
            provider_id=consent.provider_id,
            scope=sorted(s.value for s in consent.scope),
            purpose=consent.purpose,
            expires_at=consent.expires_at,
        )

    @staticmethod
    def _request_metadata(request: ConsentRequest) -> ConsentMetadata:
        return ConsentMetadata(
            request_id=request.id,
            provider_id=request.provider_id,
            scope=sorted(s.value for s in request.requested_scope),
            purpose=request.purpose,
            expires_at=request.expires_at,
        )

    async def request_consent(self, provider_id: str, request_data: Dict[str, Any],
                              actor_role: Optional[str] = None,
                              ip_address: Optional[str] = None,
                              user_agent: Optional[str] = None) -> Dict[str, Any]:
        payload = ConsentRequestCreate(**request_data)
        request = await self._run_blocking(
            self.store.create_request,
            patient_id=payload.patient_id,
            provider_id=provider_id,
            scope=payload.scope,
            purpose=payload.purpose,
            message=payload.message,
            requested_expiry=payload.requested_expiry,
        )
        await self._audit(AuditAction.CONSENT_REQUESTED, provider_id, actor_role,
                          subject_id=request.patient_id,
                          resource_type="consent_request", resource_id=request.id,
                          consent_id=None, metadata=self._request_metadata(request),
                          ip_address=ip_address, user_agent=user_agent)
        return request.model_dump(mode="json")

    async def approve_request(self, patient_id: str, request_id: str,
                              approval_data: Optional[Dict[str, Any]] = None,
                              actor_role: Optional[str] = None,
                              ip_address: Optional[str] = None,
                              user_agent: Optional[str] = None) -> Dict[str, Any]:
        payload = ConsentApproval(**(approval_data or {}))
        consent = await self._run_blocking(
            self.store.approve_request,
            request_id=request_id,
            patient_id=patient_id,
            granted_scope=payload.granted_scope,
            expires_at=payload.expires_at,
        )
        await self._audit(AuditAction.CONSENT_GRANTED, patient_id, actor_role,
                          subject_id=patient_id,
                          resource_type="consent", resource_id=consent.id,
                          consent_id=consent.id,
                          metadata=self._consent_metadata(consent, request_id),
                          ip_address=ip_address, user_agent=user_agent)
        return consent.model_dump(mode="json")

    async def deny_request(self, patient_id: str, request_id: str,
                           denial_data: Optional[Dict[str, Any]] = None,
                           actor_role: Optional[str] = None,
                           ip_address: Optional[str] = None,
                           user_agent: Optional[str] = None) -> Dict[str, Any]:
        payload = ConsentDenial(**(denial_data or {}))
        request = await self._run_blocking(
            self.store.deny_request, request_id, patient_id, payload.reason
        )
        await self._audit(AuditAction.CONSENT_REQUEST_DENIED, patient_id, actor_role,
                          subject_id=patient_id,
                          resource_type="consent_request", resource_id=request.id,
                          consent_id=None, metadata=self._request_metadata(request),
                          reason=request.denied_reason,
                          ip_address=ip_address, user_agent=user_agent)
        return request.model_dump(mode="json")

    async def grant_consent(self, patient_id: str, grant_data: Dict[str, Any],
                            actor_role: Optional[str] = None,
                            ip_address: Optional[str] = None,
                            user_agent: Optional[str] = None) -> Dict[str, Any]:
        payload = ConsentGrantCreate(**grant_data)
        consent = await self._run_blocking(
            self.store.grant_direct,
            patient_id=patient_id,
            provider_id=payload.provider_id,
            scope=payload.scope,
            purpose=payload.purpose,
            expires_at=payload.expires_at,
        )
        await self._audit(AuditAction.CONSENT_GRANTED, patient_id, actor_role,
                          subject_id=patient_id,
                          resource_type="consent", resource_id=consent.id,
                          consent_id=consent.id, metadata=self._consent_metadata(consent),
                          ip_address=ip_address, user_agent=user_agent)
        return consent.model_dump(mode="json")

    async def revoke_consent(self, patient_id: str, consent_id: str,
                             revoke_data: Optional[Dict[str, Any]] = None,
                             actor_role: Optional[str] = None,
                             ip_address: Optional[str] = None,
                             user_agent: Optional[str] = None) -> Dict[str, Any]:
        payload = ConsentRevocation(**(revoke_data or {}))
        consent = await self._run_blocking(self.store.revoke, consent_id, patient_id, payload.reason)
        await self._audit(AuditAction.CONSENT_REVOKED, patient_id, actor_role,
                          subject_id=patient_id,
                          resource_type="consent", resource_id=consent.id,
                          consent_id=consent.id, metadata=self._consent_metadata(consent),
                          reason=consent.revoked_reason,
                          ip_address=ip_address, user_agent=user_agent)
        return consent.model_dump(mode="json")

    async def list_consents(self, actor_id: str, actor_role: Optional[str],
                            query_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Consents and requests visible to the caller.

        Patients see their own, admins see anything they filter for, and
        everyone else is treated as the provider side of the pair.
        """
        query = ConsentListQuery(**(query_data or {}))
        now = self.store.clock.now()

        if self._is_admin(actor_role):
            patient_id, provider_id = query.patient_id, query.provider_id
        elif actor_role == PATIENT_ROLE:
            patient_id, provider_id = actor_id, query.provider_id
        else:
            patient_id, provider_id = query.patient_id, actor_id

        consents = await self._run_blocking(
            self.store.list_consents, patient_id, provider_id, query.active_only
        )
        result: Dict[str, Any] = {
            "consents": [
                {**c.model_dump(mode="json"), "effective_status": c.effective_status(now).value}
                for c in consents
            ],
        }

        if query.include_requests:
            requests = await self._run_blocking(
                self.store.list_requests, patient_id, provider_id, pending_only=query.active_only
            )
            result["requests"] = [
                {**r.model_dump(mode="json"), "effective_status": r.effective_status(now).value}
                for r in requests
            ]

        return result

    async def consent_details(self, actor_id: str, actor_role: Optional[str],
                              consent_id: str) -> Dict[str, Any]:
        """A consent plus its most recent audit entries"""
        consent = await self._run_blocking(self.store.get_consent, consent_id)
        visible = consent is not None and (
            self._is_admin(actor_role) or actor_id in (consent.patient_id, consent.provider_id)
        )
        if not visible:
            raise NotFoundError("Consent", consent_id)

        page = await self._run_blocking(
            self.audit_log.query,
            AuditFilters(consent_id=consent_id),
            page=1,
            page_size=PolicyDefaults.CONSENT_DETAIL_AUDIT_ROWS,
        )
        return {
            "consent": consent.model_dump(mode="json"),
            "effective_status": consent.effective_status(self.store.clock.now()).value,
            "recent_audit": [entry.model_dump(mode="json") for entry in page.entries],
        }
