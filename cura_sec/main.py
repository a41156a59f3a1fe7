"""
CuraNet Consent & Access-Control Service - FastAPI Application
Consent lifecycle, access enforcement, audit trail and emergency access
"""

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional
import logging
import structlog

from pydantic import BaseModel, Field

from .audit import AuditAction, AuditFilters
from .config import SecurityConfig
from .constants import SERVICE_NAME, SERVICE_VERSION
from .consent.manager import (
    ConsentApproval,
    ConsentDenial,
    ConsentGrantCreate,
    ConsentRequestCreate,
    ConsentRevocation,
)
from .exceptions import (
    AuditWriteError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RateLimitExceededError,
    SecurityError,
    StateError,
    ValidationError,
)
from .services import SecurityServices, build_services

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Global settings
settings = SecurityConfig()

logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

# Initialize services
services: Optional[SecurityServices] = None

ERROR_STATUS = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (StateError, 409),
    (ValidationError, 400),
    (AuthorizationError, 403),
    (RateLimitExceededError, 429),
    (AuditWriteError, 503),
]


def get_services() -> SecurityServices:
    """Current service container, built on first use"""
    global services
    if services is None:
        services = build_services(settings)
    return services


class Actor(BaseModel):
    """Caller identity as asserted by the upstream auth layer"""
    actor_id: str
    role: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def get_actor(
    request: Request,
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> Actor:
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return Actor(
        actor_id=x_actor_id,
        role=x_actor_role,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


class AccessEnforceRequest(BaseModel):
    patient_id: str
    required_scopes: List[str]
    action: AuditAction = AuditAction.RECORD_READ
    resource_type: str
    resource_id: str


class ShareCreateRequest(BaseModel):
    scope: Optional[List[str]] = None
    ttl_seconds: Optional[int] = Field(default=None, alias="expires_in_seconds")

    model_config = {"populate_by_name": True}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global services

    logger.info("Starting CuraNet consent service", version=SERVICE_VERSION)

    # Initialize services only if not already provided (for testing/injection)
    if services is None:
        services = build_services(settings)

    logger.info("Security services initialized")

    yield

    flushed = services.audit_log.flush_pending()
    logger.info("Shutting down CuraNet consent service", flushed_audit_entries=flushed)

# Create FastAPI app
app = FastAPI(
    title="CuraNet Consent & Access-Control Service",
    description="Consent lifecycle, access enforcement, audit trail and emergency access",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SecurityError)
async def security_error_handler(request: Request, exc: SecurityError) -> JSONResponse:
    status_code = 500
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break

    headers = {}
    if isinstance(exc, RateLimitExceededError) and "retry_after_seconds" in exc.details:
        headers["Retry-After"] = str(exc.details["retry_after_seconds"])

    if status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.error_code)
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    current = get_services()
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "components": {
            "consent_store": current.store is not None,
            "audit_log": current.audit_log is not None,
            "emergency": current.emergency is not None,
        },
        "pending_audit_entries": current.audit_log.pending_count,
    }

# =============================================================================
# CONSENT ENDPOINTS
# =============================================================================

@app.post("/consent/requests", status_code=201)
async def create_consent_request(body: ConsentRequestCreate, actor: Actor = Depends(get_actor)):
    """Provider asks a patient for consent"""
    result = await get_services().consent_manager.request_consent(
        actor.actor_id, body.model_dump(), actor.role, actor.ip_address, actor.user_agent
    )
    return {"status": "success", "request": result}


@app.post("/consent/requests/{request_id}/approve")
async def approve_consent_request(request_id: str, body: Optional[ConsentApproval] = None,
                                  actor: Actor = Depends(get_actor)):
    consent = await get_services().consent_manager.approve_request(
        actor.actor_id, request_id, body.model_dump() if body else None,
        actor.role, actor.ip_address, actor.user_agent
    )
    return {"status": "success", "consent": consent}


@app.post("/consent/requests/{request_id}/deny")
async def deny_consent_request(request_id: str, body: Optional[ConsentDenial] = None,
                               actor: Actor = Depends(get_actor)):
    request = await get_services().consent_manager.deny_request(
        actor.actor_id, request_id, body.model_dump() if body else None,
        actor.role, actor.ip_address, actor.user_agent
    )
    return {"status": "success", "request": request}


@app.post("/consent/grants", status_code=201)
async def grant_consent(body: ConsentGrantCreate, actor: Actor = Depends(get_actor)):
    """Patient grants consent without a preceding request"""
    consent = await get_services().consent_manager.grant_consent(
        actor.actor_id, body.model_dump(), actor.role, actor.ip_address, actor.user_agent
    )
    return {"status": "success", "consent": consent}


@app.post("/consent/{consent_id}/revoke")
async def revoke_consent(consent_id: str, body: Optional[ConsentRevocation] = None,
                         actor: Actor = Depends(get_actor)):
    consent = await get_services().consent_manager.revoke_consent(
        actor.actor_id, consent_id, body.model_dump() if body else None,
        actor.role, actor.ip_address, actor.user_agent
    )
    return {"status": "success", "consent": consent}


@app.get("/consent")
async def list_consents(patient_id: Optional[str] = None, provider_id: Optional[str] = None,
                        active_only: bool = False, actor: Actor = Depends(get_actor)):
    return await get_services().consent_manager.list_consents(
        actor.actor_id, actor.role,
        {"patient_id": patient_id, "provider_id": provider_id, "active_only": active_only},
    )


@app.get("/consent/{consent_id}")
async def get_consent_details(consent_id: str, actor: Actor = Depends(get_actor)):
    return await get_services().consent_manager.consent_details(actor.actor_id, actor.role, consent_id)

# =============================================================================
# ACCESS ENFORCEMENT
# =============================================================================

# Handlers that call storage or bcrypt directly are plain def so FastAPI runs
# them in its threadpool

@app.post("/access/enforce")
def enforce_access(body: AccessEnforceRequest, actor: Actor = Depends(get_actor)):
    """Decide and audit one patient-data operation"""
    token = get_services().gate.enforce(
        actor_id=actor.actor_id,
        actor_role=actor.role,
        patient_id=body.patient_id,
        required_scopes=body.required_scopes,
        action=body.action,
        resource_type=body.resource_type,
        resource_id=body.resource_id,
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
    )
    return {"allowed": True, "token": token.model_dump(mode="json")}

# =============================================================================
# AUDIT ENDPOINTS
# =============================================================================

def _audit_filters(actor: Actor, current: SecurityServices, actor_id: Optional[str],
                   subject_id: Optional[str], action: Optional[AuditAction],
                   start: Optional[datetime], end: Optional[datetime]) -> AuditFilters:
    # Only admins may look beyond their own records
    if actor.role != current.policy.admin_role:
        subject_id = actor.actor_id
    return AuditFilters(actor_id=actor_id, subject_id=subject_id, action=action, start=start, end=end)


@app.get("/audit")
def query_audit(
    actor_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    page_size: Optional[int] = Query(default=None, ge=1),
    actor: Actor = Depends(get_actor),
):
    current = get_services()
    filters = _audit_filters(actor, current, actor_id, subject_id, action, start, end)
    result = current.audit_log.query(filters, page=page, page_size=page_size)
    return {
        "entries": [entry.model_dump(mode="json") for entry in result.entries],
        "pagination": {
            "page": result.page,
            "page_size": result.page_size,
            "total": result.total,
            "pages": result.pages,
        },
    }


@app.get("/audit/export")
def export_audit(
    actor_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    actor: Actor = Depends(get_actor),
):
    current = get_services()
    filters = _audit_filters(actor, current, actor_id, subject_id, action, start, end)
    entries = [entry.model_dump(mode="json") for entry in current.audit_log.export_range(filters, limit)]
    effective_limit = min(limit or current.config.audit_export_max_rows, current.config.audit_export_max_rows)

    current.audit_log.record_export(actor.actor_id, filters, len(entries), effective_limit,
                                    actor_role=actor.role, ip_address=actor.ip_address)

    return {
        "exported_at": current.clock.now().isoformat(),
        "count": len(entries),
        "limit": effective_limit,
        "entries": entries,
    }

# =============================================================================
# EMERGENCY ACCESS
# =============================================================================

@app.post("/emergency/shares", status_code=201)
def create_emergency_share(body: ShareCreateRequest, actor: Actor = Depends(get_actor)):
    created = get_services().emergency.create_share(
        patient_id=actor.actor_id,
        scope=body.scope,
        ttl_seconds=body.ttl_seconds,
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
    )
    return {
        "share_id": created.share_id,
        "token": created.raw_token,
        "url": f"/one/{created.raw_token}",
        "scope": created.scope,
        "expires_at": created.expires_at.isoformat(),
    }


@app.get("/emergency/shares")
def list_emergency_shares(actor: Actor = Depends(get_actor)):
    return get_services().emergency.list_shares(actor.actor_id)


@app.delete("/emergency/shares/{share_id}")
def revoke_emergency_share(share_id: str, actor: Actor = Depends(get_actor)):
    share = get_services().emergency.revoke(share_id, actor.actor_id, actor.ip_address, actor.user_agent)
    return {"status": "revoked", "share": share.public_view()}


@app.get("/one/{token}")
def redeem_emergency_share(token: str, request: Request):
    """Anonymous break-glass redemption; the only unauthenticated endpoint"""
    ip_address = request.client.host if request.client else None
    try:
        data = get_services().emergency.redeem(
            token,
            client_key=ip_address,
            ip_address=ip_address,
            user_agent=request.headers.get("user-agent"),
        )
    except AuthorizationError as exc:
        raise HTTPException(
            status_code=404,
            detail={
                "error": "emergency_link_invalid",
                "reason": exc.reason.value,
                "message": "This emergency access link is either invalid, expired, or has already been used.",
            },
        )

    return {"success": True, "emergency_access": True, **data.model_dump(mode="json")}


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "CuraNet Consent & Access-Control Service",
        "version": SERVICE_VERSION,
        "status": "operational",
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
