"""
Typed metadata envelope for audit entries

Each variant is tagged by ``kind`` and versioned. Variants accept unknown
fields so newer writers can add data without breaking older readers, and
an unknown ``kind`` degrades to ``GenericMetadata`` instead of failing.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

logger = structlog.get_logger(__name__)


class _MetadataBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: int = 1


class AccessMetadata(_MetadataBase):
    """Attached to every access gate decision"""
    kind: Literal["access"] = "access"
    actor_role: Optional[str] = None
    access_action: Optional[str] = None
    required_scopes: List[str] = Field(default_factory=list)
    requested_action: Optional[str] = None
    decision_path: Optional[str] = None
    privileged: bool = False


class ConsentMetadata(_MetadataBase):
    """Consent lifecycle events"""
    kind: Literal["consent"] = "consent"
    request_id: Optional[str] = None
    provider_id: Optional[str] = None
    scope: List[str] = Field(default_factory=list)
    purpose: Optional[str] = None
    expires_at: Optional[datetime] = None


class EmergencyMetadata(_MetadataBase):
    """Break-glass share creation, redemption and revocation"""
    kind: Literal["emergency"] = "emergency"
    scope: List[str] = Field(default_factory=list)
    token_prefix: Optional[str] = None
    accessed_fields: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    revoked_by_patient: bool = False
    client_key: Optional[str] = None


class ExportMetadata(_MetadataBase):
    """Audit exports"""
    kind: Literal["export"] = "export"
    filters: Dict[str, Any] = Field(default_factory=dict)
    row_count: int = 0
    limit: int = 0


class GenericMetadata(_MetadataBase):
    """Fallback for untyped or unrecognised payloads"""
    kind: Literal["generic"] = "generic"
    data: Dict[str, Any] = Field(default_factory=dict)


AuditMetadata = Annotated[
    Union[AccessMetadata, ConsentMetadata, EmergencyMetadata, ExportMetadata, GenericMetadata],
    Field(discriminator="kind"),
]

_metadata_adapter: TypeAdapter = TypeAdapter(AuditMetadata)


def parse_metadata(raw: Optional[Union[Mapping[str, Any], _MetadataBase]]) -> AuditMetadata:
    """Load a metadata payload, degrading to GenericMetadata when it is not understood"""
    if raw is None:
        return GenericMetadata()
    if isinstance(raw, _MetadataBase):
        return raw

    try:
        return _metadata_adapter.validate_python(dict(raw))
    except PydanticValidationError as exc:
        logger.warning("Unrecognised audit metadata, keeping as generic",
                       kind=raw.get("kind"), errors=exc.error_count())
        return GenericMetadata(data=dict(raw))


def dump_metadata(metadata: AuditMetadata) -> Dict[str, Any]:
    return metadata.model_dump(mode="json")
