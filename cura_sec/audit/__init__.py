"""
Audit trail for CuraNet
Append-only entries, typed metadata, storage adapters and the AuditLog
"""

from .metadata import (
    AuditMetadata,
    AccessMetadata,
    ConsentMetadata,
    EmergencyMetadata,
    ExportMetadata,
    GenericMetadata,
    parse_metadata,
)
from .models import AuditAction, AuditEntry, AuditFilters, AuditPage, AuditSummary, RECORD_ACTIONS
from .storage import AuditStorage, AuditStorageError, InMemoryAuditStorage
from .log import AuditLog

__all__ = [
    "AuditMetadata",
    "AccessMetadata",
    "ConsentMetadata",
    "EmergencyMetadata",
    "ExportMetadata",
    "GenericMetadata",
    "parse_metadata",
    "AuditAction",
    "AuditEntry",
    "AuditFilters",
    "AuditPage",
    "AuditSummary",
    "RECORD_ACTIONS",
    "AuditStorage",
    "AuditStorageError",
    "InMemoryAuditStorage",
    "AuditLog",
]
