"""
Consent management module for CuraNet
Consent lifecycle, storage and the authorization decision function
"""

from .models import (
    Consent,
    ConsentRequest,
    ConsentScope,
    ConsentStatus,
    RequestStatus,
    AccessAction,
)
from .storage import ConsentStorage, InMemoryConsentStorage
from .store import ConsentStore
from .authority import ConsentAuthority, Decision, DecisionPath, scope_satisfied
from .manager import ConsentManager

__all__ = [
    "Consent",
    "ConsentRequest",
    "ConsentScope",
    "ConsentStatus",
    "RequestStatus",
    "AccessAction",
    "ConsentStorage",
    "InMemoryConsentStorage",
    "ConsentStore",
    "ConsentAuthority",
    "Decision",
    "DecisionPath",
    "scope_satisfied",
    "ConsentManager",
]
