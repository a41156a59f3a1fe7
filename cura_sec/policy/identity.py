"""
Identity resolution for CuraNet
The engine trusts the resolver's role and active determination as-is
"""

from typing import Dict, Optional, Protocol
import threading
import structlog
from pydantic import BaseModel

from ..constants import PATIENT_ROLE

logger = structlog.get_logger(__name__)


class Identity(BaseModel):
    """Resolved actor"""
    actor_id: str
    role: str
    active: bool = True

    @property
    def is_patient(self) -> bool:
        return self.role == PATIENT_ROLE


class IdentityResolver(Protocol):
    def resolve(self, actor_id: str) -> Optional[Identity]:
        ...


class InMemoryIdentityResolver:
    """Registry of known actors, used in tests and single-process setups"""

    def __init__(self):
        self._identities: Dict[str, Identity] = {}
        self._lock = threading.Lock()

    def register(self, actor_id: str, role: str, active: bool = True) -> Identity:
        identity = Identity(actor_id=actor_id, role=role, active=active)
        with self._lock:
            self._identities[actor_id] = identity
        logger.debug("Registered identity", actor_id=actor_id, role=role)
        return identity

    def suspend(self, actor_id: str) -> bool:
        with self._lock:
            identity = self._identities.get(actor_id)
            if identity is None:
                return False
            self._identities[actor_id] = identity.model_copy(update={"active": False})

        logger.info("Suspended identity", actor_id=actor_id)
        return True

    def resolve(self, actor_id: str) -> Optional[Identity]:
        with self._lock:
            return self._identities.get(actor_id)
