"""
Emergency (break-glass) access for CuraNet
"""

from .models import (
    EmergencyData,
    EmergencyProfile,
    EmergencyProfileSource,
    EmergencyShare,
    InMemoryEmergencyProfileSource,
    ShareCreated,
    ShareState,
    extract_emergency_data,
)
from .storage import EmergencyShareStorage, InMemoryEmergencyShareStorage
from .override import EmergencyOverride

__all__ = [
    "EmergencyData",
    "EmergencyProfile",
    "EmergencyProfileSource",
    "EmergencyShare",
    "InMemoryEmergencyProfileSource",
    "ShareCreated",
    "ShareState",
    "extract_emergency_data",
    "EmergencyShareStorage",
    "InMemoryEmergencyShareStorage",
    "EmergencyOverride",
]
