"""Request and response models for the federation API."""

from medlink.api.models.central import (
    AccessLogEntry,
    EmergencyQueryRequest,
    HubStats,
    MedicationCheckRequest,
    PrivacyUpdateRequest,
    PrivacyUpdateResponse,
)
from medlink.api.models.health import HealthResponse, HospitalHealth

__all__ = [
    "AccessLogEntry",
    "EmergencyQueryRequest",
    "HealthResponse",
    "HospitalHealth",
    "HubStats",
    "MedicationCheckRequest",
    "PrivacyUpdateRequest",
    "PrivacyUpdateResponse",
]
