"""Domain layer for the MedLink federation hub.

This module contains the core business logic, the ports adapters implement
and the data models exchanged between hospitals, the hub and callers.
"""

from .models import (
    AggregateQueryResult,
    AuditLogEntry,
    CallerContext,
    EmergencyQueryResult,
    HospitalRecordBundle,
    MedicalRecord,
    MedicationCheckResult,
    Patient,
    PatientIndexEntry,
)

__all__ = [
    "AggregateQueryResult",
    "AuditLogEntry",
    "CallerContext",
    "EmergencyQueryResult",
    "HospitalRecordBundle",
    "MedicalRecord",
    "MedicationCheckResult",
    "Patient",
    "PatientIndexEntry",
]
